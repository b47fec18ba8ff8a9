"""MemoryStore constraints, soft deletion and on-disk persistence."""

from datetime import timedelta

import pytest

from rbacauth.service.permissions import DEFAULT_ROLE_PERMISSIONS
from rbacauth.storage.errors import MissingReference, UniqueViolation
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.models import SYSTEM_ROLE_NAMES, AuditLogEntry, OTPChallenge, new_id, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), role_seed=DEFAULT_ROLE_PERMISSIONS)


def _user_role(store):
    return store.get_role_by_name("user")


class TestSeeding:
    def test_system_roles_created(self, store):
        names = {r.name for r in store.list_roles()}
        assert set(SYSTEM_ROLE_NAMES) <= names
        assert all(store.get_role_by_name(name).is_system for name in SYSTEM_ROLE_NAMES)

    def test_wildcard_is_not_stored_as_permission(self, store):
        assert store.get_permission_by_key("*") is None

    def test_reseeding_is_idempotent_and_adds_new_keys(self, store):
        before = len(store.list_permissions())
        store.seed_roles(DEFAULT_ROLE_PERMISSIONS)
        assert len(store.list_permissions()) == before

        store.seed_roles({"user": ("reports:read",)})
        role = store.get_role_by_name("user", populate=True)
        assert [p.key for p in role.permissions] == ["reports:read"]

    def test_seeded_permission_descriptions(self, store):
        perm = store.get_permission_by_key("users:view-sessions")
        assert (perm.resource, perm.action) == ("users", "view-sessions")
        assert perm.description == "View sessions users"

    def test_create_permission_unique(self, store):
        perm = store.create_permission("reports", "export", "Export reports")
        assert store.get_permission_by_key("reports:export").id == perm.id
        with pytest.raises(UniqueViolation):
            store.create_permission("reports", "export")

    def test_custom_roles_left_alone(self, store):
        custom = store.create_role("Support")
        store.seed_roles({"Support": ("users:read",)})
        assert store.get_role(custom.id).permission_ids == []


class TestRoles:
    def test_names_unique_case_insensitively(self, store):
        store.create_role("Support")
        with pytest.raises(UniqueViolation):
            store.create_role("  SUPPORT ")

    def test_unknown_permission_rejected(self, store):
        with pytest.raises(MissingReference):
            store.create_role("Support", permission_ids=["missing"])
        role = store.create_role("Other")
        with pytest.raises(MissingReference):
            store.update_role(role.id, permission_ids=["missing"])

    def test_populate_returns_copy(self, store):
        role = store.get_role_by_name("admin", populate=True)
        role.permission_ids.clear()
        assert store.get_role_by_name("admin").permission_ids

    def test_rename_for_users(self, store):
        role = store.create_role("Support")
        store.create_user("a@example.com", role_id=role.id, role_name="Support")
        assert store.rename_role_for_users(role.id, "Care") == 1
        assert store.get_user_by_email("a@example.com").role_name == "Care"


class TestUsers:
    def test_email_normalized_and_unique(self, store):
        user = store.create_user("  Mixed@Example.COM ")
        assert user.email == "mixed@example.com"
        with pytest.raises(UniqueViolation):
            store.create_user("mixed@example.com")

    def test_unknown_role_rejected(self, store):
        with pytest.raises(MissingReference):
            store.create_user("a@example.com", role_id="missing")

    def test_populate_role(self, store):
        role = _user_role(store)
        user = store.create_user("a@example.com", role_id=role.id)
        assert store.get_user(user.id).role is None
        assert store.get_user(user.id, populate_role=True).role.name == "user"

    def test_soft_delete_frees_email(self, store):
        old = store.create_user("reuse@example.com")
        assert store.soft_delete_user(old.id)
        assert store.soft_delete_user(old.id) is False
        assert store.get_user_by_email("reuse@example.com") is None
        assert store.get_user_by_email("reuse@example.com", include_deleted=True).id == old.id

        new = store.create_user("reuse@example.com")
        with pytest.raises(UniqueViolation):
            store.restore_user(old.id)
        store.soft_delete_user(new.id)
        restored = store.restore_user(old.id)
        assert restored.deleted_at is None
        assert restored.is_active

    def test_update_rejects_unknown_fields(self, store):
        user = store.create_user("a@example.com")
        with pytest.raises(ValueError):
            store.update_user(user.id, favourite_colour="blue")

    def test_list_and_count(self, store):
        store.create_user("ann@example.com", first_name="Ann", is_email_verified=True)
        store.create_user("bob@example.com", first_name="Bob", is_active=False)
        users, total = store.list_users(search="ann")
        assert total == 1 and users[0].email == "ann@example.com"
        assert store.count_users(is_active=True) == 1
        assert store.count_users(is_email_verified=False) == 1

    def test_password_requires_user(self, store):
        with pytest.raises(MissingReference):
            store.save_password("missing", "hash", "argon2")


class TestSessions:
    def test_token_unique(self, store):
        user = store.create_user("a@example.com")
        expires = utcnow() + timedelta(days=1)
        store.create_session(user.id, "tok", expires_at=expires)
        with pytest.raises(UniqueViolation):
            store.create_session(user.id, "tok", expires_at=expires)

    def test_deactivate_except(self, store):
        user = store.create_user("a@example.com")
        expires = utcnow() + timedelta(days=1)
        for token in ("t1", "t2", "t3"):
            store.create_session(user.id, token, expires_at=expires)
        assert store.deactivate_sessions_except(user.id, "t2") == 2
        assert [s.token for s in store.list_active_sessions(user.id)] == ["t2"]

    def test_purge_expired_and_stale(self, store):
        user = store.create_user("a@example.com")
        now = utcnow()
        store.create_session(user.id, "expired", expires_at=now - timedelta(seconds=1))
        stale = store.create_session(user.id, "stale", expires_at=now + timedelta(days=60))
        store.update_session(stale.id, last_active=now - timedelta(days=31))
        store.create_session(user.id, "fresh", expires_at=now + timedelta(days=1))
        assert store.purge_sessions(retention_days=30, now=now) == 2
        assert store.get_session_by_token("fresh") is not None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, store):
        role = _user_role(store)
        user = store.create_user(
            "keep@example.com",
            role_id=role.id,
            otp=OTPChallenge(code="123456", expires_at=utcnow() + timedelta(minutes=10)),
        )
        store.save_password(user.id, "hash", "argon2")
        store.create_session(user.id, "tok", expires_at=utcnow() + timedelta(days=1))
        store.upsert_ban("203.0.113.9", "Bot detected", expires_at=utcnow() + timedelta(hours=1))
        store.append_audit_entry(
            AuditLogEntry(id=new_id(), action="USER_CREATED", resource_type="user")
        )

        reloaded = MemoryStore(fs_root=str(tmp_path), role_seed=DEFAULT_ROLE_PERMISSIONS)
        restored = reloaded.get_user_by_email("keep@example.com", populate_role=True)
        assert restored.role.name == "user"
        assert restored.otp.code == "123456"
        assert reloaded.get_password_record(user.id) == ("hash", "argon2")
        assert reloaded.get_session_by_token("tok").user_id == user.id
        assert reloaded.get_ban("203.0.113.9").reason == "Bot detected"
        entries, total = reloaded.list_audit_entries(action="user_created")
        assert total == 1
        assert len(reloaded.list_roles()) == len(store.list_roles())
