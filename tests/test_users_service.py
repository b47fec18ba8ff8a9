"""User administration: creation, listing, edits, soft delete and sessions."""

import pytest

from rbacauth.service.errors import (
    ConflictError,
    DependencyFailure,
    ForbiddenError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    ValidationError,
)
from tests.helpers import STRONG_PASSWORD


class TestCreateUser:
    async def test_admin_creates_plain_account_with_password(self, runtime, email, admin):
        result = await runtime.users.create_user(
            admin, email="clerk@example.com", password=STRONG_PASSWORD, first_name="Cy"
        )
        assert result["requires_verification"] is False
        assert result["user"]["role_name"] == "employee"
        assert email.otps == []
        created = runtime.store.get_user_by_email("clerk@example.com")
        assert created.created_by == admin.id
        assert runtime.auth.verify_password(created.id, STRONG_PASSWORD)
        await runtime.dispatcher.drain()
        entries, _ = runtime.store.list_audit_entries(action="USER_CREATED")
        assert entries[0].details["created_by"] == admin.email

    async def test_staff_role_gets_generated_password_and_otp(self, runtime, email, super_admin):
        result = await runtime.users.create_user(
            super_admin, email="deputy@example.com", role_name="admin"
        )
        assert result["requires_verification"] is True
        message = email.otps[-1]
        assert message["to"] == "deputy@example.com"
        assert len(message["temporary_password"]) == 16
        user_id = result["user"]["id"]
        assert runtime.auth.verify_password(user_id, message["temporary_password"])
        assert runtime.store.get_user(user_id).otp.code == message["code"]
        await runtime.dispatcher.drain()

    async def test_staff_invite_rolled_back_on_mail_failure(self, runtime, email, super_admin):
        email.fail = True
        with pytest.raises(DependencyFailure):
            await runtime.users.create_user(
                super_admin, email="lost@example.com", role_name="admin"
            )
        assert runtime.store.get_user_by_email("lost@example.com") is None

    async def test_password_required_for_non_staff_roles(self, runtime, email, admin):
        with pytest.raises(ValidationError, match="Password is required"):
            await runtime.users.create_user(admin, email="nopass@example.com", role_name="user")
        with pytest.raises(ValidationError):
            await runtime.users.create_user(
                admin, email="weak@example.com", password="short", role_name="user"
            )

    async def test_duplicate_and_missing_role(self, runtime, email, admin, make_user):
        make_user("dupe@example.com")
        with pytest.raises(ConflictError):
            await runtime.users.create_user(
                admin, email="Dupe@example.com", password=STRONG_PASSWORD
            )
        with pytest.raises(ServerError):
            await runtime.users.create_user(
                admin, email="x@example.com", password=STRONG_PASSWORD, role_name="ghost"
            )

    async def test_requires_create_permission(self, runtime, email, make_user):
        plain = make_user("plain@example.com")
        with pytest.raises(PermissionDeniedError):
            await runtime.users.create_user(
                plain, email="friend@example.com", password=STRONG_PASSWORD
            )


class TestReadUsers:
    def test_list_with_search_and_pagination(self, runtime, admin, make_user):
        for i in range(3):
            make_user(f"member{i}@example.com", first_name=f"Member{i}")
        result = runtime.users.list_users(admin, search="member", limit=2)
        assert result["total"] == 3
        assert len(result["users"]) == 2
        assert result["pages"] == 2

        admins = runtime.users.list_users(admin, role_name="admin")
        assert [u["email"] for u in admins["users"]] == [admin.email]

    def test_list_requires_permission(self, runtime, make_user):
        plain = make_user("plain@example.com")
        with pytest.raises(PermissionDeniedError):
            runtime.users.list_users(plain)

    def test_get_own_record_without_permission(self, runtime, make_user):
        plain = make_user("plain@example.com")
        other = make_user("other@example.com")
        assert runtime.users.get_user(plain, plain.id)["email"] == "plain@example.com"
        with pytest.raises(ForbiddenError, match="Not authorized to view this user"):
            runtime.users.get_user(plain, other.id)

    def test_get_missing_user(self, runtime, admin):
        with pytest.raises(NotFoundError):
            runtime.users.get_user(admin, "missing")

    def test_unknown_id_looks_like_any_other_user_to_outsiders(self, runtime, make_user):
        plain = make_user("plain@example.com")
        other = make_user("other@example.com")
        for target in ("missing", other.id):
            with pytest.raises(ForbiddenError, match="Not authorized to view this user"):
                runtime.users.get_user(plain, target)
            with pytest.raises(ForbiddenError, match="Not authorized to update this user"):
                runtime.users.update_user(plain, target, {"first_name": "Eve"})

    def test_stats(self, runtime, admin, make_user):
        make_user("pending@example.com", is_email_verified=False)
        make_user("disabled@example.com", is_active=False)
        assert runtime.users.get_user_stats(admin) == {"total": 3, "active": 2, "unverified": 1}


class TestUpdateUser:
    async def test_self_service_fields_only(self, runtime, make_user):
        plain = make_user("self@example.com")
        result = runtime.users.update_user(
            plain, plain.id, {"first_name": "Sam", "role_name": "admin", "is_active": False}
        )
        assert result["first_name"] == "Sam"
        assert result["role_name"] == "user"
        assert result["is_active"] is True
        await runtime.dispatcher.drain()

    async def test_admin_promotion_is_audited(self, runtime, admin, make_user):
        target = make_user("rising@example.com")
        result = runtime.users.update_user(admin, target.id, {"role_name": "Admin"})
        assert result["role_name"] == "admin"
        assert runtime.store.get_user(target.id).role_id == runtime.store.get_role_by_name("admin").id
        await runtime.dispatcher.drain()
        entries, _ = runtime.store.list_audit_entries(action="USER_PROMOTED")
        assert entries[0].changes == {"role_name": {"old": "user", "new": "admin"}}
        assert entries[0].details == {"updated_fields": ["role_id", "role_name"]}

    def test_admin_cannot_edit_self(self, runtime, admin):
        with pytest.raises(ValidationError, match="cannot edit your own account"):
            runtime.users.update_user(admin, admin.id, {"first_name": "Me"})

    def test_unknown_role(self, runtime, admin, make_user):
        target = make_user("target@example.com")
        with pytest.raises(ValidationError, match="Role not found"):
            runtime.users.update_user(admin, target.id, {"role_name": "wizard"})

    def test_email_clash(self, runtime, make_user):
        plain = make_user("mine@example.com")
        make_user("yours@example.com")
        with pytest.raises(ConflictError, match="Email already in use"):
            runtime.users.update_user(plain, plain.id, {"email": "yours@example.com"})

    async def test_password_change(self, runtime, make_user):
        plain = make_user("rotate@example.com")
        runtime.users.update_user(plain, plain.id, {"password": "Fresh-Pass9!"})
        assert runtime.auth.verify_password(plain.id, "Fresh-Pass9!")
        assert not runtime.auth.verify_password(plain.id, STRONG_PASSWORD)
        await runtime.dispatcher.drain()

    def test_cannot_edit_others_without_permission(self, runtime, make_user):
        plain = make_user("plain@example.com")
        other = make_user("other@example.com")
        with pytest.raises(ForbiddenError):
            runtime.users.update_user(plain, other.id, {"first_name": "Hacked"})


class TestDeleteAndRestore:
    async def test_soft_delete_deactivates_sessions(self, runtime, admin, make_user):
        target = make_user("leaving@example.com")
        await runtime.sessions.open_session(target.id, "tok-1")
        runtime.users.delete_user(admin, target.id)

        stored = runtime.store.get_user(target.id)
        assert stored.is_deleted
        assert stored.is_active is False
        assert runtime.sessions.count_active(target.id) == 0
        with pytest.raises(NotFoundError):
            runtime.users.delete_user(admin, target.id)
        await runtime.dispatcher.drain()

    def test_cannot_delete_self(self, runtime, admin):
        with pytest.raises(ValidationError, match="Cannot delete your own account"):
            runtime.users.delete_user(admin, admin.id)

    def test_delete_requires_permission(self, runtime, make_user):
        plain = make_user("plain@example.com")
        other = make_user("other@example.com")
        with pytest.raises(PermissionDeniedError):
            runtime.users.delete_user(plain, other.id)

    async def test_restore(self, runtime, admin, make_user):
        target = make_user("back@example.com")
        with pytest.raises(ValidationError, match="User is not deleted"):
            runtime.users.restore_user(admin, target.id)
        runtime.users.delete_user(admin, target.id)
        restored = runtime.users.restore_user(admin, target.id)
        assert restored["deleted_at"] is None
        assert restored["is_active"] is True
        await runtime.dispatcher.drain()

    async def test_restore_blocked_by_new_account(self, runtime, admin, make_user):
        target = make_user("reused@example.com")
        runtime.users.delete_user(admin, target.id)
        make_user("reused@example.com")
        with pytest.raises(ConflictError):
            runtime.users.restore_user(admin, target.id)
        await runtime.dispatcher.drain()


class TestUserSessions:
    async def test_owner_lists_and_terminates(self, runtime, make_user):
        plain = make_user("devices@example.com")
        first = await runtime.sessions.open_session(plain.id, "tok-1")
        await runtime.sessions.open_session(plain.id, "tok-2")

        listed = runtime.users.get_user_sessions(plain, plain.id, "tok-2")
        assert len(listed) == 2
        assert [s["is_current"] for s in listed].count(True) == 1

        result = runtime.users.terminate_session(plain, plain.id, first.id)
        assert result == {"message": "Session terminated successfully"}
        assert runtime.sessions.count_active(plain.id) == 1
        await runtime.dispatcher.drain()

    async def test_terminate_other_sessions(self, runtime, make_user):
        plain = make_user("many@example.com")
        for token in ("tok-1", "tok-2", "tok-3"):
            await runtime.sessions.open_session(plain.id, token)
        result = runtime.users.terminate_other_sessions(plain, plain.id, "tok-3")
        assert result["terminated_count"] == 2
        await runtime.dispatcher.drain()
        entries, _ = runtime.store.list_audit_entries(action="SESSIONS_TERMINATED")
        assert entries[0].details == {"terminated_count": 2}

    async def test_strangers_are_refused(self, runtime, make_user):
        owner = make_user("owner2@example.com")
        stranger = make_user("stranger@example.com")
        sess = await runtime.sessions.open_session(owner.id, "tok-1")
        with pytest.raises(ForbiddenError, match="Not authorized to view sessions"):
            runtime.users.get_user_sessions(stranger, owner.id)
        with pytest.raises(PermissionDeniedError):
            runtime.users.terminate_session(stranger, owner.id, sess.id)

    async def test_admin_views_any_sessions(self, runtime, admin, make_user):
        target = make_user("watched@example.com")
        await runtime.sessions.open_session(target.id, "tok-1")
        assert len(runtime.users.get_user_sessions(admin, target.id)) == 1
