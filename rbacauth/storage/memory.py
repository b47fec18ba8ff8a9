from __future__ import annotations

import json
import threading
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from rbacauth.logging import get_logger
from rbacauth.storage.errors import MissingReference, UniqueViolation
from rbacauth.storage.models import (
    SYSTEM_ROLE_NAMES,
    AuditLogEntry,
    BannedIP,
    LoginAttempt,
    OTPChallenge,
    Permission,
    Provider,
    Role,
    Session,
    User,
    new_id,
    utcnow,
)

# Relations attached by populate; never written to disk
_TRANSIENT_FIELDS = {"role", "permissions"}


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _normalize_name(name: str) -> str:
    return (name or "").strip().lower()


class MemoryStore:
    """In-process backing store for users, roles, sessions, bans and audit logs.

    Every table lives in a dict guarded by one re-entrant lock; the whole
    state is written to ``<fs_root>/state/memory_store.json`` after each
    mutation and reloaded on construction.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/rbacauth",
        *,
        role_seed: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.login_attempts: Dict[Tuple[str, str], LoginAttempt] = {}
        self.bans: Dict[str, BannedIP] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        loaded = self._load_state()
        if role_seed is not None:
            self.seed_roles(role_seed)
        elif not loaded:
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # roles & permissions
    def seed_roles(self, role_permissions: Mapping[str, Iterable[str]]) -> None:
        """Create any missing permissions and roles from a role -> keys mapping.

        Existing system roles gain newly introduced keys; custom roles are left alone.
        """
        with self._data_lock:
            for role_name, keys in role_permissions.items():
                perm_ids = [self._ensure_permission(key).id for key in keys if key != "*"]
                role = self._find_role_by_name(role_name)
                if role is None:
                    role = Role(
                        id=new_id(),
                        name=role_name,
                        description=f"System role: {role_name}",
                        permission_ids=perm_ids,
                        is_system=_normalize_name(role_name) in SYSTEM_ROLE_NAMES,
                    )
                    self.roles[role.id] = role
                elif role.is_system:
                    for perm_id in perm_ids:
                        if perm_id not in role.permission_ids:
                            role.permission_ids.append(perm_id)
            self._persist_state()

    def _ensure_permission(self, key: str) -> Permission:
        existing = self._find_permission_by_key(key)
        if existing:
            return existing
        resource, _, action = key.partition(":")
        perm = Permission.from_key(
            key, description=f"{action.replace('-', ' ').capitalize()} {resource}"
        )
        self.permissions[perm.id] = perm
        return perm

    def _find_permission_by_key(self, key: str) -> Optional[Permission]:
        return next((p for p in self.permissions.values() if p.key == key), None)

    def create_permission(
        self, resource: str, action: str, description: str = ""
    ) -> Permission:
        with self._data_lock:
            key = f"{resource}:{action}"
            if self._find_permission_by_key(key):
                raise UniqueViolation("permission", "key", key)
            perm = Permission(
                id=new_id(), resource=resource, action=action, description=description
            )
            self.permissions[perm.id] = perm
            self._persist_state()
            return perm

    def get_permission_by_key(self, key: str) -> Optional[Permission]:
        with self._data_lock:
            return self._find_permission_by_key(key)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return list(self.permissions.values())

    def get_permissions_by_ids(self, permission_ids: Sequence[str]) -> List[Permission]:
        with self._data_lock:
            return [self.permissions[pid] for pid in permission_ids if pid in self.permissions]

    def _find_role_by_name(self, name: str) -> Optional[Role]:
        target = _normalize_name(name)
        return next((r for r in self.roles.values() if _normalize_name(r.name) == target), None)

    def _populate_role(self, role: Role) -> Role:
        perms = [self.permissions[pid] for pid in role.permission_ids if pid in self.permissions]
        return replace(role, permission_ids=list(role.permission_ids), permissions=perms)

    def create_role(
        self,
        name: str,
        description: str = "",
        *,
        permission_ids: Optional[Sequence[str]] = None,
        is_system: bool = False,
    ) -> Role:
        with self._data_lock:
            if self._find_role_by_name(name):
                raise UniqueViolation("role", "name", name)
            for pid in permission_ids or []:
                if pid not in self.permissions:
                    raise MissingReference("permission", pid)
            role = Role(
                id=new_id(),
                name=name,
                description=description,
                permission_ids=list(permission_ids or []),
                is_system=is_system,
            )
            self.roles[role.id] = role
            self._persist_state()
            return role

    def get_role(self, role_id: str, *, populate: bool = False) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if role and populate:
                return self._populate_role(role)
            return role

    def get_role_by_name(self, name: str, *, populate: bool = False) -> Optional[Role]:
        with self._data_lock:
            role = self._find_role_by_name(name)
            if role and populate:
                return self._populate_role(role)
            return role

    def list_roles(self, *, populate: bool = False) -> List[Role]:
        with self._data_lock:
            roles = sorted(self.roles.values(), key=lambda r: r.created_at)
            if populate:
                return [self._populate_role(r) for r in roles]
            return roles

    def update_role(self, role_id: str, **changes: Any) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if "name" in changes:
                clash = self._find_role_by_name(changes["name"])
                if clash and clash.id != role_id:
                    raise UniqueViolation("role", "name", changes["name"])
            for pid in changes.get("permission_ids") or []:
                if pid not in self.permissions:
                    raise MissingReference("permission", pid)
            self._apply_changes(role, changes)
            role.updated_at = utcnow()
            self._persist_state()
            return role

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self._persist_state()
            return True

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role_id: Optional[str] = None,
        role_name: str = "user",
        provider: str = Provider.LOCAL.value,
        is_active: bool = True,
        is_email_verified: bool = False,
        otp: Optional[OTPChallenge] = None,
        external_id: Optional[str] = None,
        avatar: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> User:
        normalized = _normalize_email(email)
        with self._data_lock:
            if self._find_live_user_by_email(normalized):
                raise UniqueViolation("user", "email", normalized)
            if role_id is not None and role_id not in self.roles:
                raise MissingReference("role", role_id)
            user = User(
                id=new_id(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role_id=role_id,
                role_name=role_name,
                provider=provider,
                is_active=is_active,
                is_email_verified=is_email_verified,
                otp=otp,
                external_id=external_id,
                avatar=avatar,
                created_by=created_by,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def _find_live_user_by_email(self, normalized: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.email == normalized and not u.is_deleted),
            None,
        )

    def _with_role(self, user: Optional[User], populate_role: bool) -> Optional[User]:
        if not user or not populate_role:
            return user
        role = self.roles.get(user.role_id) if user.role_id else None
        if role is None and user.role_name:
            role = self._find_role_by_name(user.role_name)
        return replace(user, role=self._populate_role(role) if role else None)

    def get_user(self, user_id: str, *, populate_role: bool = False) -> Optional[User]:
        with self._data_lock:
            return self._with_role(self.users.get(user_id), populate_role)

    def get_user_by_email(
        self,
        email: str,
        *,
        include_deleted: bool = False,
        populate_role: bool = False,
    ) -> Optional[User]:
        normalized = _normalize_email(email)
        with self._data_lock:
            user = self._find_live_user_by_email(normalized)
            if user is None and include_deleted:
                user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._with_role(user, populate_role)

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.external_id == external_id and not u.is_deleted),
                None,
            )

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.reset_token_hash and u.reset_token_hash == token_hash and not u.is_deleted
                ),
                None,
            )

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in changes:
                changes["email"] = _normalize_email(changes["email"])
                clash = self._find_live_user_by_email(changes["email"])
                if clash and clash.id != user_id:
                    raise UniqueViolation("user", "email", changes["email"])
            if changes.get("role_id") and changes["role_id"] not in self.roles:
                raise MissingReference("role", changes["role_id"])
            self._apply_changes(user, changes)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_deleted:
                return False
            user.deleted_at = utcnow()
            user.is_active = False
            self._persist_state()
            return True

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            clash = self._find_live_user_by_email(user.email)
            if clash and clash.id != user_id:
                raise UniqueViolation("user", "email", user.email)
            user.deleted_at = None
            user.is_active = True
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("user", user_id)
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _matches(
        self,
        user: User,
        *,
        search: Optional[str],
        role_id: Optional[str],
        role_name: Optional[str],
        is_active: Optional[bool],
        is_email_verified: Optional[bool],
        include_deleted: bool,
    ) -> bool:
        if user.is_deleted and not include_deleted:
            return False
        if role_id is not None and user.role_id != role_id:
            return False
        if role_name is not None and _normalize_name(user.role_name) != _normalize_name(role_name):
            return False
        if is_active is not None and user.is_active != is_active:
            return False
        if is_email_verified is not None and user.is_email_verified != is_email_verified:
            return False
        if search:
            needle = search.strip().lower()
            haystack = " ".join(
                filter(None, [user.email, user.first_name or "", user.last_name or ""])
            ).lower()
            if needle not in haystack:
                return False
        return True

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        role_id: Optional[str] = None,
        role_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        include_deleted: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        with self._data_lock:
            matched = [
                u
                for u in self.users.values()
                if self._matches(
                    u,
                    search=search,
                    role_id=role_id,
                    role_name=role_name,
                    is_active=is_active,
                    is_email_verified=None,
                    include_deleted=include_deleted,
                )
            ]
            matched.sort(key=lambda u: u.created_at, reverse=True)
            start = max(page - 1, 0) * limit
            return matched[start : start + limit], len(matched)

    def count_users(
        self,
        *,
        role_id: Optional[str] = None,
        role_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_email_verified: Optional[bool] = None,
        include_deleted: bool = False,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for u in self.users.values()
                if self._matches(
                    u,
                    search=None,
                    role_id=role_id,
                    role_name=role_name,
                    is_active=is_active,
                    is_email_verified=is_email_verified,
                    include_deleted=include_deleted,
                )
            )

    def rename_role_for_users(self, role_id: str, new_name: str) -> int:
        with self._data_lock:
            changed = 0
            for user in self.users.values():
                if user.role_id == role_id:
                    user.role_name = new_name
                    changed += 1
            if changed:
                self._persist_state()
            return changed

    # login attempts
    def record_login_attempt(
        self, ip: str, email: str, *, is_privileged: bool, window_seconds: int
    ) -> LoginAttempt:
        key = (ip, _normalize_email(email))
        now = utcnow()
        with self._data_lock:
            self._drop_expired_attempts(window_seconds, now)
            attempt = self.login_attempts.get(key)
            if attempt and not attempt.is_expired(window_seconds, now):
                attempt.attempts += 1
                attempt.last_attempt = now
                attempt.is_privileged = is_privileged
            else:
                attempt = LoginAttempt(
                    ip=ip,
                    email=key[1],
                    attempts=1,
                    is_privileged=is_privileged,
                    last_attempt=now,
                    created_at=now,
                )
                self.login_attempts[key] = attempt
            self._persist_state()
            return attempt

    def get_login_attempt(
        self, ip: str, email: str, *, window_seconds: int
    ) -> Optional[LoginAttempt]:
        key = (ip, _normalize_email(email))
        with self._data_lock:
            attempt = self.login_attempts.get(key)
            if attempt and attempt.is_expired(window_seconds):
                self.login_attempts.pop(key, None)
                self._persist_state()
                return None
            return attempt

    def delete_login_attempt(self, ip: str, email: str) -> bool:
        with self._data_lock:
            removed = self.login_attempts.pop((ip, _normalize_email(email)), None)
            if removed:
                self._persist_state()
            return removed is not None

    def purge_login_attempts(self, *, window_seconds: int, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            removed = self._drop_expired_attempts(window_seconds, now or utcnow())
            if removed:
                self._persist_state()
            return removed

    def _drop_expired_attempts(self, window_seconds: int, now: datetime) -> int:
        expired = [k for k, a in self.login_attempts.items() if a.is_expired(window_seconds, now)]
        for key in expired:
            del self.login_attempts[key]
        return len(expired)

    # banned IPs
    def get_ban(self, ip: str) -> Optional[BannedIP]:
        with self._data_lock:
            return self.bans.get(ip)

    def upsert_ban(
        self,
        ip: str,
        reason: str,
        *,
        expires_at: datetime,
        evidence: Optional[Dict] = None,
    ) -> BannedIP:
        now = utcnow()
        with self._data_lock:
            ban = self.bans.get(ip)
            if ban:
                ban.reason = reason
                ban.banned_at = now
                ban.expires_at = expires_at
                ban.attempts += 1
                if evidence:
                    ban.evidence = evidence
            else:
                ban = BannedIP(
                    ip=ip,
                    reason=reason,
                    expires_at=expires_at,
                    banned_at=now,
                    evidence=evidence,
                    attempts=1,
                )
                self.bans[ip] = ban
            self._persist_state()
            return ban

    def delete_ban(self, ip: str) -> int:
        with self._data_lock:
            removed = self.bans.pop(ip, None)
            if removed:
                self._persist_state()
            return 1 if removed else 0

    def list_bans(self, *, active_only: bool = True) -> List[BannedIP]:
        now = utcnow()
        with self._data_lock:
            bans = [b for b in self.bans.values() if b.is_active(now) or not active_only]
            return sorted(bans, key=lambda b: b.banned_at, reverse=True)

    def delete_expired_bans(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [ip for ip, ban in self.bans.items() if not ban.is_active(now)]
            for ip in expired:
                self.bans.pop(ip, None)
            if expired:
                self._persist_state()
            return len(expired)

    # sessions
    def create_session(
        self,
        user_id: str,
        token: str,
        *,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        platform: str = "Unknown",
        browser: str = "Unknown",
        device: str = "Unknown",
        location: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("user", user_id)
            if any(s.token == token for s in self.sessions.values()):
                raise UniqueViolation("session", "token", token[:8])
            now = utcnow()
            sess = Session(
                id=new_id(),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                platform=platform,
                browser=browser,
                device=device,
                location=location,
                is_active=True,
                last_active=now,
                created_at=now,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return next((s for s in self.sessions.values() if s.token == token), None)

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            self._apply_changes(sess, changes)
            self._persist_state()
            return sess

    def list_active_sessions(self, user_id: str) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            live = [s for s in self.sessions.values() if s.user_id == user_id and s.is_live(now)]
            return sorted(live, key=lambda s: s.last_active, reverse=True)

    def count_active_sessions(self, user_id: str) -> int:
        now = utcnow()
        with self._data_lock:
            return sum(
                1 for s in self.sessions.values() if s.user_id == user_id and s.is_live(now)
            )

    def find_oldest_active_sessions(self, user_id: str, limit: int) -> List[Session]:
        if limit <= 0:
            return []
        now = utcnow()
        with self._data_lock:
            live = [s for s in self.sessions.values() if s.user_id == user_id and s.is_live(now)]
            live.sort(key=lambda s: s.last_active)
            return live[:limit]

    def deactivate_sessions(self, session_ids: Iterable[str]) -> int:
        with self._data_lock:
            changed = 0
            for sid in session_ids:
                sess = self.sessions.get(sid)
                if sess and sess.is_active:
                    sess.is_active = False
                    changed += 1
            if changed:
                self._persist_state()
            return changed

    def deactivate_user_session(self, session_id: str, user_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or not sess.is_active:
                return None
            sess.is_active = False
            self._persist_state()
            return sess

    def deactivate_sessions_except(self, user_id: str, keep_token: str) -> int:
        with self._data_lock:
            ids = [
                s.id
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.token != keep_token
            ]
            return self.deactivate_sessions(ids)

    def deactivate_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            ids = [s.id for s in self.sessions.values() if s.user_id == user_id and s.is_active]
            return self.deactivate_sessions(ids)

    def purge_sessions(self, *, retention_days: int, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - timedelta(days=retention_days)
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if s.expires_at <= now or s.last_active < cutoff
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit log
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()
            return entry

    def get_audit_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        with self._data_lock:
            return next((e for e in self.audit_log if e.id == entry_id), None)

    def list_audit_entries(
        self,
        *,
        resource_type: Optional[str] = None,
        actor_email: Optional[str] = None,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[AuditLogEntry], int]:
        with self._data_lock:
            matched = []
            for entry in self.audit_log:
                if resource_type and entry.resource_type != resource_type:
                    continue
                if actor_email and actor_email.lower() not in (entry.actor_email or "").lower():
                    continue
                if action and action.lower() not in entry.action.lower():
                    continue
                if resource_id and entry.resource_id != resource_id:
                    continue
                if date_from and entry.created_at < date_from:
                    continue
                if date_to and entry.created_at > date_to:
                    continue
                matched.append(entry)
            matched.sort(key=lambda e: e.created_at, reverse=True)
            start = max(page - 1, 0) * limit
            return matched[start : start + limit], len(matched)

    # persistence
    @staticmethod
    def _apply_changes(obj: Any, changes: Dict[str, Any]) -> None:
        valid = {f.name for f in fields(obj)} - _TRANSIENT_FIELDS
        unknown = set(changes) - valid
        if unknown:
            raise ValueError(f"unknown fields for {type(obj).__name__}: {sorted(unknown)}")
        for name, value in changes.items():
            setattr(obj, name, value)

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data: Dict[str, Any] = {}
        for f in fields(obj):
            if f.name in _TRANSIENT_FIELDS:
                continue
            value = getattr(obj, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, OTPChallenge):
                value = {"code": value.code, "expires_at": value.expires_at.isoformat()}
            data[f.name] = value
        return data

    @staticmethod
    def _deserialize(cls: type, data: dict) -> Any:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name in _TRANSIENT_FIELDS or f.name not in data:
                continue
            value = data[f.name]
            if value is not None and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            elif f.name == "otp" and value:
                value = OTPChallenge(
                    code=value["code"], expires_at=datetime.fromisoformat(value["expires_at"])
                )
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "permissions": [self._serialize(p) for p in self.permissions.values()],
            "login_attempts": [self._serialize(a) for a in self.login_attempts.values()],
            "bans": [self._serialize(b) for b in self.bans.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "audit_log": [self._serialize(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.roles = {r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])}
        self.permissions = {
            p["id"]: self._deserialize(Permission, p) for p in data.get("permissions", [])
        }
        self.login_attempts = {}
        for raw in data.get("login_attempts", []):
            attempt = self._deserialize(LoginAttempt, raw)
            self.login_attempts[(attempt.ip, attempt.email)] = attempt
        self.bans = {b["ip"]: self._deserialize(BannedIP, b) for b in data.get("bans", [])}
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.audit_log = [self._deserialize(AuditLogEntry, e) for e in data.get("audit_log", [])]
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            roles=len(self.roles),
            sessions=len(self.sessions),
        )
        return True
