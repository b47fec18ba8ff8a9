from __future__ import annotations

import asyncio
import math
import secrets
import string
from typing import Any, Dict, Mapping, Optional

from rbacauth.logging import get_logger
from rbacauth.service.audit import AuditSink
from rbacauth.service.auth import AuthEngine, require_strong_password, user_to_dict
from rbacauth.service.email import EmailSender
from rbacauth.service.errors import (
    ConflictError,
    DependencyFailure,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from rbacauth.service.permissions import PermissionModel
from rbacauth.service.sessions import SessionRegistry
from rbacauth.storage.errors import UniqueViolation
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.models import OTPChallenge, Provider, ResourceType, User

logger = get_logger(__name__)

ADMIN_ROLE_NAMES = ("admin", "super admin")
# Fields an administrator may change on another account
_EDITABLE_FIELDS = ("email", "first_name", "last_name", "role_name", "is_active", "avatar")
_SELF_SERVICE_FIELDS = ("email", "first_name", "last_name", "avatar")


def _is_admin(actor: Any) -> bool:
    return (getattr(actor, "role_name", "") or "").strip().lower() in ADMIN_ROLE_NAMES


def _audit_state(user: User) -> Dict[str, Any]:
    return {
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role_name": user.role_name,
        "is_active": user.is_active,
        "is_email_verified": user.is_email_verified,
    }


def _generate_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class UserService:
    """Permission-gated user administration and self-service profile edits."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        auth: AuthEngine,
        permissions: PermissionModel,
        audit: AuditSink,
        sessions: SessionRegistry,
        email: EmailSender,
    ) -> None:
        self.store = store
        self.auth = auth
        self.permissions = permissions
        self.audit = audit
        self.sessions = sessions
        self.email = email

    def _get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id, populate_role=True)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def create_user(
        self,
        actor: User,
        *,
        email: str,
        password: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role_name: str = "employee",
    ) -> Dict[str, Any]:
        """Create an account on behalf of an administrator.

        Staff roles (those granted ``employees:create``) get a generated
        password mailed together with a verification code; other roles need
        an explicit password.
        """
        self.permissions.require_permission(actor, "users:create", "user creation")
        if not email:
            raise ValidationError("Email is required")
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists")
        role = self.store.get_role_by_name(role_name)
        if role is None:
            raise ServerError(f"{role_name} role not found. Please seed the database.")

        staff_role = "employees:create" in self.permissions.resolve_permissions(role.name)
        if staff_role:
            password = _generate_password()
        elif not password:
            raise ValidationError("Password is required for user role")
        else:
            require_strong_password(password, self.auth.settings.password_min_length)

        otp = (
            OTPChallenge.new(self.auth.generate_otp(), self.auth.settings.otp_ttl_minutes)
            if staff_role
            else None
        )
        try:
            user = self.store.create_user(
                email,
                first_name=first_name,
                last_name=last_name,
                role_id=role.id,
                role_name=role.name,
                provider=Provider.LOCAL.value,
                is_email_verified=False,
                otp=otp,
                created_by=actor.id,
            )
        except UniqueViolation as exc:
            raise ConflictError("User already exists") from exc
        self.auth.save_password(user.id, password)

        if otp is not None:
            try:
                await asyncio.to_thread(
                    self.email.send_otp,
                    user.email,
                    otp.code,
                    first_name or "User",
                    password,
                    user.id,
                )
            except Exception as exc:
                self.store.soft_delete_user(user.id)
                logger.error("user_invite_email_failed", user_id=user.id, error=str(exc))
                raise DependencyFailure(
                    "Failed to send verification email. Please try again."
                ) from exc

        self.audit.record(
            "USER_CREATED",
            ResourceType.USER.value,
            actor=actor,
            resource_id=user.id,
            resource_name=user.display_name,
            details={
                "created_by": actor.email,
                "role_name": role.name,
                "is_email_verified": False,
            },
        )
        return {"user": user_to_dict(user), "requires_verification": otp is not None}

    def list_users(
        self,
        actor: User,
        *,
        search: Optional[str] = None,
        role_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "users:read", "users list")
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        users, total = self.store.list_users(
            search=search, role_name=role_name, is_active=is_active, page=page, limit=limit
        )
        return {
            "users": [user_to_dict(u) for u in users],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def get_user(self, actor: User, user_id: str) -> Dict[str, Any]:
        if not self.permissions.can_access_resource(actor, user_id, "users:read"):
            raise ForbiddenError("Not authorized to view this user")
        user = self._get_user(user_id)
        return user_to_dict(user)

    def update_user(
        self,
        actor: User,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.permissions.can_access_resource(actor, user_id, "users:update"):
            raise ForbiddenError("Not authorized to update this user")
        user = self._get_user(user_id)
        admin = _is_admin(actor)
        if admin and str(actor.id) == str(user_id):
            raise ValidationError("You cannot edit your own account.")

        allowed = _EDITABLE_FIELDS if admin else _SELF_SERVICE_FIELDS
        updates = {k: v for k, v in changes.items() if k in allowed and v is not None}
        password = changes.get("password")

        if "role_name" in updates:
            role = self.store.get_role_by_name(updates["role_name"])
            if role is None:
                raise ValidationError("Role not found", detail={"role_name": updates["role_name"]})
            updates["role_name"] = role.name
            updates["role_id"] = role.id

        before = _audit_state(user)
        if password:
            require_strong_password(password, self.auth.settings.password_min_length)
            self.auth.save_password(user.id, password)
        try:
            updated = self.store.update_user(user.id, **updates) if updates else user
        except UniqueViolation as exc:
            raise ConflictError("Email already in use") from exc

        after = _audit_state(updated)
        action = "USER_PROMOTED" if before["role_name"] != after["role_name"] else "USER_UPDATED"
        updated_fields = sorted(updates) + (["password"] if password else [])
        self.audit.record_changes(
            action,
            ResourceType.USER.value,
            before=before,
            after=after,
            actor=actor,
            resource_id=updated.id,
            resource_name=updated.display_name,
            details={"updated_fields": updated_fields},
            ip=ip,
            user_agent=user_agent,
        )
        return user_to_dict(updated)

    def delete_user(self, actor: User, user_id: str) -> Dict[str, Any]:
        if str(actor.id) == str(user_id):
            raise ValidationError("Cannot delete your own account")
        self.permissions.require_permission(actor, "users:delete", "user deletion")
        user = self._get_user(user_id)
        if user.is_deleted:
            raise NotFoundError("User not found")
        self.store.soft_delete_user(user.id)
        self.store.deactivate_user_sessions(user.id)
        self.audit.record(
            "USER_DELETED",
            ResourceType.USER.value,
            actor=actor,
            resource_id=user.id,
            resource_name=user.display_name,
            details={"reason": "soft_delete"},
        )
        return {}

    def restore_user(self, actor: User, user_id: str) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "users:restore", "user restoration")
        user = self._get_user(user_id)
        if not user.is_deleted:
            raise ValidationError("User is not deleted")
        try:
            restored = self.store.restore_user(user.id)
        except UniqueViolation as exc:
            raise ConflictError("Another account already uses this email") from exc
        self.audit.record(
            "USER_RESTORED",
            ResourceType.USER.value,
            actor=actor,
            resource_id=restored.id,
            resource_name=restored.display_name,
            details={"restored_by": actor.email},
        )
        return user_to_dict(restored)

    def get_user_stats(self, actor: User) -> Dict[str, int]:
        self.permissions.require_permission(actor, "dashboard:view", "user statistics")
        return {
            "total": self.store.count_users(),
            "active": self.store.count_users(is_active=True),
            "unverified": self.store.count_users(is_email_verified=False),
        }

    def get_user_sessions(
        self, actor: User, user_id: str, current_token: Optional[str] = None
    ) -> list:
        if not self.permissions.can_access_resource(actor, user_id, "users:view-sessions"):
            raise ForbiddenError("Not authorized to view sessions")
        return self.sessions.list_active(user_id, current_token)

    def terminate_session(self, actor: User, user_id: str, session_id: str) -> Dict[str, Any]:
        if not self.permissions.can_access_resource(actor, user_id, "users:terminate-sessions"):
            self.permissions.require_permission(
                actor, "users:terminate-sessions", "session termination"
            )
        self.sessions.terminate(session_id, user_id)
        self.audit.record(
            "SESSION_TERMINATED",
            ResourceType.SESSION.value,
            actor=actor,
            resource_id=session_id,
            details={"user_id": user_id},
        )
        return {"message": "Session terminated successfully"}

    def terminate_other_sessions(
        self, actor: User, user_id: str, current_token: str
    ) -> Dict[str, Any]:
        if not self.permissions.can_access_resource(actor, user_id, "users:terminate-sessions"):
            self.permissions.require_permission(
                actor, "users:terminate-sessions", "session termination"
            )
        count = self.sessions.terminate_all_except_current(user_id, current_token)
        self.audit.record(
            "SESSIONS_TERMINATED",
            ResourceType.SESSION.value,
            actor=actor,
            resource_id=user_id,
            details={"terminated_count": count},
        )
        return {
            "message": f"Terminated {count} session(s) successfully",
            "terminated_count": count,
        }
