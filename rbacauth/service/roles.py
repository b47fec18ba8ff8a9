from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from rbacauth.logging import get_logger
from rbacauth.service.audit import AuditSink
from rbacauth.service.errors import ConflictError, NotFoundError, ValidationError
from rbacauth.service.permissions import PermissionModel
from rbacauth.storage.errors import UniqueViolation
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.models import SYSTEM_ROLE_NAMES, Permission, ResourceType, Role, User

logger = get_logger(__name__)

ACTION_ORDER = ("read", "create", "update", "delete", "manage")
SAMPLE_USER_COUNT = 3


def _action_rank(action: str) -> int:
    try:
        return ACTION_ORDER.index(action)
    except ValueError:
        return len(ACTION_ORDER)


def permission_to_dict(perm: Permission) -> Dict[str, Any]:
    return {
        "id": perm.id,
        "key": perm.key,
        "resource": perm.resource,
        "action": perm.action,
        "description": perm.description,
    }


def role_to_dict(role: Role) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "is_system": role.is_system,
        "created_at": role.created_at.isoformat(),
        "updated_at": role.updated_at.isoformat() if role.updated_at else None,
    }
    if role.permissions is not None:
        data["permissions"] = [permission_to_dict(p) for p in role.permissions]
    return data


def _is_system_role(role: Role) -> bool:
    return role.is_system or role.name.strip().lower() in SYSTEM_ROLE_NAMES


class RoleService:
    """Role and permission administration.

    System roles (super admin, admin, employee, user) cannot be renamed,
    re-permissioned or deleted; custom roles can, and deletion is refused
    while any live user still holds the role.
    """

    def __init__(
        self, store: MemoryStore, *, permissions: PermissionModel, audit: AuditSink
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.audit = audit

    def _get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id, populate=True)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    def _sample_users(self, role: Role) -> List[Dict[str, Any]]:
        users, _ = self.store.list_users(role_id=role.id, page=1, limit=SAMPLE_USER_COUNT)
        return [
            {
                "id": u.id,
                "first_name": u.first_name,
                "last_name": u.last_name,
                "email": u.email,
                "avatar": u.avatar,
            }
            for u in users
        ]

    def list_roles(self, actor: User) -> List[Dict[str, Any]]:
        self.permissions.require_permission(actor, "roles:read", "roles list")
        result = []
        for role in self.store.list_roles(populate=True):
            data = role_to_dict(role)
            data["user_count"] = self.store.count_users(role_id=role.id)
            data["users"] = self._sample_users(role)
            result.append(data)
        return result

    def list_permissions(self, actor: User) -> List[Dict[str, Any]]:
        self.permissions.require_permission(actor, "roles:read", "permissions list")
        perms = sorted(
            self.store.list_permissions(), key=lambda p: (p.resource, _action_rank(p.action))
        )
        return [permission_to_dict(p) for p in perms]

    def get_role(self, actor: User, role_id: str) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "roles:read", "role details")
        role = self._get_role(role_id)
        data = role_to_dict(role)
        data["user_count"] = self.store.count_users(role_id=role.id)
        return data

    def create_role(
        self, actor: User, *, name: str, description: Optional[str] = None
    ) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "roles:create", "role creation")
        normalized = (name or "").strip()
        if not normalized:
            raise ValidationError("Role name is required")
        if self.store.get_role_by_name(normalized):
            raise ConflictError(f'Role with name "{normalized}" already exists')
        try:
            role = self.store.create_role(normalized, (description or "").strip())
        except UniqueViolation as exc:
            raise ConflictError(f'Role with name "{normalized}" already exists') from exc

        self.audit.record(
            "ROLE_CREATED",
            ResourceType.ROLE.value,
            actor=actor,
            resource_id=role.id,
            resource_name=role.name,
            details={"description": role.description},
        )
        logger.info("role_created", role_id=role.id, role_name=role.name)
        return role_to_dict(self._get_role(role.id))

    def update_role(
        self,
        actor: User,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "roles:update", "role update")
        role = self._get_role(role_id)
        if _is_system_role(role):
            raise ValidationError(f'Cannot update system role "{role.name}"')

        updates: Dict[str, Any] = {}
        if name and name.strip() != role.name:
            normalized = name.strip()
            clash = self.store.get_role_by_name(normalized)
            if clash and clash.id != role_id:
                raise ConflictError(f'Role with name "{normalized}" already exists')
            updates["name"] = normalized
        if description is not None:
            updates["description"] = description.strip()

        if updates:
            try:
                self.store.update_role(role_id, **updates)
            except UniqueViolation as exc:
                raise ConflictError(f'Role with name "{updates["name"]}" already exists') from exc
            if "name" in updates:
                self.store.rename_role_for_users(role_id, updates["name"])

        updated = self._get_role(role_id)
        self.audit.record_changes(
            "ROLE_UPDATED",
            ResourceType.ROLE.value,
            before={"name": role.name, "description": role.description},
            after={"name": updated.name, "description": updated.description},
            actor=actor,
            resource_id=updated.id,
            resource_name=updated.name,
            details={"updated_fields": sorted(updates)},
        )
        data = role_to_dict(updated)
        data["user_count"] = self.store.count_users(role_id=role_id)
        return data

    def update_role_permissions(
        self, actor: User, role_id: str, permission_ids: Sequence[str]
    ) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "roles:update", "role permissions")
        role = self._get_role(role_id)
        if _is_system_role(role):
            raise ValidationError(f'Cannot update permissions for system role "{role.name}"')
        if not isinstance(permission_ids, (list, tuple)):
            raise ValidationError("permission_ids must be an array")
        unique_ids = list(dict.fromkeys(permission_ids))
        if len(self.store.get_permissions_by_ids(unique_ids)) != len(unique_ids):
            raise ValidationError("One or more permission IDs are invalid")

        before = sorted(p.key for p in role.permissions or [])
        self.store.update_role(role_id, permission_ids=unique_ids)
        updated = self._get_role(role_id)
        self.audit.record_changes(
            "ROLE_PERMISSIONS_UPDATED",
            ResourceType.ROLE.value,
            before={"permissions": before},
            after={"permissions": sorted(updated.permission_names)},
            actor=actor,
            resource_id=updated.id,
            resource_name=updated.name,
        )
        return role_to_dict(updated)

    def delete_role(self, actor: User, role_id: str) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "roles:delete", "role deletion")
        role = self._get_role(role_id)
        if _is_system_role(role):
            raise ValidationError(f'Cannot delete system role "{role.name}"')
        user_count = self.store.count_users(role_id=role.id)
        if user_count > 0:
            raise ValidationError(
                f"Cannot delete role. {user_count} user(s) are assigned to this role. "
                "Please reassign users before deleting."
            )
        self.store.delete_role(role_id)
        self.audit.record(
            "ROLE_DELETED",
            ResourceType.ROLE.value,
            actor=actor,
            resource_id=role.id,
            resource_name=role.name,
            details={"description": role.description},
        )
        return {}
