from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional

from rbacauth.service.errors import PermissionDeniedError

SUPER_ADMIN_ROLE = "super admin"
GOD_MODE = "*"

_USER_ADMIN_PERMISSIONS = (
    "users:create",
    "users:read",
    "users:update",
    "users:delete",
    "users:manage",
    "users:restore",
    "users:view-sessions",
    "users:terminate-sessions",
    "employees:create",
    "employees:read",
    "employees:update",
    "employees:delete",
)

DEFAULT_ROLE_PERMISSIONS: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        SUPER_ADMIN_ROLE: _USER_ADMIN_PERMISSIONS
        + (
            "roles:create",
            "roles:read",
            "roles:update",
            "roles:delete",
            "roles:manage",
            "billing:read",
            "billing:update",
            "system:read",
            "system:manage",
            "audit-logs:read",
            "dashboard:view",
        ),
        "admin": _USER_ADMIN_PERMISSIONS + ("roles:read", "audit-logs:read", "dashboard:view"),
        "employee": ("employees:read",),
        "user": (),
    }
)


def _normalize_role(name: Optional[str]) -> str:
    return (name or "").strip().lower()


@dataclass(frozen=True)
class PermissionMap:
    """Read-only role name -> permission keys table, loaded once at startup."""

    roles: Mapping[str, FrozenSet[str]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "PermissionMap":
        frozen = {_normalize_role(name): frozenset(keys) for name, keys in mapping.items()}
        return cls(roles=MappingProxyType(frozen))

    def get(self, role_name: Optional[str]) -> FrozenSet[str]:
        return self.roles.get(_normalize_role(role_name), frozenset())


def _permission_name(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry
    key = getattr(entry, "key", None)
    if key:
        return key
    resource = getattr(entry, "resource", None)
    action = getattr(entry, "action", None)
    if resource and action:
        return f"{resource}:{action}"
    return None


class PermissionModel:
    """Allow/deny decisions over a principal and its populated role."""

    def __init__(self, permission_map: PermissionMap) -> None:
        self.permission_map = permission_map

    def resolve_permissions(self, role_name: Optional[str]) -> FrozenSet[str]:
        return self.permission_map.get(role_name)

    @staticmethod
    def _role_name(principal: Any) -> str:
        role = getattr(principal, "role", None)
        name = getattr(role, "name", None) if role is not None else None
        return _normalize_role(name or getattr(principal, "role_name", None))

    @staticmethod
    def _granted(principal: Any) -> Optional[set[str]]:
        role = getattr(principal, "role", None)
        if role is None:
            return None
        entries = getattr(role, "permissions", None)
        if entries is None:
            return None
        return {name for name in map(_permission_name, entries) if name}

    def has_permission(self, principal: Any, permission: str) -> bool:
        if principal is None or not permission:
            return False
        # Hard-coded so an empty or corrupted permission table cannot lock out super admins
        if self._role_name(principal) == SUPER_ADMIN_ROLE:
            return True
        granted = self._granted(principal)
        if granted is None:
            return False
        return GOD_MODE in granted or permission in granted

    def require_permission(
        self, principal: Any, permission: str, resource: str = "resource"
    ) -> None:
        if not self.has_permission(principal, permission):
            raise PermissionDeniedError(permission, resource)

    def can_access_resource(self, principal: Any, owner_id: Any, permission: str) -> bool:
        if principal is None:
            return False
        if self.has_permission(principal, permission):
            return True
        principal_id = getattr(principal, "id", None)
        if principal_id is None or owner_id is None:
            return False
        return str(principal_id) == str(owner_id)

    def effective_permissions(self, principal: Any) -> List[str]:
        if principal is None:
            return []
        if self._role_name(principal) == SUPER_ADMIN_ROLE:
            return [GOD_MODE]
        return sorted(self._granted(principal) or ())


__all__ = [
    "DEFAULT_ROLE_PERMISSIONS",
    "GOD_MODE",
    "PermissionMap",
    "PermissionModel",
    "SUPER_ADMIN_ROLE",
]
