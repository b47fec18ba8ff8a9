from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from rbacauth.logging import get_logger
from rbacauth.service.background import BackgroundDispatcher
from rbacauth.service.errors import NotFoundError, ValidationError
from rbacauth.service.permissions import PermissionModel
from rbacauth.storage.models import AuditLogEntry, new_id

logger = get_logger(__name__)

AUDIT_FILTERS = ("resource_type", "actor_email", "action", "resource_id", "date_from", "date_to")


class AuditStore(Protocol):
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def get_audit_entry(self, entry_id: str) -> Optional[AuditLogEntry]: ...

    def list_audit_entries(self, **filters: Any) -> Tuple[List[AuditLogEntry], int]: ...


def diff_changes(
    before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Fields of ``after`` whose value differs from ``before`` as {old, new} pairs."""
    if not before or not after:
        return {}
    return {
        key: {"old": before.get(key), "new": value}
        for key, value in after.items()
        if before.get(key) != value
    }


def audit_entry_to_dict(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "actor_email": entry.actor_email,
        "actor_name": entry.actor_name,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "resource_name": entry.resource_name,
        "details": entry.details,
        "changes": entry.changes,
        "ip": entry.ip,
        "user_agent": entry.user_agent,
        "created_at": entry.created_at.isoformat(),
    }


class AuditSink:
    """Append-only audit trail written off the request path.

    ``record`` builds the entry immediately and hands the write to the
    dispatcher; a failed write is logged and never reaches the caller.
    """

    def __init__(self, store: AuditStore, dispatcher: BackgroundDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    def record(
        self,
        action: str,
        resource_type: str,
        *,
        actor: Any = None,
        resource_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        first = getattr(actor, "first_name", None)
        last = getattr(actor, "last_name", None)
        actor_name = f"{first or ''} {last or ''}".strip() or None
        entry = AuditLogEntry(
            id=new_id(),
            action=action,
            resource_type=getattr(resource_type, "value", resource_type),
            actor_id=getattr(actor, "id", None),
            actor_email=getattr(actor, "email", None),
            actor_name=actor_name,
            resource_id=resource_id,
            resource_name=resource_name,
            details=dict(details or {}),
            changes=changes or None,
            ip=ip or "unknown",
            user_agent=user_agent or "",
        )
        self.dispatcher.submit(self._write(entry), label=f"audit:{action}")
        return entry

    def record_changes(
        self,
        action: str,
        resource_type: str,
        *,
        before: Optional[Mapping[str, Any]],
        after: Optional[Mapping[str, Any]],
        **kwargs: Any,
    ) -> AuditLogEntry:
        return self.record(
            action, resource_type, changes=diff_changes(before, after) or None, **kwargs
        )

    async def _write(self, entry: AuditLogEntry) -> None:
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                resource_type=entry.resource_type,
                error=str(exc),
            )


def _parse_date(value: Any, field: str) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}", detail={"field": field}) from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class AuditLogService:
    """Read side of the audit trail, gated on ``audit-logs:read``."""

    def __init__(self, store: AuditStore, permissions: PermissionModel) -> None:
        self.store = store
        self.permissions = permissions

    def list_logs(
        self,
        actor: Any,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "audit-logs:read", "audit logs")
        allowed = {k: v for k, v in (filters or {}).items() if k in AUDIT_FILTERS and v not in (None, "")}
        for key in ("date_from", "date_to"):
            if key in allowed:
                allowed[key] = _parse_date(allowed[key], key)
        page = max(page, 1)
        limit = max(min(limit, 200), 1)
        entries, total = self.store.list_audit_entries(page=page, limit=limit, **allowed)
        return {
            "logs": [audit_entry_to_dict(e) for e in entries],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def get_log(self, actor: Any, log_id: str) -> Dict[str, Any]:
        self.permissions.require_permission(actor, "audit-logs:read", "audit log")
        entry = self.store.get_audit_entry(log_id)
        if entry is None:
            raise NotFoundError("Audit log not found")
        return audit_entry_to_dict(entry)
