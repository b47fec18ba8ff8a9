from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a store rejects a write that would break one of its constraints."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UniqueViolation(ConstraintViolation):
    """A case-insensitive unique key (user email, role name, session token) already exists."""

    def __init__(self, table: str, field: str, value: str):
        super().__init__(
            f"{table} {field} already exists", {"table": table, "field": field, "value": value}
        )
        self.table = table
        self.field = field
        self.value = value


class MissingReference(ConstraintViolation):
    """A write referenced a row (user, role, permission) that does not exist."""

    def __init__(self, table: str, ref_id: str):
        super().__init__(f"{table} not found", {"table": table, "id": ref_id})
        self.table = table
        self.ref_id = ref_id


__all__ = ["ConstraintViolation", "UniqueViolation", "MissingReference"]
