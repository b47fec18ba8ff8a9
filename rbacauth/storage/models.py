from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


SYSTEM_ROLE_NAMES = ("super admin", "admin", "employee", "user")


class Provider(str, Enum):
    LOCAL = "local"
    OAUTH = "oauth"


class BanReason(str, Enum):
    BOT_DETECTION = "bot_detection"
    FAILED_LOGIN = "failed_login"
    FAILED_ADMIN_LOGIN = "failed_admin_login"
    MANUAL_BAN = "manual_ban"


class ResourceType(str, Enum):
    USER = "user"
    ROLE = "role"
    SESSION = "session"
    AUTH = "auth"
    SYSTEM = "system"


@dataclass
class Permission:
    id: str
    resource: str
    action: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.action}"

    @classmethod
    def from_key(cls, key: str, description: str = "") -> "Permission":
        resource, _, action = key.partition(":")
        return cls(id=new_id(), resource=resource, action=action, description=description)


@dataclass
class Role:
    id: str
    name: str
    description: str = ""
    permission_ids: List[str] = field(default_factory=list)
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    # Populated on demand; never persisted
    permissions: Optional[List[Permission]] = None

    @property
    def permission_names(self) -> List[str]:
        return [p.key for p in self.permissions or []]


@dataclass
class OTPChallenge:
    code: str
    expires_at: datetime

    @classmethod
    def new(cls, code: str, ttl_minutes: int) -> "OTPChallenge":
        return cls(code=code, expires_at=utcnow() + timedelta(minutes=ttl_minutes))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class User:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role_id: Optional[str] = None
    role_name: str = "user"
    provider: str = Provider.LOCAL.value
    is_active: bool = True
    is_email_verified: bool = False
    otp: Optional[OTPChallenge] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    external_id: Optional[str] = None
    avatar: Optional[str] = None
    created_by: Optional[str] = None
    last_login: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    # Populated on demand; never persisted
    role: Optional[Role] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class LoginAttempt:
    ip: str
    email: str
    attempts: int = 1
    is_privileged: bool = False
    last_attempt: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, window_seconds: int, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.last_attempt + timedelta(seconds=window_seconds)


@dataclass
class BannedIP:
    ip: str
    reason: str
    expires_at: datetime
    banned_at: datetime = field(default_factory=utcnow)
    evidence: Optional[Dict] = None
    attempts: int = 1

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    platform: str = "Unknown"
    browser: str = "Unknown"
    device: str = "Unknown"
    location: Dict | None = None
    is_active: bool = True
    last_active: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())


@dataclass
class AuditLogEntry:
    id: str
    action: str
    resource_type: str
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    actor_name: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    details: Dict = field(default_factory=dict)
    changes: Optional[Dict] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
