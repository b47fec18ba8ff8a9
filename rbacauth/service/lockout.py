from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from rbacauth.logging import get_logger
from rbacauth.storage.models import BanReason, LoginAttempt

logger = get_logger(__name__)

_PRIVILEGED_EMAIL_PATTERNS = (
    re.compile(r"^admin@", re.IGNORECASE),
    re.compile(r"administrator@", re.IGNORECASE),
)


def is_privileged_email(email: str) -> bool:
    return any(pattern.search(email or "") for pattern in _PRIVILEGED_EMAIL_PATTERNS)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int
    ban_hours: float
    reason: str


class AttemptStore(Protocol):
    def record_login_attempt(
        self, ip: str, email: str, *, is_privileged: bool, window_seconds: int
    ) -> LoginAttempt: ...

    def get_login_attempt(
        self, ip: str, email: str, *, window_seconds: int
    ) -> Optional[LoginAttempt]: ...

    def delete_login_attempt(self, ip: str, email: str) -> bool: ...

    def purge_login_attempts(
        self, *, window_seconds: int, now: Optional[datetime] = None
    ) -> int: ...


class LockoutTracker:
    """Failed-login counters per (ip, email) with a sliding expiry window.

    Counters live in the shared store or, when a Redis cache is configured,
    in Redis where the increment and expiry happen in one script.
    """

    def __init__(
        self,
        store: AttemptStore,
        *,
        cache=None,
        window_seconds: int = 3600,
        max_attempts: int = 10,
        ban_hours: float = 0.5,
        privileged_max_attempts: int = 5,
        privileged_ban_hours: float = 1.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.window_seconds = window_seconds
        self.standard_policy = LockoutPolicy(
            max_attempts=max_attempts,
            ban_hours=ban_hours,
            reason=BanReason.FAILED_LOGIN.value,
        )
        self.privileged_policy = LockoutPolicy(
            max_attempts=privileged_max_attempts,
            ban_hours=privileged_ban_hours,
            reason=BanReason.FAILED_ADMIN_LOGIN.value,
        )

    @classmethod
    def from_settings(cls, store: AttemptStore, settings, *, cache=None) -> "LockoutTracker":
        return cls(
            store,
            cache=cache,
            window_seconds=settings.lockout_window_seconds,
            max_attempts=settings.lockout_max_attempts,
            ban_hours=settings.lockout_ban_hours,
            privileged_max_attempts=settings.privileged_lockout_max_attempts,
            privileged_ban_hours=settings.privileged_ban_hours,
        )

    def policy_for(self, email: str) -> LockoutPolicy:
        if is_privileged_email(email):
            return self.privileged_policy
        return self.standard_policy

    async def record_failed_attempt(self, ip: str, email: str, is_privileged: bool) -> int:
        if self.cache:
            count = await self.cache.record_login_attempt(
                ip, email, is_privileged=is_privileged, window_seconds=self.window_seconds
            )
        else:
            attempt = self.store.record_login_attempt(
                ip, email, is_privileged=is_privileged, window_seconds=self.window_seconds
            )
            count = attempt.attempts
        logger.info(
            "login_attempt_recorded", ip=ip, attempt_count=count, is_privileged=is_privileged
        )
        return count

    async def reset_attempts(self, ip: str, email: str) -> None:
        if self.cache:
            await self.cache.reset_login_attempts(ip, email)
        else:
            self.store.delete_login_attempt(ip, email)

    async def attempt_count(self, ip: str, email: str) -> int:
        if self.cache:
            return await self.cache.get_login_attempts(ip, email)
        attempt = self.store.get_login_attempt(ip, email, window_seconds=self.window_seconds)
        return attempt.attempts if attempt else 0

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop store counters whose window has lapsed; Redis keys expire on their own."""
        removed = self.store.purge_login_attempts(window_seconds=self.window_seconds, now=now)
        if removed:
            logger.info("login_attempts_purged", removed=removed)
        return removed
