from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from rbacauth.logging import get_logger
from rbacauth.service.bot_detection import analyze_movements, movement_events
from rbacauth.service.errors import BotDetectedError, IPBannedError
from rbacauth.storage.models import BanReason, BannedIP, utcnow

logger = get_logger(__name__)

DEFAULT_WHITELIST = frozenset({"127.0.0.1", "::1", "::ffff:127.0.0.1", "localhost"})


class BanStore(Protocol):
    def get_ban(self, ip: str) -> Optional[BannedIP]: ...

    def upsert_ban(
        self, ip: str, reason: str, *, expires_at: datetime, evidence: Optional[Dict] = None
    ) -> BannedIP: ...

    def delete_ban(self, ip: str) -> int: ...

    def list_bans(self, *, active_only: bool = True) -> List[BannedIP]: ...

    def delete_expired_bans(self, now: Optional[datetime] = None) -> int: ...


class IPBanGate:
    """IP bans plus the movement-telemetry bot screen on login and register."""

    def __init__(
        self,
        store: BanStore,
        *,
        bot_ban_hours: float = 24.0,
        whitelist: Iterable[str] = DEFAULT_WHITELIST,
        expose_bot_reasons: bool = False,
    ) -> None:
        self.store = store
        self.bot_ban_hours = bot_ban_hours
        self.whitelist = frozenset(whitelist)
        self.expose_bot_reasons = expose_bot_reasons

    def is_banned(self, ip: str) -> bool:
        ban = self.store.get_ban(ip)
        return bool(ban and ban.is_active())

    def ban_ip(
        self,
        ip: str,
        reason: str,
        evidence: Optional[Dict[str, Any]] = None,
        duration_hours: float = 24.0,
    ) -> BannedIP:
        reason_value = reason.value if isinstance(reason, BanReason) else str(reason)
        ban = self.store.upsert_ban(
            ip,
            reason_value,
            expires_at=utcnow() + timedelta(hours=duration_hours),
            evidence=evidence,
        )
        logger.warning(
            "ip_banned",
            ip=ip,
            reason=reason_value,
            duration_hours=duration_hours,
            ban_count=ban.attempts,
        )
        return ban

    def unban_ip(self, ip: str) -> int:
        removed = self.store.delete_ban(ip)
        if removed:
            logger.info("ip_unbanned", ip=ip)
        return removed

    def unban_expired(self) -> int:
        return self.store.delete_expired_bans()

    def list_banned(self) -> List[BannedIP]:
        return self.store.list_bans(active_only=True)

    def is_whitelisted(self, ip: Optional[str]) -> bool:
        return not ip or ip == "unknown" or ip in self.whitelist

    def screen(self, ip: Optional[str], movement_data: Any, user_agent: Optional[str]) -> None:
        """Reject banned IPs and ban clients whose telemetry looks scripted."""
        if self.is_whitelisted(ip):
            return
        if self.is_banned(ip):
            raise IPBannedError(
                "Access denied. Your IP has been temporarily banned due to suspicious activity."
            )
        events = movement_events(movement_data)
        if not events:
            return

        analysis = analyze_movements(movement_data)
        if not analysis.is_bot:
            return

        self.ban_ip(
            ip,
            BanReason.BOT_DETECTION.value,
            evidence={
                "analysis": analysis.to_dict(),
                "user_agent": user_agent,
                "movement_count": len(events),
            },
            duration_hours=self.bot_ban_hours,
        )
        logger.warning("bot_detected", ip=ip, score=analysis.score, reasons=analysis.reasons)
        raise BotDetectedError(analysis.reasons, expose_reasons=self.expose_bot_reasons)
