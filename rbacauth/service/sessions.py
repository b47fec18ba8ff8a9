from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from rbacauth.logging import get_logger
from rbacauth.service.errors import CurrentSessionNotFoundError, NotFoundError
from rbacauth.service.geo import UNKNOWN_LOCATION, GeoEnricher, Location, parse_user_agent
from rbacauth.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, user_id: str, token: str, **fields: Any) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]: ...

    def list_active_sessions(self, user_id: str) -> List[Session]: ...

    def count_active_sessions(self, user_id: str) -> int: ...

    def find_oldest_active_sessions(self, user_id: str, limit: int) -> List[Session]: ...

    def deactivate_sessions(self, session_ids: Iterable[str]) -> int: ...

    def deactivate_user_session(self, session_id: str, user_id: str) -> Optional[Session]: ...

    def deactivate_sessions_except(self, user_id: str, keep_token: str) -> int: ...

    def purge_sessions(self, *, retention_days: int, now: Optional[datetime] = None) -> int: ...


def session_to_dict(sess: Session, *, current_token: Optional[str] = None) -> Dict[str, Any]:
    """Public view of a session row; the token itself is never exposed."""
    return {
        "id": sess.id,
        "ip_address": sess.ip_address,
        "user_agent": sess.user_agent,
        "platform": sess.platform,
        "browser": sess.browser,
        "device": sess.device,
        "location": sess.location,
        "last_active": sess.last_active.isoformat(),
        "created_at": sess.created_at.isoformat(),
        "expires_at": sess.expires_at.isoformat(),
        "is_current": bool(current_token) and sess.token == current_token,
    }


class SessionRegistry:
    """Advisory per-device session records with a per-user cap.

    Tokens stay valid whether or not a row exists; rows feed the session
    list shown to users and admins. When a user is at the cap, the least
    recently active sessions are evicted before a new one is inserted.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        geo: Optional[GeoEnricher] = None,
        cap: int = 20,
        retention_days: int = 30,
        session_ttl_days: int = 7,
        remember_me_ttl_days: int = 30,
    ) -> None:
        self.store = store
        self.geo = geo
        self.cap = cap
        self.retention_days = retention_days
        self.session_ttl_days = session_ttl_days
        self.remember_me_ttl_days = remember_me_ttl_days

    def count_active(self, user_id: str) -> int:
        return self.store.count_active_sessions(user_id)

    def find_oldest_active(self, user_id: str, limit: int) -> List[Session]:
        return self.store.find_oldest_active_sessions(user_id, limit)

    def deactivate_many(self, session_ids: Iterable[str]) -> int:
        return self.store.deactivate_sessions(list(session_ids))

    def _enforce_cap(self, user_id: str) -> int:
        count = self.count_active(user_id)
        if count < self.cap:
            return 0
        oldest = self.find_oldest_active(user_id, count - self.cap + 1)
        evicted = self.deactivate_many(s.id for s in oldest)
        if evicted:
            logger.info("sessions_evicted", user_id=user_id, evicted=evicted, cap=self.cap)
        return evicted

    async def _locate(self, ip: Optional[str]) -> Location:
        if self.geo is None:
            return UNKNOWN_LOCATION
        try:
            return await self.geo.locate(ip)
        except Exception as exc:
            logger.warning("session_geo_lookup_failed", ip=ip, error=str(exc))
            return UNKNOWN_LOCATION

    async def _snapshot(self, ip: Optional[str], user_agent: Optional[str]) -> Dict[str, Any]:
        device = parse_user_agent(user_agent)
        location = await self._locate(ip)
        return {
            "ip_address": ip,
            "user_agent": user_agent,
            "platform": device.platform,
            "browser": device.browser,
            "device": device.device,
            "location": {**location.to_dict(), "ip_address": ip},
        }

    async def open_session(
        self,
        user_id: str,
        token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> Session:
        snapshot = await self._snapshot(ip, user_agent)
        ttl_days = self.remember_me_ttl_days if remember_me else self.session_ttl_days
        # No await between the cap check and the insert
        self._enforce_cap(user_id)
        sess = self.store.create_session(
            user_id, token, expires_at=utcnow() + timedelta(days=ttl_days), **snapshot
        )
        logger.info("session_opened", user_id=user_id, session_id=sess.id, remember_me=remember_me)
        return sess

    async def touch(
        self,
        token: str,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Session]:
        """Refresh the live row for ``token`` or create one if none exists.

        A terminated row is left alone so a revoked device does not reappear
        in the session list.
        """
        existing = self.store.get_session_by_token(token)
        if existing is not None and existing.user_id != user_id:
            return None
        if existing is not None and not existing.is_active:
            return None

        snapshot = await self._snapshot(ip, user_agent)
        # Re-read after the lookup; another request may have opened or ended the row
        existing = self.store.get_session_by_token(token)
        if existing is not None:
            if existing.user_id != user_id or not existing.is_active:
                return None
            return self.store.update_session(existing.id, last_active=utcnow(), **snapshot)

        self._enforce_cap(user_id)
        return self.store.create_session(
            user_id,
            token,
            expires_at=utcnow() + timedelta(days=self.remember_me_ttl_days),
            **snapshot,
        )

    def is_revoked(self, token: str) -> bool:
        sess = self.store.get_session_by_token(token)
        return sess is not None and not sess.is_active

    def terminate(self, session_id: str, user_id: str) -> Session:
        sess = self.store.deactivate_user_session(session_id, user_id)
        if sess is None:
            raise NotFoundError("Session not found")
        logger.info("session_terminated", user_id=user_id, session_id=session_id)
        return sess

    def terminate_all_except_current(self, user_id: str, current_token: str) -> int:
        current = self.store.get_session_by_token(current_token) if current_token else None
        if current is None or current.user_id != user_id or not current.is_live():
            raise CurrentSessionNotFoundError()
        terminated = self.store.deactivate_sessions_except(user_id, current_token)
        logger.info("sessions_terminated", user_id=user_id, terminated=terminated)
        return terminated

    def list_active(
        self, user_id: str, current_token: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            session_to_dict(s, current_token=current_token)
            for s in self.store.list_active_sessions(user_id)
        ]

    def purge(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_sessions(retention_days=self.retention_days, now=now)
        if removed:
            logger.info("sessions_purged", removed=removed)
        return removed
