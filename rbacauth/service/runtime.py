from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from rbacauth.config import get_settings, reset_settings_cache
from rbacauth.logging import get_logger
from rbacauth.service.audit import AuditLogService, AuditSink
from rbacauth.service.auth import AuthEngine
from rbacauth.service.background import BackgroundDispatcher
from rbacauth.service.bans import IPBanGate
from rbacauth.service.email import EmailService
from rbacauth.service.geo import GeoEnricher
from rbacauth.service.lockout import LockoutTracker
from rbacauth.service.oauth import GoogleIdentityProvider
from rbacauth.service.permissions import DEFAULT_ROLE_PERMISSIONS, PermissionMap, PermissionModel
from rbacauth.service.roles import RoleService
from rbacauth.service.sessions import SessionRegistry
from rbacauth.service.users import UserService
from rbacauth.storage.memory import MemoryStore
from rbacauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root, role_seed=DEFAULT_ROLE_PERMISSIONS
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache and self.settings.redis_url:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
        if not self.cache:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Login-attempt counters and OAuth state are kept in process memory.",
            )

        self.dispatcher = BackgroundDispatcher()
        self.permissions = PermissionModel(PermissionMap.from_mapping(DEFAULT_ROLE_PERMISSIONS))
        self.audit = AuditSink(self.store, self.dispatcher)
        self.audit_logs = AuditLogService(self.store, self.permissions)
        self.geo = GeoEnricher.from_settings(self.settings)
        self.sessions = SessionRegistry(
            self.store,
            geo=self.geo,
            cap=self.settings.session_cap,
            retention_days=self.settings.session_retention_days,
            session_ttl_days=self.settings.token_ttl_days,
            remember_me_ttl_days=self.settings.remember_me_ttl_days,
        )
        self.lockout = LockoutTracker.from_settings(self.store, self.settings, cache=self.cache)
        self.bans = IPBanGate(
            self.store,
            bot_ban_hours=self.settings.bot_ban_hours,
            expose_bot_reasons=self.settings.test_mode,
        )
        self.email = EmailService.from_settings(self.settings)
        self.oauth = GoogleIdentityProvider.from_settings(self.settings, cache=self.cache)
        self.auth = AuthEngine(
            self.store,
            settings=self.settings,
            permissions=self.permissions,
            lockout=self.lockout,
            bans=self.bans,
            sessions=self.sessions,
            audit=self.audit,
            email=self.email,
            dispatcher=self.dispatcher,
        )
        self.users = UserService(
            self.store,
            auth=self.auth,
            permissions=self.permissions,
            audit=self.audit,
            sessions=self.sessions,
            email=self.email,
        )
        self.roles = RoleService(self.store, permissions=self.permissions, audit=self.audit)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_configured=self.oauth.is_configured,
            geo_lookup_enabled=self.geo.enabled,
            session_revocation=self.settings.enforce_session_revocation,
        )

    async def close(self) -> None:
        """Flush background work and release network clients."""
        await self.dispatcher.drain(timeout=5.0)
        await self.dispatcher.close()
        await self.geo.aclose()
        if self.cache is not None:
            await self.cache.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
