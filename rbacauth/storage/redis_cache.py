from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class RedisCache:
    """Thin Redis wrapper for login-attempt counters and OAuth state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment + sliding expiry; every failure pushes the window forward
    _LOGIN_ATTEMPT_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local privileged = ARGV[2]
local now = ARGV[3]

local attempts = redis.call('HINCRBY', key, 'attempts', 1)
redis.call('HSET', key, 'privileged', privileged, 'last_attempt', now)
redis.call('EXPIRE', key, math.max(window, 1))
return attempts
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_attempt = self.client.register_script(self._LOGIN_ATTEMPT_SCRIPT)

    @staticmethod
    def _attempt_key(ip: str, email: str) -> str:
        return f"login:attempts:{ip}:{_normalize_email(email)}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client keeps the async client off a temporary event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def record_login_attempt(
        self, ip: str, email: str, *, is_privileged: bool, window_seconds: int
    ) -> int:
        result = await self._login_attempt(
            keys=[self._attempt_key(ip, email)],
            args=[
                int(window_seconds),
                "1" if is_privileged else "0",
                datetime.now(timezone.utc).isoformat(),
            ],
        )
        return int(result)

    async def get_login_attempts(self, ip: str, email: str) -> int:
        raw = await self.client.hget(self._attempt_key(ip, email), "attempts")
        return int(raw) if raw else 0

    async def reset_login_attempts(self, ip: str, email: str) -> None:
        await self.client.delete(self._attempt_key(ip, email))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        """Atomically read and delete an OAuth state so it can only be used once."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data.get("provider")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
