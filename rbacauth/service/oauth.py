from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from rbacauth.logging import get_logger
from rbacauth.service.errors import AuthenticationError, DependencyFailure, ValidationError

logger = get_logger(__name__)

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class ExternalIdentity:
    provider_id: str
    email: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    avatar_url: Optional[str] = None


class GoogleIdentityProvider:
    """Authorization-code flow against Google, yielding an ``ExternalIdentity``.

    Each issued ``state`` is single use and expires after ten minutes. States
    live in Redis when a cache is configured, otherwise in process memory.
    """

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        cache=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.cache = cache
        self._transport = transport
        self._states: Dict[str, datetime] = {}
        self._state_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, *, cache=None) -> "GoogleIdentityProvider":
        return cls(
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret,
            redirect_uri=settings.oauth_redirect_uri,
            cache=cache,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store_state(self, state: str, expires_at: datetime) -> None:
        if self.cache:
            await self.cache.set_oauth_state(state, "google", expires_at)
            return
        with self._state_lock:
            now = self._now()
            for stale in [s for s, exp in self._states.items() if exp <= now]:
                self._states.pop(stale, None)
            self._states[state] = expires_at

    async def _consume_state(self, state: str) -> bool:
        if self.cache:
            return await self.cache.pop_oauth_state(state) == "google"
        with self._state_lock:
            expires_at = self._states.pop(state, None)
        return expires_at is not None and expires_at > self._now()

    async def authorization_url(self) -> str:
        if not self.is_configured:
            raise ValidationError("Google sign-in is not configured")
        state = secrets.token_urlsafe(32)
        await self._store_state(state, self._now() + STATE_TTL)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, code: str, state: str) -> ExternalIdentity:
        if not code or not state:
            raise ValidationError("Missing OAuth code or state")
        if not await self._consume_state(state):
            logger.warning("oauth_state_invalid")
            raise AuthenticationError("Invalid or expired OAuth state")
        if not self.is_configured:
            raise ValidationError("Google sign-in is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    raise AuthenticationError("Google did not return an access token")

                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("Google sign-in failed") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            raise DependencyFailure("Google sign-in is unavailable") from exc
        except ValueError as exc:
            logger.error("oauth_response_invalid", provider="google", error=str(exc))
            raise AuthenticationError("Google sign-in failed") from exc

        if not isinstance(userinfo, dict) or not userinfo.get("id") or not userinfo.get("email"):
            logger.error("oauth_identity_incomplete", provider="google")
            raise AuthenticationError("Google account has no usable email")

        logger.info("oauth_exchange_success", provider="google")
        return ExternalIdentity(
            provider_id=str(userinfo["id"]),
            email=userinfo["email"],
            given_name=userinfo.get("given_name"),
            family_name=userinfo.get("family_name"),
            avatar_url=userinfo.get("picture"),
        )
