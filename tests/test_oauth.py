"""Google authorization-code flow against a mocked transport."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from rbacauth.service.errors import AuthenticationError, DependencyFailure, ValidationError
from rbacauth.service.oauth import GoogleIdentityProvider


def _provider(handler=None):
    return GoogleIdentityProvider(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example.com/v1/auth/google/callback",
        transport=httpx.MockTransport(handler) if handler else None,
    )


def _google(token_status=200, token_body=None, userinfo=None, userinfo_status=200):
    calls = []

    def handler(request):
        calls.append(request)
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(token_status, json=token_body or {"access_token": "at-1"})
        return httpx.Response(
            userinfo_status,
            json=userinfo if userinfo is not None else {
                "id": "g-1",
                "email": "person@example.com",
                "given_name": "Per",
                "family_name": "Son",
                "picture": "https://example.com/p.png",
            },
        )

    handler.calls = calls
    return handler


async def _state(provider):
    url = await provider.authorization_url()
    return parse_qs(urlparse(url).query)["state"][0]


class TestAuthorizationUrl:
    async def test_parameters(self):
        provider = _provider()
        url = urlparse(await provider.authorization_url())
        params = parse_qs(url.query)
        assert f"{url.scheme}://{url.netloc}{url.path}" == (
            "https://accounts.google.com/o/oauth2/v2/auth"
        )
        assert params["client_id"] == ["client-id"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["openid email profile"]
        assert params["prompt"] == ["select_account"]

    async def test_unconfigured(self):
        provider = GoogleIdentityProvider(client_id=None, client_secret=None, redirect_uri=None)
        assert not provider.is_configured
        with pytest.raises(ValidationError, match="not configured"):
            await provider.authorization_url()


class TestExchange:
    async def test_success(self):
        handler = _google()
        provider = _provider(handler)
        identity = await provider.exchange_code("code-1", await _state(provider))
        assert identity.provider_id == "g-1"
        assert identity.email == "person@example.com"
        assert identity.avatar_url == "https://example.com/p.png"

        token_request, userinfo_request = handler.calls
        assert parse_qs(token_request.content.decode())["grant_type"] == ["authorization_code"]
        assert userinfo_request.headers["Authorization"] == "Bearer at-1"

    async def test_state_is_single_use(self):
        provider = _provider(_google())
        state = await _state(provider)
        await provider.exchange_code("code-1", state)
        with pytest.raises(AuthenticationError, match="Invalid or expired OAuth state"):
            await provider.exchange_code("code-1", state)

    async def test_expired_state(self, monkeypatch):
        provider = _provider(_google())
        state = await _state(provider)
        later = provider._now() + timedelta(minutes=11)
        monkeypatch.setattr(provider, "_now", lambda: later)
        with pytest.raises(AuthenticationError):
            await provider.exchange_code("code-1", state)

    async def test_missing_code(self):
        provider = _provider(_google())
        with pytest.raises(ValidationError, match="Missing OAuth code or state"):
            await provider.exchange_code("", "state")

    async def test_token_endpoint_rejects(self):
        provider = _provider(_google(token_status=400, token_body={"error": "invalid_grant"}))
        with pytest.raises(AuthenticationError, match="Google sign-in failed"):
            await provider.exchange_code("code-1", await _state(provider))

    async def test_no_access_token(self):
        provider = _provider(_google(token_body={"token_type": "Bearer"}))
        with pytest.raises(AuthenticationError, match="did not return an access token"):
            await provider.exchange_code("code-1", await _state(provider))

    async def test_identity_without_email(self):
        provider = _provider(_google(userinfo={"id": "g-1"}))
        with pytest.raises(AuthenticationError, match="no usable email"):
            await provider.exchange_code("code-1", await _state(provider))

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        with pytest.raises(DependencyFailure, match="unavailable"):
            await provider.exchange_code("code-1", await _state(provider))
