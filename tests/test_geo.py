"""Geolocation lookups and user-agent parsing."""

import httpx
import pytest

from rbacauth.service.geo import (
    LOCAL_LOCATION,
    UNKNOWN_LOCATION,
    GeoEnricher,
    parse_user_agent,
)


def _enricher(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeoEnricher(base_url="https://geo.test/json", client=client)


class TestLocate:
    async def test_successful_lookup(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "country": "United States",
                    "regionName": "California",
                    "city": "Mountain View",
                    "lat": 37.4,
                    "lon": -122.1,
                    "timezone": "America/Los_Angeles",
                    "isp": "Google LLC",
                },
            )

        geo = _enricher(handler)
        location = await geo.locate("8.8.8.8")
        await geo.aclose()
        assert location.city == "Mountain View"
        assert location.region == "California"
        assert location.isp == "Google LLC"
        assert requests[0].url.path == "/json/8.8.8.8"
        assert "fields" in requests[0].url.params

    async def test_failed_status_is_unknown(self):
        geo = _enricher(lambda request: httpx.Response(200, json={"status": "fail", "message": "quota"}))
        assert await geo.locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_http_error_is_unknown(self):
        geo = _enricher(lambda request: httpx.Response(503))
        assert await geo.locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_transport_error_is_unknown(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        assert await _enricher(handler).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_invalid_json_is_unknown(self):
        geo = _enricher(lambda request: httpx.Response(200, content=b"<html>"))
        assert await geo.locate("8.8.8.8") == UNKNOWN_LOCATION

    @pytest.mark.parametrize("ip", ["127.0.0.1", "::1", "192.168.1.10", "10.0.0.2", "localhost"])
    async def test_local_addresses_skip_lookup(self, ip):
        def handler(request):
            raise AssertionError("no request expected")

        assert await _enricher(handler).locate(ip) == LOCAL_LOCATION

    async def test_disabled_or_garbage(self):
        def handler(request):
            raise AssertionError("no request expected")

        geo = _enricher(handler)
        assert await geo.locate(None) == UNKNOWN_LOCATION
        assert await geo.locate("not-an-ip") == UNKNOWN_LOCATION
        geo.enabled = False
        assert await geo.locate("8.8.8.8") == UNKNOWN_LOCATION


class TestParseUserAgent:
    @pytest.mark.parametrize(
        "ua,platform,browser,device",
        [
            (
                "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/124.0 Mobile Safari/537.36",
                "Android",
                "Google Chrome",
                "Mobile",
            ),
            (
                "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 Version/17.4 Mobile/15E148 Safari/604.1",
                "iOS",
                "Safari",
                "Mobile",
            ),
            (
                "Mozilla/5.0 (iPad; CPU OS 17_4 like Mac OS X) AppleWebKit/605.1.15 Safari/604.1",
                "iPadOS",
                "Safari",
                "Tablet",
            ),
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/124.0 Safari/537.36 Edg/124.0",
                "Windows",
                "Microsoft Edge",
                "Desktop",
            ),
            (
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4; rv:125.0) Gecko/20100101 Firefox/125.0",
                "macOS",
                "Mozilla Firefox",
                "Desktop",
            ),
            ("Mozilla/5.0 (X11; Linux x86_64) OPR/109.0", "Linux", "Opera", "Desktop"),
        ],
    )
    def test_known_agents(self, ua, platform, browser, device):
        info = parse_user_agent(ua)
        assert (info.platform, info.browser, info.device) == (platform, browser, device)

    def test_missing_agent(self):
        info = parse_user_agent(None)
        assert (info.platform, info.browser, info.device) == ("Unknown", "Unknown", "Unknown")
