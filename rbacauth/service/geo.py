from __future__ import annotations

import ipaddress
from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from rbacauth.logging import get_logger

logger = get_logger(__name__)

_GEO_FIELDS = "status,message,country,regionName,city,lat,lon,timezone,isp"


@dataclass(frozen=True)
class Location:
    country: str = "Unknown"
    region: str = "Unknown"
    city: str = "Unknown"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    isp: str = "Unknown"

    def to_dict(self) -> dict:
        return asdict(self)


UNKNOWN_LOCATION = Location()
LOCAL_LOCATION = Location(
    country="Local", region="Development", city="Localhost", isp="Local Development"
)


@dataclass(frozen=True)
class DeviceInfo:
    platform: str = "Unknown"
    browser: str = "Unknown"
    device: str = "Unknown"


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo()

    ua = user_agent.lower()
    platform = "Unknown"
    device = "Desktop"
    # Mobile agents also advertise Linux / Mac OS X, so they are matched first
    if "android" in ua:
        platform, device = "Android", "Mobile"
    elif "ipad" in ua:
        platform, device = "iPadOS", "Tablet"
    elif "iphone" in ua:
        platform, device = "iOS", "Mobile"
    elif "windows" in ua:
        platform = "Windows"
    elif "mac os x" in ua or "macintosh" in ua:
        platform = "macOS"
    elif "linux" in ua:
        platform = "Linux"

    browser = "Unknown"
    if "edg/" in ua or "edge/" in ua:
        browser = "Microsoft Edge"
    elif "opr/" in ua or "opera/" in ua:
        browser = "Opera"
    elif "chrome/" in ua:
        browser = "Google Chrome"
    elif "firefox/" in ua:
        browser = "Mozilla Firefox"
    elif "safari/" in ua:
        browser = "Safari"

    return DeviceInfo(platform=platform, browser=browser, device=device)


def _is_local(ip: str) -> Optional[bool]:
    """True for loopback/private ranges, False for public, None if unparseable."""
    if ip == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    mapped = getattr(addr, "ipv4_mapped", None)
    if mapped is not None:
        addr = mapped
    return addr.is_private or addr.is_loopback or addr.is_link_local


class GeoEnricher:
    """Best-effort IP geolocation through ip-api.com; never raises."""

    def __init__(
        self,
        *,
        base_url: str = "https://ip-api.com/json",
        timeout: float = 3.0,
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.enabled = enabled
        self._client = client

    @classmethod
    def from_settings(cls, settings, *, client: Optional[httpx.AsyncClient] = None) -> "GeoEnricher":
        return cls(
            base_url=settings.geo_lookup_url,
            timeout=settings.geo_timeout_seconds,
            enabled=settings.geo_lookup_enabled,
            client=client,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def locate(self, ip: Optional[str]) -> Location:
        if not ip:
            return UNKNOWN_LOCATION
        local = _is_local(ip)
        if local:
            return LOCAL_LOCATION
        if local is None or not self.enabled:
            return UNKNOWN_LOCATION

        try:
            response = await self._get_client().get(
                f"{self.base_url}/{ip}", params={"fields": _GEO_FIELDS}
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.warning("geo_lookup_failed", ip=ip, error=str(exc))
            return UNKNOWN_LOCATION
        except ValueError as exc:
            logger.warning("geo_lookup_invalid_response", ip=ip, error=str(exc))
            return UNKNOWN_LOCATION

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.info(
                "geo_lookup_unresolved",
                ip=ip,
                message=data.get("message") if isinstance(data, dict) else None,
            )
            return UNKNOWN_LOCATION

        return Location(
            country=data.get("country") or "Unknown",
            region=data.get("regionName") or "Unknown",
            city=data.get("city") or "Unknown",
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            timezone=data.get("timezone"),
            isp=data.get("isp") or "Unknown",
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
