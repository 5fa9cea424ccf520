"""
Best-effort IP geolocation.

Lookups never fail ingestion: every error degrades to an unknown country.
"""

import ipaddress
import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "WatchmansCry/1.0"
LOOKUP_TIMEOUT = 3.0


class GeoLookup(Protocol):
    """Resolves a network address to an ISO 3166-1 alpha-2 country code."""

    async def country_for(self, address: str) -> Optional[str]: ...


class NullGeoLookup:
    """Geolocation disabled: every address is an unknown country."""

    async def country_for(self, address: str) -> Optional[str]:
        return None


def _is_public(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_global


def _country_code(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().upper()
    return value if len(value) == 2 and value.isalpha() else None


class HttpGeoLookup:
    """Country lookup via ipapi.co, falling back to ip-api.com."""

    def __init__(self, timeout: float = LOOKUP_TIMEOUT):
        self.timeout = timeout

    async def _ipapi(self, client: httpx.AsyncClient, address: str) -> Optional[str]:
        # Free tier: 1000 requests/day
        response = await client.get(f"https://ipapi.co/{address}/country/")
        if response.status_code != 200:
            return None
        return _country_code(response.text)

    async def _ip_api(self, client: httpx.AsyncClient, address: str) -> Optional[str]:
        # Free tier: 45 requests/minute
        response = await client.get(
            f"http://ip-api.com/json/{address}", params={"fields": "countryCode"}
        )
        if response.status_code != 200:
            return None
        return _country_code(response.json().get("countryCode"))

    async def country_for(self, address: str) -> Optional[str]:
        if not _is_public(address):
            return None

        async with httpx.AsyncClient(
            timeout=self.timeout, headers={"User-Agent": USER_AGENT}
        ) as client:
            for lookup in (self._ipapi, self._ip_api):
                try:
                    country = await lookup(client, address)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.debug(f"Geolocation via {lookup.__name__} failed: {exc!r}")
                    continue
                if country:
                    return country
        return None
