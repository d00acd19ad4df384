"""
Region discovery for the MetaApi trading API.

The regional REST base URL is not part of the account credentials. It is
resolved by trying a priority-ordered list of strategies, each returning a
``RegionLookup`` (found / not_found / error) instead of raising, so the
probing reads as a list of options rather than nested try/except.
"""
import asyncio
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)

LONDON_REGION_URL = "https://mt-client-api-v1.london.agiliumtrade.ai"
NEW_YORK_REGION_URL = "https://mt-client-api-v1.new-york.agiliumtrade.ai"
PROVISIONING_API_URL = "https://mt-provisioning-api-v1.agiliumtrade.agiliumtrade.ai"
MANAGEMENT_API_URL = "https://api.metaapi.cloud"

_REGION_FIELDS = ("region", "regionId", "geographicalLocation", "serverRegion", "regionName", "location")
_KNOWN_REGION = re.compile(r"(new-york|london|frankfurt|singapore|tokyo|sydney|mumbai|montreal|stockholm|vint-hill)")


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class RegionLookup:
    status: LookupStatus
    region_url: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, region_url: str, source: str) -> "RegionLookup":
        return cls(LookupStatus.FOUND, region_url=region_url, source=source)

    @classmethod
    def not_found(cls, source: str) -> "RegionLookup":
        return cls(LookupStatus.NOT_FOUND, source=source)

    @classmethod
    def failed(cls, source: str, error: str) -> "RegionLookup":
        return cls(LookupStatus.ERROR, source=source, error=error)


def region_url_from_value(value: Any) -> Optional[str]:
    """Turn a region name or URL-ish string into the trading API base URL."""
    if not value or not isinstance(value, str):
        return None
    cleaned = re.sub(r"^https?://", "", value.strip())
    cleaned = re.sub(r"\.agiliumtrade\.ai.*$", "", cleaned)
    cleaned = cleaned.replace("mt-client-api-v1.", "")
    match = _KNOWN_REGION.search(cleaned)
    region = match.group(1) if match else cleaned
    if not region or "/" in region:
        return None
    return f"https://mt-client-api-v1.{region}.agiliumtrade.ai"


def region_url_from_account(account: Dict[str, Any]) -> Optional[str]:
    for name in _REGION_FIELDS:
        url = region_url_from_value(account.get(name))
        if url:
            return url
    return None


def candidate_region_urls(configured: Optional[str] = None) -> List[str]:
    """Priority-ordered, de-duplicated base URLs for REST calls."""
    candidates = [
        configured,
        os.getenv("METAAPI_REGION_URL"),
        LONDON_REGION_URL,
        NEW_YORK_REGION_URL,
        MANAGEMENT_API_URL,
    ]
    seen: List[str] = []
    for url in candidates:
        if url and url.rstrip("/") not in seen:
            seen.append(url.rstrip("/"))
    return seen


Strategy = Callable[[aiohttp.ClientSession], Awaitable[RegionLookup]]


class RegionResolver:
    """Resolves the regional trading API URL for one account."""

    def __init__(self, account_id: str, token: str, timeout_seconds: float = 10.0):
        self.account_id = account_id
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get_json(self, session: aiohttp.ClientSession, url: str, headers: Dict[str, str]) -> Optional[Any]:
        async with session.get(url, headers=headers) as resp:
            if resp.status != 200:
                return None
            return await resp.json(content_type=None)

    def _header_variants(self) -> List[Dict[str, str]]:
        return [{"auth-token": self._token}, {"Authorization": f"Bearer {self._token}"}]

    async def _probe(self, session: aiohttp.ClientSession, source: str, urls: List[str], extract) -> RegionLookup:
        last_error = None
        for url in urls:
            for headers in self._header_variants():
                try:
                    data = await self._get_json(session, url, headers)
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    last_error = str(e)
                    continue
                if data is None:
                    continue
                region_url = extract(data)
                if region_url:
                    return RegionLookup.found(region_url, source)
        if last_error:
            return RegionLookup.failed(source, last_error)
        return RegionLookup.not_found(source)

    async def _from_account(self, session: aiohttp.ClientSession) -> RegionLookup:
        urls = [
            f"{PROVISIONING_API_URL}/users/current/accounts/{self.account_id}",
            f"{MANAGEMENT_API_URL}/users/current/accounts/{self.account_id}",
        ]
        return await self._probe(
            session, "account", urls, lambda data: region_url_from_account(data) if isinstance(data, dict) else None
        )

    async def _from_replicas(self, session: aiohttp.ClientSession) -> RegionLookup:
        urls = [
            f"{MANAGEMENT_API_URL}{prefix}/users/current/accounts/{self.account_id}/replicas"
            for prefix in ("", "/v1", "/v2")
        ]

        def extract(data: Any) -> Optional[str]:
            replicas = data if isinstance(data, list) else (data.get("items") or data.get("data") or [])
            for replica in replicas:
                if isinstance(replica, dict):
                    url = region_url_from_account(replica)
                    if url:
                        return url
            return None

        return await self._probe(session, "replicas", urls, extract)

    async def _from_api_access(self, session: aiohttp.ClientSession) -> RegionLookup:
        urls = [
            f"{MANAGEMENT_API_URL}/users/current/accounts/{self.account_id}/api-access",
            f"{MANAGEMENT_API_URL}/users/current/settings/api-access",
        ]

        def extract(data: Any) -> Optional[str]:
            if not isinstance(data, dict):
                return None
            url = data.get("regionUrl") or data.get("tradingApiUrl")
            return url.rstrip("/") if isinstance(url, str) and url.startswith("http") else region_url_from_account(data)

        return await self._probe(session, "api_access", urls, extract)

    def strategies(self) -> List[Strategy]:
        return [self._from_account, self._from_replicas, self._from_api_access]

    async def resolve(self, configured: Optional[str] = None) -> RegionLookup:
        """Configured URL wins; otherwise the first strategy that finds one."""
        if configured:
            return RegionLookup.found(configured.rstrip("/"), "config")

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            for strategy in self.strategies():
                lookup = await strategy(session)
                logger.debug("REGION_LOOKUP", source=lookup.source, status=lookup.status.value, error=lookup.error)
                if lookup.status is LookupStatus.FOUND:
                    logger.info("REGION_RESOLVED", region_url=lookup.region_url, source=lookup.source)
                    return lookup

        fallback = candidate_region_urls()[0]
        logger.warning("REGION_NOT_FOUND_USING_DEFAULT", region_url=fallback)
        return RegionLookup.found(fallback, "default")
