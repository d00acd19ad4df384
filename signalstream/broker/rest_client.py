"""
MetaApi REST client.

Thin aiohttp client over the regional trading API, used where the streaming
connection cannot help: deal history for close reconciliation and the
fallback sweep's position listing.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from signalstream.exceptions import BrokerConnectionError, QuotaExceededError
from signalstream.monitoring.logger import get_logger
from signalstream.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


class MetaApiRestClient:
    """Regional trading API client for one account (``auth-token`` header)."""

    def __init__(self, region_url: str, account_id: str, token: str, timeout_seconds: float = 10.0):
        self.region_url = region_url.rstrip("/")
        self.account_id = account_id
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self.region_url}/users/current/accounts/{self.account_id}{path}"

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0, transient_errors=(aiohttp.ClientError, asyncio.TimeoutError, BrokerConnectionError))
    async def _get(self, path: str) -> Any:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(self._url(path), headers={"auth-token": self._token}) as resp:
                if resp.status == 429:
                    raise QuotaExceededError(f"MetaApi rate limit on {path}")
                if resp.status >= 500:
                    raise BrokerConnectionError(f"MetaApi {resp.status} on {path}")
                if resp.status == 404:
                    return []
                if resp.status != 200:
                    body = await resp.text()
                    raise BrokerConnectionError(f"MetaApi {resp.status} on {path}: {body[:200]}")
                return await resp.json(content_type=None)

    async def get_positions(self) -> List[Dict[str, Any]]:
        return list(await self._get("/positions") or [])

    async def get_deals_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        data = await self._get(f"/history-deals/time/{quote(_iso(start))}/{quote(_iso(end))}")
        if isinstance(data, dict):
            return list(data.get("deals") or [])
        return list(data or [])

    async def get_history_orders_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        data = await self._get(f"/history-orders/time/{quote(_iso(start))}/{quote(_iso(end))}")
        if isinstance(data, dict):
            return list(data.get("historyOrders") or [])
        return list(data or [])

    async def get_account_information(self) -> Optional[Dict[str, Any]]:
        data = await self._get("/account-information")
        return data if isinstance(data, dict) else None
