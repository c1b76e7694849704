"""
Rate-limited HTTP transport for the marketplace API.

Each lane (one per marketplace account) is a single serialized queue: a call
waits for the previous call on the same lane to finish and for the minimum
inter-request delay to elapse. A 429 gets one retry after a longer backoff;
a second 429 surfaces as RateLimitExceeded. Every other error status is
raised immediately; retrying those is the job layer's decision.
"""

import asyncio
import json
import logging
import time
from functools import lru_cache
from typing import Any, Dict, Hashable, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import MarketplaceAPIError, MarketplaceAuthError, RateLimitExceeded
from app.core.locks import KeyedLocks

logger = logging.getLogger(__name__)


class RateLimitedFetcher:

    def __init__(
        self,
        base_url: Optional[str] = None,
        delay_ms: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.MARKETPLACE_API_BASE_URL).rstrip("/")
        self.delay = (settings.SYNC_RATE_LIMIT_DELAY_MS if delay_ms is None else delay_ms) / 1000.0
        self.backoff_multiplier = (
            settings.SYNC_RATE_LIMIT_BACKOFF_MULTIPLIER if backoff_multiplier is None else backoff_multiplier
        )
        self.timeout = timeout or settings.SYNC_REQUEST_TIMEOUT_SECONDS
        self._client = client
        self._lanes = KeyedLocks()
        self._last_request: Dict[Hashable, float] = {}

    @property
    def backoff_delay(self) -> float:
        return self.delay * self.backoff_multiplier

    async def get(self, path: str, *, lane: Hashable, token: Optional[str] = None,
                  params: Optional[Dict] = None) -> Any:
        return await self.request("GET", path, lane=lane, token=token, params=params)

    async def request(
        self,
        method: str,
        path: str,
        *,
        lane: Hashable,
        token: Optional[str] = None,
        params: Optional[Dict] = None,
        data: Optional[Dict] = None,
    ) -> Any:
        """
        Issue one request on a lane.

        Raises:
            RateLimitExceeded: 429 on the original request and on the retry
            MarketplaceAuthError: 401/403
            MarketplaceAPIError: any other non-2xx status or a network error
        """
        url = f"{self.base_url}/{path.lstrip('/')}"

        async with self._lanes.hold(lane):
            await self._wait_for_slot(lane)
            try:
                response = await self._send(method, url, token, params, data)

                if response.status_code == 429:
                    logger.warning(
                        "Rate limited on %s %s (lane %s); backing off %.2fs before one retry",
                        method, path, lane, self.backoff_delay,
                    )
                    await asyncio.sleep(self.backoff_delay)
                    response = await self._send(method, url, token, params, data)
                    if response.status_code == 429:
                        raise RateLimitExceeded(f"Still rate limited after backoff: {method} {path}")
            finally:
                self._last_request[lane] = time.monotonic()

        return self._handle_response(response, method, path)

    async def _wait_for_slot(self, lane: Hashable) -> None:
        last = self._last_request.get(lane)
        if last is None or self.delay <= 0:
            return
        remaining = self.delay - (time.monotonic() - last)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def _send(self, method: str, url: str, token: Optional[str],
                    params: Optional[Dict], data: Optional[Dict]) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug(f"Making {method} request to {url}")
        if params:
            logger.debug(f"Params: {params}")

        try:
            if self._client is not None:
                return await self._client.request(method, url, headers=headers, params=params, json=data)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, params=params, json=data)
        except httpx.RequestError as e:
            logger.error(f"Network error calling marketplace: {str(e)}")
            raise MarketplaceAPIError(f"Network error: {str(e)}", retryable=True)

    def _handle_response(self, response: httpx.Response, method: str, path: str) -> Any:
        status = response.status_code
        if status in (200, 201, 202):
            try:
                return response.json()
            except (ValueError, json.JSONDecodeError):
                raise MarketplaceAPIError(f"Invalid JSON from {method} {path}", status_code=status, retryable=False)
        if status == 204:
            return {}
        if status in (401, 403):
            raise MarketplaceAuthError(f"Marketplace rejected credentials for {method} {path}", status_code=status)

        logger.error(f"Marketplace API error {status} on {method} {path}: {response.text[:500]}")
        raise MarketplaceAPIError(f"Request failed ({status}): {response.text[:500]}", status_code=status)


@lru_cache()
def get_shared_fetcher() -> RateLimitedFetcher:
    """The process-wide fetcher. Lane locks and spacing only hold when every client shares it."""
    return RateLimitedFetcher()
