"""
OpenDota API client.

One shared ``httpx.AsyncClient`` with a response event hook that logs every
upstream call. HTTP failures are mapped onto the service error taxonomy so
the request queue can tell transient failures from terminal ones:

    404            -> NotFoundError            (terminal)
    429            -> RateLimitedError         (retryable)
    5xx, network   -> UpstreamUnavailableError (retryable)
    timeout        -> FetchTimeoutError        (retryable)
    bad JSON       -> UpstreamDataError        (terminal)

Every network call first spends one request from the OpenDota rate limit
window (see ``rate_limiter``).

Mock mode (USE_MOCK_API) serves ``<MOCK_DATA_DIR>/<cache key>.json`` instead
of calling the network.

Usage:
    client = OpenDotaClient(settings)
    match = await client.get_match("1234567890")
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from core.config import Settings
from core.errors import (
    FetchTimeoutError,
    NotFoundError,
    RateLimitedError,
    UpstreamDataError,
    UpstreamUnavailableError,
)
from core.logging import get_logger, log_upstream_call
from services.upstream.rate_limiter import RateLimiter

logger = get_logger(__name__)

SERVICE_NAME = "opendota"


async def _on_response(response: httpx.Response):
    """Response event hook: log every upstream call."""
    elapsed_ms = None
    try:
        elapsed_ms = round(response.elapsed.total_seconds() * 1000, 1)
    except RuntimeError:
        # elapsed is only set once the body is read
        pass
    log_upstream_call(
        logger,
        SERVICE_NAME,
        response.request.url.path,
        success=response.status_code < 400,
        status_code=response.status_code,
        elapsed_ms=elapsed_ms,
    )


def _retry_after(response: httpx.Response) -> Optional[float]:
    try:
        return float(response.headers["Retry-After"])
    except (KeyError, ValueError):
        return None


class OpenDotaClient:
    """Thin async client for the OpenDota REST API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None,
                 limiter: Optional[RateLimiter] = None):
        self.settings = settings
        self.limiter = limiter or RateLimiter(settings)
        self.base_url = settings.opendota_api_base_url.rstrip("/")
        self.timeout = settings.opendota_api_timeout / 1000
        self.mock_dir = Path(settings.mock_data_dir)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            params = {"api_key": self.settings.opendota_api_key} if self.settings.opendota_api_key else None
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                params=params,
                transport=self._transport,
                event_hooks={"response": [_on_response]},
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Transport
    # =========================================================================

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """Issue a request and return decoded JSON, or raise a typed error.

        The rate limiter is consulted first; a full window raises
        ``RateLimitedError`` without touching the network.
        """
        await self.limiter.acquire(SERVICE_NAME)
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"OpenDota request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"OpenDota unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"OpenDota has no resource at {path}")
        if response.status_code == 429:
            self.limiter.record_rate_limit_hit(SERVICE_NAME, _retry_after(response))
            raise RateLimitedError("Too many requests to OpenDota API. Please try again later.")
        if response.status_code >= 500:
            raise UpstreamUnavailableError(f"OpenDota returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise UpstreamDataError(f"OpenDota rejected {method} {path}: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamDataError(f"OpenDota returned invalid JSON for {path}") from e

    async def read_mock(self, mock_key: str) -> Optional[Any]:
        """Recorded fixture for ``mock_key``, or None when absent."""
        path = self.mock_dir / f"{mock_key}.json"

        def _load():
            if not path.exists():
                return None
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _load)
        except ValueError as e:
            raise UpstreamDataError(f"Mock fixture {path.name} is not valid JSON") from e

    async def _get(self, path: str, mock_key: str) -> Any:
        if self.settings.use_mock_api:
            data = await self.read_mock(mock_key)
            if data is None:
                raise NotFoundError(f"No mock data for {mock_key}")
            logger.debug("Served upstream request from mock data", path=path, mock_key=mock_key)
            return data
        return await self.request("GET", path)

    # =========================================================================
    # Resources
    # =========================================================================

    async def get_match(self, match_id: str, mock_key: str) -> Dict[str, Any]:
        return await self._get(f"/matches/{match_id}", mock_key)

    async def get_player(self, account_id: str, mock_key: str) -> Dict[str, Any]:
        return await self._get(f"/players/{account_id}", mock_key)

    async def get_player_stats(self, account_id: str, mock_key: str) -> Dict[str, Any]:
        """Win/loss, totals, counts and heroes fetched concurrently."""
        if self.settings.use_mock_api:
            return await self._get(f"/players/{account_id}/stats", mock_key)

        wl, totals, counts, heroes = await asyncio.gather(
            self.request("GET", f"/players/{account_id}/wl"),
            self.request("GET", f"/players/{account_id}/totals"),
            self.request("GET", f"/players/{account_id}/counts"),
            self.request("GET", f"/players/{account_id}/heroes"),
        )
        return {
            "account_id": int(account_id),
            "wl": wl,
            "totals": totals,
            "counts": counts,
            "heroes": heroes,
        }

    async def get_team(self, team_id: str, mock_key: str) -> Dict[str, Any]:
        return await self._get(f"/teams/{team_id}", mock_key)

    async def parse_match(self, match_id: str, mock_key: str, timeout_ms: int,
                          poll_interval_ms: Optional[int] = None) -> Dict[str, Any]:
        """Request a replay parse and wait for OpenDota to finish it.

        OpenDota answers ``POST /request/{match_id}`` with a job id and
        reports that job until it completes, after which the job lookup
        returns null and the match carries a replay ``version``.
        """
        if self.settings.use_mock_api:
            return await self._get(f"/matches/{match_id}", mock_key)

        submitted = await self.request("POST", f"/request/{match_id}")
        job_id = (submitted or {}).get("job", {}).get("jobId") if isinstance(submitted, dict) else None
        if job_id is None:
            raise UpstreamDataError(f"OpenDota did not return a parse job for match {match_id}")

        interval = (poll_interval_ms or self.settings.opendota_parse_poll_interval_ms) / 1000
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            pending = await self.request("GET", f"/request/{job_id}")
            if not pending:
                break
            if time.monotonic() >= deadline:
                raise FetchTimeoutError(f"Match parsing timed out for match {match_id}")
            await asyncio.sleep(interval)

        match = await self.request("GET", f"/matches/{match_id}")
        if not isinstance(match, dict) or match.get("version") is None:
            raise UpstreamDataError(f"Match {match_id} was not parsed by OpenDota")
        return match

    async def is_healthy(self) -> bool:
        if self.settings.use_mock_api:
            return self.mock_dir.exists()
        try:
            response = await self._get_client().get("/health")
            return response.status_code < 500
        except httpx.HTTPError:
            return False
