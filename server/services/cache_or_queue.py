"""Cache-or-queue request protocol.

Asynchronous form (read endpoints):
    hit  -> 200 with the cached value
    miss -> enqueue a fetch job, do not wait, 202 {status: queued, signature, job_id}

Synchronous form ("get or create" endpoints):
    no force: hit -> cached value
    force:    delete the key first
    then await the fetch (bounded by SYNC_FETCH_TIMEOUT_MS)

Single-flight: concurrent synchronous misses for a key share one fetch task,
and concurrent asynchronous misses reuse the live job for that key. A fetch
started before a force-refresh delete can still land after it and restore
the value it fetched; that ordering is not enforced.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from constants import JOB_ID_PREFIXES
from core.cache import CacheService
from core.config import Settings
from core.errors import FetchTimeoutError
from core.logging import get_logger
from models.queue import JobPriority, JobRequest, JobStatus
from services.cache_keys import CacheKey
from services.queue import RequestQueue

logger = get_logger(__name__)

Fetch = Callable[[], Awaitable[Any]]


def new_job_id(endpoint: str, identifier: str) -> str:
    """``<resource>-<identifier>-<submission ms>``"""
    prefix = JOB_ID_PREFIXES.get(endpoint, endpoint)
    return f"{prefix}-{identifier}-{int(time.time() * 1000)}"


@dataclass
class ProtocolResult:
    status_code: int
    body: Any

    @property
    def queued(self) -> bool:
        return self.status_code == 202


class CacheOrQueue:
    """Implements both protocol forms over one cache and one request queue."""

    def __init__(self, settings: Settings, cache: CacheService, queue: RequestQueue):
        self.settings = settings
        self.cache = cache
        self.queue = queue
        self._inflight_fetches: Dict[str, asyncio.Task] = {}
        self._inflight_jobs: Dict[str, str] = {}

    def _live_job_for(self, key: str) -> Optional[str]:
        job_id = self._inflight_jobs.get(key)
        if job_id is None:
            return None
        if self.queue.is_live(job_id):
            return job_id
        self._inflight_jobs.pop(key, None)
        return None

    async def _submit(self, cache_key: CacheKey, endpoint: str, payload: Dict[str, Any],
                      priority: JobPriority, timeout_ms: Optional[int]) -> str:
        """Enqueue unless a live job already covers this key. Returns the job id."""
        key = cache_key.key
        job_id = self._live_job_for(key)
        if job_id is not None:
            logger.debug("Reusing in-flight job", cache_key=key, job_id=job_id)
            return job_id

        job_id = new_job_id(endpoint, cache_key.identifier)
        self._inflight_jobs[key] = job_id
        try:
            await self.queue.enqueue(job_id, JobRequest(
                endpoint=endpoint, payload=payload, priority=priority, timeout_ms=timeout_ms,
            ))
        except Exception:
            self._inflight_jobs.pop(key, None)
            raise
        return job_id

    async def get_or_queue(self, cache_key: CacheKey, endpoint: str, payload: Dict[str, Any],
                           signature: Optional[str] = None,
                           priority: JobPriority = JobPriority.NORMAL) -> ProtocolResult:
        """Asynchronous form. Never waits for upstream."""
        value = await self.cache.get(cache_key.key)
        if value is not None:
            return ProtocolResult(200, value)

        job_id = await self._submit(cache_key, endpoint, payload, priority, None)
        return ProtocolResult(202, {
            "status": JobStatus.QUEUED.value,
            "signature": signature or cache_key.key,
            "job_id": job_id,
            "backend": self.queue.backend_type(),
        })

    async def get_or_fetch(self, cache_key: CacheKey, fetch: Fetch, force: bool = False) -> Any:
        """Synchronous form. Returns the cached or freshly fetched value."""
        key = cache_key.key
        if force:
            await self.cache.delete(key)
        else:
            value = await self.cache.get(key)
            if value is not None:
                return value

        task = self._inflight_fetches.get(key)
        if task is None or task.done():
            task = asyncio.create_task(fetch(), name=f"fetch-{key}")
            self._inflight_fetches[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_fetch(k, t))
        else:
            logger.debug("Joining in-flight fetch", cache_key=key)

        timeout = self.settings.sync_fetch_timeout_ms / 1000
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            raise FetchTimeoutError(
                f"Fetching {key} took longer than {self.settings.sync_fetch_timeout_ms} ms"
            )

    def _forget_fetch(self, key: str, task: asyncio.Task) -> None:
        if self._inflight_fetches.get(key) is task:
            del self._inflight_fetches[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Shared fetch failed", cache_key=key, error=str(task.exception()))

    async def enqueue_and_wait(self, cache_key: CacheKey, endpoint: str, payload: Dict[str, Any],
                               timeout_ms: int, priority: JobPriority = JobPriority.NORMAL,
                               job_timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        """Enqueue (or join) a job and poll it until terminal or ``timeout_ms``."""
        job_id = await self._submit(cache_key, endpoint, payload, priority, job_timeout_ms)
        return await self.queue.wait_for_job(job_id, timeout_ms)

    def inflight(self) -> Dict[str, int]:
        return {
            "fetches": len(self._inflight_fetches),
            "jobs": sum(1 for key in list(self._inflight_jobs) if self._live_job_for(key)),
        }
