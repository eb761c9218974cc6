"""
Sliding-window rate limiting for upstream calls.

Each service gets at most ``limit`` requests in any ``window_seconds`` span.
The window lives in one of two stores, mirroring the cache backend split:
- Memory: per-process timestamp deques
- Redis: one sorted set per service, shared by every process

A 429 from upstream additionally parks the service until its Retry-After
has passed. ``acquire`` raises ``RateLimitedError`` instead of waiting, so
the request queue retries the job with its own backoff.

Usage:
    limiter = RateLimiter(settings)
    await limiter.startup()
    await limiter.acquire("opendota")
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from core.config import Settings
from core.errors import RateLimitedError
from core.logging import get_logger

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None
    REDIS_AVAILABLE = False

logger = get_logger(__name__)

Clock = Callable[[], float]

KEY_PREFIX = "ratelimit"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class RateLimitBackend(ABC):
    """Where the request windows are counted."""

    name: str = "base"

    async def startup(self) -> None:
        """Open connections. Raise if the store is unreachable."""

    async def shutdown(self) -> None:
        """Release connections."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        """Record one request under ``key`` unless the window is already full."""


class MemoryRateLimitBackend(RateLimitBackend):
    name = "memory"

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        window = self._windows.setdefault(key, deque())
        while window and window[0] <= now - window_seconds:
            window.popleft()

        if len(window) >= limit:
            return RateLimitResult(False, 0, retry_after=window[0] + window_seconds - now)
        window.append(now)
        return RateLimitResult(True, limit - len(window))


class RedisRateLimitBackend(RateLimitBackend):
    """Sorted set of request timestamps per key, trimmed on every hit."""

    name = "redis"

    def __init__(self, redis_url: Optional[str], client: Any = None, clock: Clock = time.time):
        self.redis_url = redis_url
        self.redis = client
        self._clock = clock

    async def startup(self) -> None:
        if self.redis is None:
            if not REDIS_AVAILABLE:
                raise RuntimeError("redis package is not installed")
            if not self.redis_url:
                raise RuntimeError("REDIS_URL is required for the redis rate limit backend")
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
        await self.redis.ping()
        logger.info("Redis rate limiter initialized", url=self.redis_url)

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitResult:
        now = self._clock()
        member = f"{now}-{uuid.uuid4().hex[:8]}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, max(1, int(window_seconds)))
            _, _, count, _ = await pipe.execute()

        if count <= limit:
            return RateLimitResult(True, limit - count)

        # Over the limit: take the request back out of the window
        await self.redis.zrem(key, member)
        oldest = await self.redis.zrange(key, 0, 0, withscores=True)
        retry_after = oldest[0][1] + window_seconds - now if oldest else window_seconds
        return RateLimitResult(False, 0, retry_after=retry_after)


def create_rate_limit_backend(settings: Settings) -> RateLimitBackend:
    if settings.rate_limit_backend == "redis":
        return RedisRateLimitBackend(settings.redis_url)
    return MemoryRateLimitBackend()


class RateLimiter:
    """Per-service request budget consulted before each upstream call.

    Backend errors fail open: a broken counter store never blocks fetches.
    """

    def __init__(self, settings: Settings, backend: Optional[RateLimitBackend] = None,
                 clock: Clock = time.monotonic):
        self.settings = settings
        self.backend = backend or create_rate_limit_backend(settings)
        self._clock = clock
        self._backoff_until: Dict[str, float] = {}
        self._stats = {"allowed": 0, "blocked": 0, "errors": 0}

    @property
    def enabled(self) -> bool:
        return self.settings.rate_limit_enabled

    async def startup(self) -> None:
        """Connect the backend, falling back to memory like the cache does."""
        try:
            await self.backend.startup()
        except Exception as e:
            if not self.settings.cache_fallback_to_memory or self.backend.name == "memory":
                raise
            logger.warning("Rate limit backend unavailable, falling back to memory",
                           backend=self.backend.name, error=str(e))
            self.backend = MemoryRateLimitBackend()

    async def shutdown(self) -> None:
        try:
            await self.backend.shutdown()
        except Exception as e:
            logger.warning("Rate limiter shutdown failed", backend=self.backend.name, error=str(e))

    async def acquire(self, service: str) -> None:
        """Spend one request from ``service``'s window.

        Raises:
            RateLimitedError: the window is full or upstream asked us to back off
        """
        if not self.enabled:
            return

        wait = self.backoff_remaining(service)
        if wait > 0:
            self._stats["blocked"] += 1
            raise RateLimitedError(f"{service} asked to back off; retry in {wait:.1f}s")

        try:
            result = await self.backend.hit(
                f"{KEY_PREFIX}:{service}",
                self.settings.rate_limit_requests,
                self.settings.rate_limit_window,
            )
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Rate limit check failed", service=service,
                         backend=self.backend.name, error=str(e))
            return

        if not result.allowed:
            self._stats["blocked"] += 1
            logger.warning("Rate limit reached", service=service,
                           retry_after=round(result.retry_after, 2))
            raise RateLimitedError(
                f"{service} request budget exhausted; retry in {result.retry_after:.1f}s"
            )
        self._stats["allowed"] += 1

    def record_rate_limit_hit(self, service: str, retry_after: Optional[float] = None) -> None:
        """Upstream answered 429: refuse calls to it for ``retry_after`` seconds."""
        delay = retry_after if retry_after is not None else self.settings.rate_limit_window
        self._backoff_until[service] = self._clock() + delay
        logger.warning("Upstream rate limit hit", service=service, backoff_seconds=delay)

    def backoff_remaining(self, service: str) -> float:
        return max(0.0, self._backoff_until.get(service, 0.0) - self._clock())

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "backend": self.backend.name,
            "limit": self.settings.rate_limit_requests,
            "window_seconds": self.settings.rate_limit_window,
            **self._stats,
        }
