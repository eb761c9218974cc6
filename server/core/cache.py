"""Cache service over a pluggable storage backend.

Reads fail open: a backend error on ``get``/``exists`` is logged and treated
as a miss, so a storage outage degrades to "always refetch". Writes do not:
``set``/``delete``/``invalidate_pattern`` raise ``StorageError``.
"""

import asyncio
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.cache_backends import CacheBackend, MemoryCacheBackend, create_backend
from core.config import Settings
from core.errors import StorageError
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheService:
    """Async TTL cache with memory, Redis, SQLite or file backend.

    Backend selection:
    - CACHE_BACKEND picks the store
    - An external store that fails at startup is replaced by memory when
      CACHE_FALLBACK_TO_MEMORY is true
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None,
                 backend: Optional[CacheBackend] = None):
        self.settings = settings
        self.database = database
        self.backend = backend or create_backend(settings, database)
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}
        self._sweeper: Optional[asyncio.Task] = None

    async def startup(self):
        """Initialize the backend, falling back to memory if allowed."""
        try:
            await self.backend.startup()
            logger.info("Cache initialized", backend=self.backend.name)
        except Exception as e:
            if not self.settings.cache_fallback_to_memory or self.backend.kind == "memory":
                raise
            logger.warning("Cache backend unavailable, falling back to memory",
                           backend=self.backend.name, error=str(e))
            self.backend = MemoryCacheBackend()

        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="cache-expiry-sweeper")

    async def shutdown(self):
        """Close cache connections."""
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        try:
            await self.backend.shutdown()
        except Exception as e:
            logger.warning("Cache shutdown failed", backend=self.backend.name, error=str(e))

    def backend_type(self) -> str:
        """``memory`` for the in-process map, ``external`` otherwise."""
        return self.backend.kind

    def backend_name(self) -> str:
        return self.backend.name

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Returns None on miss, expiry or backend error."""
        try:
            value = await self.backend.get(key)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache get failed", key=key, backend=self.backend.name, error=str(e))
            return None

        hit = value is not None
        self._stats["hits" if hit else "misses"] += 1
        log_cache_operation(logger, "get", key, hit=hit)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Overwrite ``key``. Raises StorageError on backend failure."""
        ttl = ttl if ttl is not None else self.settings.cache_ttl
        try:
            await self.backend.set(key, value, ttl)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache set failed", key=key, backend=self.backend.name, error=str(e))
            raise StorageError(f"Failed to write cache key {key}: {e}") from e

        self._stats["sets"] += 1
        log_cache_operation(logger, "set", key, ttl=ttl)

    async def exists(self, key: str) -> bool:
        try:
            found = await self.backend.exists(key)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache exists failed", key=key, backend=self.backend.name, error=str(e))
            return False

        log_cache_operation(logger, "exists", key, hit=found)
        return found

    async def delete(self, key: str) -> bool:
        """Remove ``key`` regardless of TTL. Returns whether it was present."""
        try:
            removed = await self.backend.delete(key)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache delete failed", key=key, backend=self.backend.name, error=str(e))
            raise StorageError(f"Failed to delete cache key {key}: {e}") from e

        if removed:
            self._stats["deletes"] += 1
        log_cache_operation(logger, "delete", key, removed=removed)
        return removed

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern."""
        try:
            count = await self.backend.invalidate_pattern(pattern)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache invalidation failed", pattern=pattern,
                         backend=self.backend.name, error=str(e))
            raise StorageError(f"Failed to invalidate pattern {pattern}: {e}") from e

        self._stats["deletes"] += count
        logger.info("Cache pattern invalidated", pattern=pattern, count=count)
        return count

    async def purge_expired(self) -> int:
        """Drop expired records from the backend. Failures are logged, not raised."""
        try:
            removed = await self.backend.purge_expired()
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache purge failed", backend=self.backend.name, error=str(e))
            return 0
        if removed:
            logger.info("Purged expired cache records", backend=self.backend.name, count=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cache_sweep_interval_seconds)
            await self.purge_expired()

    async def is_healthy(self) -> bool:
        try:
            return bool(await self.backend.is_healthy())
        except Exception as e:
            logger.warning("Cache health check failed", backend=self.backend.name, error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "backend": self.backend_name(),
            "backend_type": self.backend_type(),
            **self._stats,
        }
        try:
            stats["keys"] = await self.backend.count_keys()
        except Exception:
            stats["keys"] = None
        return stats
