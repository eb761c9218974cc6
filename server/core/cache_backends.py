"""
Cache storage backends.

Four interchangeable stores behind one contract:
- Memory: in-process dict, the default and the emergency fallback
- Redis: shared store for multi-process deployments
- SQLite: persistent single-process store (SQLModel ``cache_entries`` table)
- File: one JSON document per key under a directory, used for the mock
  data tree

Backends raise on I/O failure. ``CacheService`` decides which failures are
swallowed (reads) and which surface as ``StorageError`` (writes).

Usage:
    backend = create_backend(settings, database)
    await backend.startup()
    await backend.set("opendota-match-1", {"match_id": 1}, 3600)
"""

import asyncio
import json
import os
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from core.logging import get_logger

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None
    REDIS_AVAILABLE = False

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database

logger = get_logger(__name__)

Clock = Callable[[], float]

_GLOB_CHARS = re.compile(r"[*?\[]")


def glob_prefix(pattern: str) -> str:
    """Literal text before the first glob metacharacter."""
    match = _GLOB_CHARS.search(pattern)
    return pattern[:match.start()] if match else pattern


def matches_pattern(key: str, pattern: str) -> bool:
    return fnmatchcase(key, pattern)


@dataclass
class CacheRecord:
    """A stored value and the time window it is valid for."""
    value: Any
    stored_at: float
    ttl_seconds: int

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "stored_at": self.stored_at, "ttl_seconds": self.ttl_seconds}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheRecord":
        return cls(
            value=data["value"],
            stored_at=float(data["stored_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )


class CacheBackend(ABC):
    """Abstract base class for cache storage backends."""

    name: str = "abstract"
    kind: str = "external"

    async def startup(self) -> None:
        """Open connections. Raise if the store is unreachable."""

    async def shutdown(self) -> None:
        """Release connections."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the live value, or None on miss/expiry."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Overwrite a key with a fresh record."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True iff a non-expired record is present."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key regardless of TTL. Returns whether anything was removed."""

    @abstractmethod
    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob. Returns the count removed."""

    async def purge_expired(self) -> int:
        """Drop expired records eagerly. Returns the count removed.

        Stores that expire keys themselves have nothing to do.
        """
        return 0

    async def count_keys(self) -> Optional[int]:
        """Number of stored keys, or None when counting is expensive."""
        return None

    async def is_healthy(self) -> bool:
        return True


class MemoryCacheBackend(CacheBackend):
    """In-process map with lazy expiry."""

    name = "memory"
    kind = "memory"

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._records: Dict[str, CacheRecord] = {}

    def _live(self, key: str) -> Optional[CacheRecord]:
        record = self._records.get(key)
        if record is None:
            return None
        if not record.is_valid(self._clock()):
            self._records.pop(key, None)
            return None
        return record

    async def get(self, key: str) -> Optional[Any]:
        record = self._live(key)
        return record.value if record else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._records[key] = CacheRecord(value=value, stored_at=self._clock(), ttl_seconds=ttl)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def invalidate_pattern(self, pattern: str) -> int:
        doomed = [k for k in list(self._records) if matches_pattern(k, pattern)]
        for key in doomed:
            self._records.pop(key, None)
        return len(doomed)

    async def count_keys(self) -> Optional[int]:
        return len(self._records)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, r in self._records.items() if not r.is_valid(now)]
        for key in expired:
            del self._records[key]
        return len(expired)


class RedisCacheBackend(CacheBackend):
    """Redis store. TTL is enforced by Redis itself via SETEX."""

    name = "redis"

    def __init__(self, redis_url: Optional[str], client: Any = None):
        self.redis_url = redis_url
        self.redis = client

    async def startup(self) -> None:
        if self.redis is None:
            if not REDIS_AVAILABLE:
                raise RuntimeError("redis package is not installed")
            if not self.redis_url:
                raise RuntimeError("REDIS_URL is required for the redis cache backend")
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
        await self.redis.ping()
        logger.info("Redis cache initialized", url=self.redis_url)

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        # SETEX rejects non-positive expiries; such a record is already expired
        if ttl <= 0:
            await self.redis.delete(key)
            return
        await self.redis.setex(key, ttl, json.dumps(value, default=str))

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(key))

    async def invalidate_pattern(self, pattern: str) -> int:
        keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
        if not keys:
            return 0
        return int(await self.redis.delete(*keys))

    async def is_healthy(self) -> bool:
        return bool(await self.redis.ping())


class SqliteCacheBackend(CacheBackend):
    """Persistent store on the SQLModel ``cache_entries`` table."""

    name = "sqlite"

    def __init__(self, database: "Database"):
        self.database = database

    async def startup(self) -> None:
        if self.database.engine is None:
            await self.database.startup()
        await self.database.ping()

    async def shutdown(self) -> None:
        await self.database.shutdown()

    async def get(self, key: str) -> Optional[Any]:
        entry = await self.database.get_cache_entry(key)
        return json.loads(entry.value) if entry else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self.database.set_cache_entry(key, json.dumps(value, default=str), ttl)

    async def exists(self, key: str) -> bool:
        return await self.database.get_cache_entry(key) is not None

    async def delete(self, key: str) -> bool:
        return await self.database.delete_cache_entry(key)

    async def invalidate_pattern(self, pattern: str) -> int:
        # LIKE narrows by literal prefix, fnmatch decides
        prefix = glob_prefix(pattern)
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        candidates = await self.database.list_cache_keys(escaped + "%")
        doomed = [k for k in candidates if matches_pattern(k, pattern)]
        return await self.database.delete_cache_keys(doomed)

    async def purge_expired(self) -> int:
        return await self.database.purge_expired_entries()

    async def count_keys(self) -> Optional[int]:
        return await self.database.count_cache_entries()

    async def is_healthy(self) -> bool:
        return await self.database.ping()


class FileCacheBackend(CacheBackend):
    """One ``<key>.json`` document per record under a base directory."""

    name = "file"

    def __init__(self, base_path: str, clock: Clock = time.time):
        self.base_path = Path(base_path)
        self._clock = clock

    def file_path(self, key: str) -> Path:
        sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", key)
        return self.base_path / f"{sanitized}.json"

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None

    def _write(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, default=str)
        os.replace(tmp, path)

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def _scan(self) -> List[Path]:
        if not self.base_path.exists():
            return []
        return sorted(self.base_path.glob("*.json"))

    async def startup(self) -> None:
        await self._run(lambda: self.base_path.mkdir(parents=True, exist_ok=True))
        logger.info("File cache initialized", path=str(self.base_path))

    async def _live_record(self, key: str) -> Optional[CacheRecord]:
        path = self.file_path(key)
        data = await self._run(self._read, path)
        if data is None:
            return None
        record = CacheRecord.from_dict(data)
        if not record.is_valid(self._clock()):
            await self._run(self._unlink, path)
            return None
        return record

    async def get(self, key: str) -> Optional[Any]:
        record = await self._live_record(key)
        return record.value if record else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        payload = {"key": key, **CacheRecord(value, self._clock(), ttl).to_dict()}
        await self._run(self._write, self.file_path(key), payload)

    async def exists(self, key: str) -> bool:
        return await self._live_record(key) is not None

    async def delete(self, key: str) -> bool:
        return await self._run(self._unlink, self.file_path(key))

    def _invalidate(self, pattern: str) -> int:
        removed = 0
        for path in self._scan():
            data = self._read(path)
            key = data.get("key") if data else None
            if key is None:
                key = path.stem
            if matches_pattern(key, pattern) and self._unlink(path):
                removed += 1
        return removed

    async def invalidate_pattern(self, pattern: str) -> int:
        return await self._run(self._invalidate, pattern)

    def _purge(self) -> int:
        now = self._clock()
        removed = 0
        for path in self._scan():
            data = self._read(path)
            if data is None or CacheRecord.from_dict(data).is_valid(now):
                continue
            if self._unlink(path):
                removed += 1
        return removed

    async def purge_expired(self) -> int:
        return await self._run(self._purge)

    async def count_keys(self) -> Optional[int]:
        return len(await self._run(self._scan))

    async def is_healthy(self) -> bool:
        return await self._run(os.access, str(self.base_path), os.W_OK)


def create_backend(settings: "Settings", database: Optional["Database"] = None) -> CacheBackend:
    """Build the configured backend. Falls back to memory for unknown names."""
    if settings.cache_backend == "redis":
        return RedisCacheBackend(settings.redis_url)
    if settings.cache_backend == "sqlite" and database is not None:
        return SqliteCacheBackend(database)
    if settings.cache_backend == "file":
        return FileCacheBackend(settings.cache_file_dir)
    return MemoryCacheBackend()
