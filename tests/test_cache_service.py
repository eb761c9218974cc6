"""CacheService: fail-open reads, typed write errors and startup fallback."""

from unittest.mock import AsyncMock

import pytest

from core.cache import CacheService
from core.cache_backends import MemoryCacheBackend, RedisCacheBackend
from core.errors import StorageError
from tests.conftest import make_settings


class BrokenBackend(MemoryCacheBackend):
    name = "broken"
    kind = "external"

    async def get(self, key):
        raise ConnectionError("store down")

    async def exists(self, key):
        raise ConnectionError("store down")

    async def set(self, key, value, ttl):
        raise ConnectionError("store down")

    async def delete(self, key):
        raise ConnectionError("store down")

    async def invalidate_pattern(self, pattern):
        raise ConnectionError("store down")


@pytest.fixture
def broken_cache(settings):
    return CacheService(settings, backend=BrokenBackend())


async def test_reads_fail_open(broken_cache):
    assert await broken_cache.get("k") is None
    assert await broken_cache.exists("k") is False
    stats = await broken_cache.get_stats()
    assert stats["errors"] == 2


async def test_writes_raise_storage_error(broken_cache):
    with pytest.raises(StorageError):
        await broken_cache.set("k", 1, 10)
    with pytest.raises(StorageError):
        await broken_cache.delete("k")
    with pytest.raises(StorageError) as exc_info:
        await broken_cache.invalidate_pattern("k*")
    assert exc_info.value.status_code == 500


async def test_default_ttl_from_settings(tmp_path, clock):
    settings = make_settings(tmp_path, cache_ttl=5)
    cache = CacheService(settings, backend=MemoryCacheBackend(clock=clock))
    await cache.set("k", "v")
    clock.advance(5)
    assert await cache.get("k") is None


async def test_stats_count_hits_and_misses(settings):
    cache = CacheService(settings)
    await cache.set("k", 1, 60)
    await cache.get("k")
    await cache.get("missing")
    stats = await cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["sets"] == 1
    assert stats["keys"] == 1
    assert stats["backend_type"] == "memory"


async def test_unreachable_external_backend_falls_back_to_memory(settings):
    client = AsyncMock()
    client.ping.side_effect = ConnectionError("refused")
    cache = CacheService(settings, backend=RedisCacheBackend("redis://nowhere", client=client))

    await cache.startup()

    assert cache.backend_type() == "memory"
    assert cache.backend_name() == "memory"
    await cache.set("k", 1, 60)
    assert await cache.get("k") == 1


async def test_fallback_can_be_disabled(tmp_path):
    settings = make_settings(tmp_path, cache_fallback_to_memory=False)
    client = AsyncMock()
    client.ping.side_effect = ConnectionError("refused")
    cache = CacheService(settings, backend=RedisCacheBackend("redis://nowhere", client=client))

    with pytest.raises(ConnectionError):
        await cache.startup()


async def test_external_backend_type(tmp_path):
    settings = make_settings(tmp_path, cache_backend="file")
    cache = CacheService(settings)
    await cache.startup()
    assert cache.backend_type() == "external"
    assert cache.backend_name() == "file"
    assert await cache.is_healthy()


async def test_purge_expired_drops_stale_records(settings, clock):
    cache = CacheService(settings, backend=MemoryCacheBackend(clock=clock))
    await cache.set("short", 1, 1)
    await cache.set("long", 1, 100)
    clock.advance(2)

    assert await cache.purge_expired() == 1
    assert await cache.backend.count_keys() == 1


async def test_purge_failure_is_logged_not_raised(settings):
    backend = MemoryCacheBackend()
    backend.purge_expired = AsyncMock(side_effect=ConnectionError("store down"))
    cache = CacheService(settings, backend=backend)

    assert await cache.purge_expired() == 0
    assert (await cache.get_stats())["errors"] == 1


async def test_startup_starts_and_shutdown_stops_sweeper(settings):
    cache = CacheService(settings)
    await cache.startup()
    sweeper = cache._sweeper
    assert sweeper is not None and not sweeper.done()

    await cache.shutdown()
    assert sweeper.done()
    assert cache._sweeper is None
