"""Cache-or-queue protocol: both forms and in-flight de-duplication."""

import asyncio

import pytest

from core.cache import CacheService
from core.errors import FetchTimeoutError, RateLimitedError
from services.cache_keys import CacheKey, match_key, normalize_key
from services.cache_or_queue import CacheOrQueue, new_job_id
from services.queue import RequestQueue
from tests.conftest import make_settings


@pytest.fixture
async def parts(settings):
    cache = CacheService(settings)
    queue = RequestQueue(settings)
    await queue.start()
    yield cache, queue, CacheOrQueue(settings, cache, queue)
    await queue.stop()


async def test_async_hit_returns_cached_value(parts):
    cache, queue, protocol = parts
    await cache.set("opendota-match-1", {"match_id": 1}, 60)

    result = await protocol.get_or_queue(match_key("1"), "fetch-match", {"match_id": "1"})

    assert result.status_code == 200
    assert result.body == {"match_id": 1}
    assert queue.jobs == {}


async def test_async_miss_queues_and_returns_signature(parts):
    cache, queue, protocol = parts
    release = asyncio.Event()

    async def fetch(payload):
        await release.wait()

    queue.register_handler("fetch-match", fetch)
    result = await protocol.get_or_queue(match_key("7"), "fetch-match", {"match_id": "7"}, signature="7")

    assert result.status_code == 202
    assert result.queued
    assert result.body["status"] == "queued"
    assert result.body["signature"] == "7"
    assert result.body["job_id"].startswith("match-7-")
    release.set()


async def test_concurrent_async_misses_share_one_job(parts):
    cache, queue, protocol = parts
    release = asyncio.Event()

    async def fetch(payload):
        await release.wait()

    queue.register_handler("fetch-match", fetch)
    first, second = await asyncio.gather(
        protocol.get_or_queue(match_key("9"), "fetch-match", {"match_id": "9"}),
        protocol.get_or_queue(match_key("9"), "fetch-match", {"match_id": "9"}),
    )

    assert first.body["job_id"] == second.body["job_id"]
    assert first.body["signature"] == "opendota-match-9"
    assert len(queue.jobs) == 1
    release.set()


async def test_concurrent_sync_misses_share_one_fetch(parts):
    cache, queue, protocol = parts
    calls = []
    gate = asyncio.Event()

    async def fetch():
        calls.append(1)
        await gate.wait()
        await cache.set("opendota-team-5", {"team_id": 5}, 60)
        return {"team_id": 5}

    key = CacheKey("opendota-team", "5")
    pending = [asyncio.create_task(protocol.get_or_fetch(key, fetch)) for _ in range(3)]
    await asyncio.sleep(0.01)
    gate.set()
    results = await asyncio.gather(*pending)

    assert calls == [1]
    assert results == [{"team_id": 5}] * 3
    assert protocol.inflight()["fetches"] == 0


async def test_sync_hit_skips_fetch(parts):
    cache, queue, protocol = parts
    await cache.set("opendota-player-1", {"cached": True}, 60)

    async def fetch():
        raise AssertionError("should not fetch")

    assert await protocol.get_or_fetch(CacheKey("opendota-player", "1"), fetch) == {"cached": True}


async def test_force_deletes_then_fetches(parts):
    cache, queue, protocol = parts
    await cache.set("opendota-player-1", {"version": 1}, 60)
    seen_during_fetch = []

    async def fetch():
        seen_during_fetch.append(await cache.get("opendota-player-1"))
        await cache.set("opendota-player-1", {"version": 2}, 60)
        return {"version": 2}

    result = await protocol.get_or_fetch(CacheKey("opendota-player", "1"), fetch, force=True)

    assert result == {"version": 2}
    assert seen_during_fetch == [None]


async def test_sync_errors_propagate_without_retry(parts):
    cache, queue, protocol = parts
    calls = []

    async def fetch():
        calls.append(1)
        raise RateLimitedError()

    with pytest.raises(RateLimitedError):
        await protocol.get_or_fetch(CacheKey("opendota-player", "2"), fetch)
    assert calls == [1]


async def test_sync_fetch_timeout(tmp_path):
    settings = make_settings(tmp_path, sync_fetch_timeout_ms=100)
    cache = CacheService(settings)
    protocol = CacheOrQueue(settings, cache, RequestQueue(settings))

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(FetchTimeoutError) as exc_info:
        await protocol.get_or_fetch(CacheKey("opendota-team", "1"), slow)
    assert exc_info.value.status_code == 408


def test_job_ids_and_keys():
    assert new_job_id("fetch-match", "42").startswith("match-42-")
    assert new_job_id("fetch-player-stats", "3").startswith("player-stats-3-")
    assert match_key("1").filename == "opendota-match-1.json"
    assert normalize_key("opendota-match-1.json") == "opendota-match-1"
    assert normalize_key("opendota-match-1") == "opendota-match-1"
