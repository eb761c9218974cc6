"""Cache backend behaviour: TTL, deletes and glob invalidation."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from constants import NS_MATCH, NS_MATCH_PARSED, NS_PLAYER, NS_PLAYER_STATS, NS_TEAM
from core.cache_backends import (
    FileCacheBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    SqliteCacheBackend,
    create_backend,
    glob_prefix,
)
from core.database import Database
from services.cache_keys import match_key, parsed_match_key, player_key, player_stats_key
from tests.conftest import make_settings


class TestMemoryBackend:

    async def test_set_then_get_returns_value(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set("opendota-match-1", {"match_id": 1}, 60)
        assert await backend.get("opendota-match-1") == {"match_id": 1}
        assert await backend.exists("opendota-match-1")

    async def test_expires_after_ttl(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set("k", "v", 10)
        clock.advance(9.9)
        assert await backend.get("k") == "v"
        clock.advance(0.1)
        assert await backend.get("k") is None
        assert not await backend.exists("k")
        assert await backend.count_keys() == 0

    async def test_set_resets_storage_time(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set("k", "old", 10)
        clock.advance(8)
        await backend.set("k", "new", 10)
        clock.advance(8)
        assert await backend.get("k") == "new"

    async def test_delete_reports_removal(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set("k", 1, 10)
        assert await backend.delete("k") is True
        assert await backend.delete("k") is False

    async def test_invalidate_pattern(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        for key in ("opendota-match-1", "opendota-match-2", "opendota-player-1"):
            await backend.set(key, 1, 60)

        assert await backend.invalidate_pattern("opendota-match-*") == 2
        assert await backend.get("opendota-player-1") == 1
        assert await backend.invalidate_pattern("opendota-player-1") == 1
        assert await backend.invalidate_pattern("nothing-*") == 0

    async def test_purge_expired(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        await backend.set("short", 1, 1)
        await backend.set("long", 1, 100)
        clock.advance(2)
        assert await backend.purge_expired() == 1
        assert await backend.count_keys() == 1

    async def test_namespace_pattern_leaves_sibling_namespaces(self, clock):
        backend = MemoryCacheBackend(clock=clock)
        keys = [match_key("1"), parsed_match_key("1"), player_key("1"), player_stats_key("1")]
        for key in keys:
            await backend.set(key.key, 1, 60)

        assert await backend.invalidate_pattern(f"{NS_PLAYER}-*") == 1
        assert await backend.exists(player_stats_key("1").key)
        assert await backend.invalidate_pattern(f"{NS_MATCH}-*") == 1
        assert await backend.exists(parsed_match_key("1").key)


class TestFileBackend:

    async def test_writes_one_json_file_per_key(self, tmp_path, clock):
        backend = FileCacheBackend(str(tmp_path), clock=clock)
        await backend.startup()
        await backend.set("opendota-match-42", {"match_id": 42}, 60)

        path = tmp_path / "opendota-match-42.json"
        assert path.exists()
        stored = json.loads(path.read_text())
        assert stored["value"] == {"match_id": 42}
        assert stored["ttl_seconds"] == 60
        assert await backend.get("opendota-match-42") == {"match_id": 42}

    async def test_sanitizes_file_names(self, tmp_path):
        backend = FileCacheBackend(str(tmp_path))
        assert backend.file_path("a/b:c").name == "a_b_c.json"

    async def test_expired_file_is_removed_on_read(self, tmp_path, clock):
        backend = FileCacheBackend(str(tmp_path), clock=clock)
        await backend.set("k", 1, 5)
        clock.advance(5)
        assert await backend.get("k") is None
        assert not (tmp_path / "k.json").exists()

    async def test_invalidate_pattern_and_delete(self, tmp_path, clock):
        backend = FileCacheBackend(str(tmp_path), clock=clock)
        await backend.set("opendota-team-1", 1, 60)
        await backend.set("opendota-team-2", 2, 60)
        await backend.set("opendota-player-1", 3, 60)

        assert await backend.invalidate_pattern("opendota-team-*") == 2
        assert await backend.count_keys() == 1
        assert await backend.delete("opendota-player-1") is True
        assert await backend.delete("opendota-player-1") is False

    async def test_purge_expired_removes_stale_files(self, tmp_path, clock):
        backend = FileCacheBackend(str(tmp_path), clock=clock)
        await backend.set("short", 1, 1)
        await backend.set("long", 1, 100)
        clock.advance(2)

        assert await backend.purge_expired() == 1
        assert not (tmp_path / "short.json").exists()
        assert (tmp_path / "long.json").exists()

    async def test_missing_key_is_absent(self, tmp_path):
        backend = FileCacheBackend(str(tmp_path / "nope"))
        assert await backend.get("missing") is None
        assert await backend.count_keys() == 0


class TestSqliteBackend:

    @pytest.fixture
    async def backend(self, tmp_path):
        database = Database(make_settings(tmp_path))
        backend = SqliteCacheBackend(database)
        await backend.startup()
        yield backend
        await backend.shutdown()

    async def test_round_trip(self, backend):
        await backend.set("opendota-player-7", {"profile": {"name": "x"}}, 60)
        assert await backend.get("opendota-player-7") == {"profile": {"name": "x"}}
        assert await backend.exists("opendota-player-7")

    async def test_overwrite(self, backend):
        await backend.set("k", 1, 60)
        await backend.set("k", 2, 60)
        assert await backend.get("k") == 2
        assert await backend.count_keys() == 1

    async def test_zero_ttl_is_expired(self, backend):
        await backend.set("k", 1, 0)
        assert await backend.get("k") is None

    async def test_purge_expired_deletes_stale_rows(self, backend):
        await backend.set("stale", 1, 0)
        await backend.set("fresh", 1, 60)

        assert await backend.purge_expired() == 1
        assert await backend.count_keys() == 1
        assert await backend.exists("fresh")

    async def test_invalidate_pattern_uses_glob_semantics(self, backend):
        await backend.set("opendota-match-1", 1, 60)
        await backend.set("opendota-match-22", 1, 60)
        await backend.set("opendota-player-1", 1, 60)

        assert await backend.invalidate_pattern("opendota-match-?") == 1
        assert await backend.exists("opendota-match-22")
        assert await backend.invalidate_pattern("opendota-player-1") == 1

    async def test_namespace_pattern_leaves_sibling_namespaces(self, backend):
        for key in ("opendota-match-1", "opendota-parsedmatch-1",
                    "opendota-player-1", "opendota-playerstats-1"):
            await backend.set(key, 1, 60)

        assert await backend.invalidate_pattern("opendota-player-*") == 1
        assert await backend.exists("opendota-playerstats-1")
        assert await backend.invalidate_pattern("opendota-match-*") == 1
        assert await backend.exists("opendota-parsedmatch-1")

    async def test_delete(self, backend):
        await backend.set("k", 1, 60)
        assert await backend.delete("k") is True
        assert await backend.delete("k") is False


class TestRedisBackend:

    def _client(self):
        client = AsyncMock()
        client.ping.return_value = True
        return client

    async def test_set_uses_setex_with_json(self):
        client = self._client()
        backend = RedisCacheBackend("redis://test", client=client)
        await backend.startup()
        await backend.set("k", {"a": 1}, 30)
        client.setex.assert_awaited_once_with("k", 30, json.dumps({"a": 1}))

    async def test_non_positive_ttl_deletes_instead_of_setex(self):
        client = self._client()
        backend = RedisCacheBackend("redis://test", client=client)
        await backend.set("k", {"a": 1}, 0)
        client.setex.assert_not_awaited()
        client.delete.assert_awaited_once_with("k")

    async def test_get_decodes_json(self):
        client = self._client()
        client.get.return_value = json.dumps({"a": 1})
        backend = RedisCacheBackend("redis://test", client=client)
        assert await backend.get("k") == {"a": 1}

        client.get.return_value = None
        assert await backend.get("k") is None

    async def test_invalidate_pattern_scans_and_deletes(self):
        client = self._client()

        async def scan(match, count):
            for key in ("opendota-match-1", "opendota-match-2"):
                yield key

        client.scan_iter = MagicMock(side_effect=scan)
        client.delete.return_value = 2
        backend = RedisCacheBackend("redis://test", client=client)

        assert await backend.invalidate_pattern("opendota-match-*") == 2
        client.delete.assert_awaited_once_with("opendota-match-1", "opendota-match-2")

    async def test_startup_requires_url(self):
        backend = RedisCacheBackend(None)
        with pytest.raises(RuntimeError):
            await backend.startup()


def test_glob_prefix():
    assert glob_prefix("opendota-match-*") == "opendota-match-"
    assert glob_prefix("exact") == "exact"
    assert glob_prefix("a?b") == "a"


def test_namespaces_do_not_prefix_each_other():
    namespaces = [NS_MATCH, NS_MATCH_PARSED, NS_PLAYER, NS_PLAYER_STATS, NS_TEAM]
    for ns in namespaces:
        others = [other for other in namespaces if other != ns]
        assert not any(other.startswith(f"{ns}-") for other in others)


def test_create_backend_selects_by_setting(tmp_path):
    assert create_backend(make_settings(tmp_path)).name == "memory"
    assert create_backend(make_settings(tmp_path, cache_backend="file")).name == "file"
    assert create_backend(make_settings(tmp_path, cache_backend="redis")).name == "redis"
    settings = make_settings(tmp_path, cache_backend="sqlite")
    assert create_backend(settings, Database(settings)).name == "sqlite"
