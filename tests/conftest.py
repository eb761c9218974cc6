"""Shared fixtures: isolated settings, a fake upstream and an app client."""

import asyncio
import json
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from core.config import Settings

UPSTREAM_BASE = "https://opendota.test/api"


class FakeClock:
    """Manually advanced wall clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeUpstream:
    """httpx.MockTransport handler serving canned OpenDota responses.

    Each route holds a list of responses; the last one repeats.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Tuple[int, bytes]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.latency = 0.0

    def add(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        content = json.dumps(body).encode()
        self.routes.setdefault((method, "/api" + path), []).append((status, content))

    def calls_to(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == "/api" + path)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        if self.latency:
            await asyncio.sleep(self.latency)
        responses = self.routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"error": "Not Found"})
        status, content = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status, content=content, headers={"content-type": "application/json"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        cache_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/cache.db",
        cache_file_dir=str(tmp_path / "cache"),
        mock_data_dir=str(tmp_path / "mock"),
        queue_workers=2,
        queue_base_delay_ms=10,
        queue_max_delay_ms=1000,
        queue_poll_interval_ms=20,
        queue_shutdown_grace_seconds=0.5,
        opendota_api_base_url=UPSTREAM_BASE,
        opendota_parse_poll_interval_ms=10,
        rate_limit_requests=10000,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def api(settings, upstream):
    """App client wired to in-memory cache/queue and the fake upstream."""
    from dependency_injector import providers

    from core.container import container
    from main import app, shutdown_services, startup_services
    from services.upstream import OpenDotaClient

    client = OpenDotaClient(settings, transport=upstream.transport())
    container.settings.override(providers.Object(settings))
    container.opendota_client.override(providers.Object(client))
    container.reset_singletons()

    await startup_services()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield SimpleNamespace(
            http=http,
            upstream=upstream,
            cache=container.cache(),
            queue=container.request_queue(),
            settings=settings,
        )

    await shutdown_services()
    container.opendota_client.reset_override()
    container.settings.reset_override()
    container.reset_singletons()
