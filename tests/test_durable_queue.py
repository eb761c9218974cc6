"""Durable queue publishing, callbacks and fallback to the in-process backend."""

import json

import httpx
import pytest

from core.errors import DurableQueueError, DurableQueueUnavailableError
from models.queue import Job, JobPriority, JobRequest, JobStatus
from services.queue import DurableQueueBackend, RequestQueue, sign_callback
from tests.conftest import make_settings, wait_until


@pytest.fixture
def durable_settings(tmp_path):
    return make_settings(
        tmp_path,
        queue_use_durable=True,
        qstash_url="https://qstash.test/v2",
        qstash_token="secret-token",
        queue_callback_base_url="https://app.test/",
        qstash_current_signing_key="current-key",
        qstash_next_signing_key="next-key",
    )


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def backend_with(settings, recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return DurableQueueBackend(settings, client=client)


async def test_publish_sends_job_to_callback_url(durable_settings):
    recorder = Recorder(httpx.Response(200, json={"messageId": "msg-1"}))
    backend = backend_with(durable_settings, recorder)
    job = Job(id="match-1-1", endpoint="fetch-match", payload={"match_id": "1"},
              priority=JobPriority.HIGH)

    message_id = await backend.publish(job)

    assert message_id == "msg-1"
    request = recorder.requests[0]
    assert request.url.host == "qstash.test"
    assert request.url.path == "/v2/publish/https://app.test/jobs/callback"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert request.headers["Upstash-Delay"] == "0s"
    assert request.headers["Upstash-Forward-X-Job-Priority"] == "high"
    assert json.loads(request.content)["job_id"] == "match-1-1"


@pytest.mark.parametrize("response, error", [
    (httpx.ConnectError("refused"), DurableQueueUnavailableError),
    (httpx.ReadTimeout("slow"), DurableQueueUnavailableError),
    (httpx.Response(401, text="bad token"), DurableQueueUnavailableError),
    (httpx.Response(503, text="busy"), DurableQueueError),
])
async def test_publish_error_mapping(durable_settings, response, error):
    backend = backend_with(durable_settings, Recorder(response))
    with pytest.raises(error):
        await backend.publish(Job(id="j", endpoint="e", payload={}))


def test_signature_verification(durable_settings):
    backend = DurableQueueBackend(durable_settings)
    body = b'{"job_id": "j"}'
    signature, timestamp = sign_callback("next-key", body, "1700000000")

    assert backend.verify_signature(body, signature, timestamp)
    assert not backend.verify_signature(body + b" ", signature, timestamp)
    assert not backend.verify_signature(body, None, timestamp)


def test_signature_skipped_without_keys(tmp_path):
    settings = make_settings(tmp_path, qstash_token="t", queue_callback_base_url="https://app.test")
    backend = DurableQueueBackend(settings)
    assert backend.verify_signature(b"{}", None, None)


async def test_enqueue_uses_durable_backend_and_callback_runs_job(durable_settings):
    recorder = Recorder(httpx.Response(200, json={"messageId": "msg-1"}))
    queue = RequestQueue(durable_settings, durable=backend_with(durable_settings, recorder))
    calls = []

    async def handler(payload):
        calls.append(payload)
        return "fetched"

    queue.register_handler("fetch", handler)
    await queue.start()
    try:
        result = await queue.enqueue("fetch-1", JobRequest("fetch", {"id": "1"}))
        assert result.backend.value == "durable"
        assert result.estimated_time_ms == 30000 + durable_settings.queue_default_timeout_ms
        assert queue.get_job_status("fetch-1")["status"] == "queued"
        assert calls == []

        body = json.loads(recorder.requests[0].content)
        status = await queue.handle_callback(body)
        assert status["status"] == "completed"
        assert status["result"] == "fetched"

        # redelivery of a finished job does not run it again
        await queue.handle_callback(body)
        assert len(calls) == 1
    finally:
        await queue.stop()


async def test_callback_for_unknown_job_registers_it(durable_settings):
    queue = RequestQueue(durable_settings, durable=backend_with(
        durable_settings, Recorder(httpx.Response(200, json={}))
    ))

    async def handler(payload):
        return payload["id"]

    queue.register_handler("fetch", handler)
    status = await queue.handle_callback({"job_id": "other-1", "endpoint": "fetch", "payload": {"id": 9}})
    assert status["status"] == "completed"
    assert status["backend"] == "durable"
    assert queue.get_job_status("other-1")["result"] == 9


async def test_connectivity_failure_switches_to_memory_permanently(durable_settings):
    recorder = Recorder(httpx.ConnectError("refused"))
    queue = RequestQueue(durable_settings, durable=backend_with(durable_settings, recorder))
    ran = []

    async def handler(payload):
        ran.append(payload["n"])

    queue.register_handler("work", handler)
    await queue.start()
    try:
        assert queue.backend_type() == "durable"
        result = await queue.enqueue("work-1", JobRequest("work", {"n": 1}))
        assert result.backend.value == "memory"
        assert queue.backend_type() == "memory"

        await queue.enqueue("work-2", JobRequest("work", {"n": 2}))
        await wait_until(lambda: sorted(ran) == [1, 2])
        # the durable backend was tried exactly once
        assert len(recorder.requests) == 1
        assert queue.get_stats()["backend"] == "memory"
    finally:
        await queue.stop()


async def test_server_error_from_durable_backend_is_retried(durable_settings, recording_sleep):
    recorder = Recorder(
        httpx.Response(500, text="oops"),
        httpx.Response(200, json={"messageId": "msg-2"}),
    )
    queue = RequestQueue(durable_settings, durable=backend_with(durable_settings, recorder),
                         sleep=recording_sleep)

    async def handler(payload):
        return None

    queue.register_handler("work", handler)
    await queue.start()
    try:
        result = await queue.enqueue("work-1", JobRequest("work"))
        assert result.status == JobStatus.QUEUED
        await wait_until(lambda: queue.get_job_status("work-1")["backend"] == "durable")
        assert len(recorder.requests) == 2

        status = queue.get_job_status("work-1")
        assert status["retry_count"] == 1
        assert status["backend"] == "durable"
        assert queue.backend_type() == "durable"
        assert recording_sleep.delays == [0.01]
    finally:
        await queue.stop()
