"""Queue backends: how a job actually runs.

- ``MemoryQueueBackend`` drains an ``asyncio.PriorityQueue`` with a bounded
  pool of worker tasks in this process.
- ``DurableQueueBackend`` publishes the job to a QStash-style HTTP queue
  which later calls ``POST /jobs/callback`` on this service.

Neither backend knows about retries or status; ``RequestQueue`` owns both.
"""

import asyncio
import hashlib
import hmac
import itertools
import math
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

from core.config import Settings
from core.errors import DurableQueueError, DurableQueueUnavailableError, QueueStoppedError
from core.logging import get_logger
from models.queue import Job, QueueBackendKind

logger = get_logger(__name__)

JobRunner = Callable[[Job], Awaitable[None]]

CALLBACK_PATH = "/jobs/callback"
# Base processing estimate reported at enqueue time
BASE_ESTIMATE_MS = 30000


class MemoryQueueBackend:
    """Bounded in-process worker pool ordered by job priority.

    Entries are ``(priority rank, submission sequence, job)``; the sequence is
    unique, so ``Job`` objects are never compared.
    """

    kind = QueueBackendKind.MEMORY

    def __init__(self, runner: JobRunner, workers: int = 4):
        self.runner = runner
        self.worker_count = workers
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._workers: List[asyncio.Task] = []
        self._counter = itertools.count()
        self._active = 0
        self._running = False
        # Set by stop(); a stopped pool is not restarted by submit()
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    @property
    def active(self) -> int:
        return self._active

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.PriorityQueue()
        self._running = True
        self._stopped = False
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"queue-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("In-process queue workers started", workers=self.worker_count)

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Drain queued work for up to ``grace_seconds``, then cancel workers."""
        if not self._running:
            return
        self._running = False
        self._stopped = True

        if self._queue is not None and grace_seconds > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Queue drain timed out", pending=self.pending, active=self._active)

        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        logger.info("In-process queue workers stopped")

    async def submit(self, job: Job) -> None:
        """Queue a job, starting the workers on first use."""
        if self._stopped:
            raise QueueStoppedError(f"Worker pool is stopped; job {job.id} not accepted")
        if not self._running:
            await self.start()
        job.sequence = next(self._counter)
        await self._queue.put((job.priority.rank, job.sequence, job))

    def estimate_ms(self, job: Job) -> int:
        return BASE_ESTIMATE_MS

    async def _worker_loop(self, index: int) -> None:
        while True:
            _, _, job = await self._queue.get()
            self._active += 1
            try:
                await self.runner(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # runner records failures on the job; anything escaping is a bug
                logger.error("Queue worker crashed on job", worker=index, job_id=job.id, error=str(e))
            finally:
                self._active -= 1
                self._queue.task_done()


class DurableQueueBackend:
    """QStash-compatible publisher.

    Publishes ``POST {qstash_url}/publish/{callback_url}`` with the job as the
    JSON body. Delivery, persistence and redelivery are the remote service's
    job; this process only sees the callback.
    """

    kind = QueueBackendKind.DURABLE

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.qstash_url.rstrip("/")
        self.token = settings.qstash_token
        self.callback_url = f"{settings.queue_callback_base_url}{CALLBACK_PATH}"
        self.signing_keys = [k for k in (settings.qstash_current_signing_key,
                                         settings.qstash_next_signing_key) if k]
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.qstash_timeout_ms / 1000)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def estimate_ms(self, job: Job) -> int:
        return BASE_ESTIMATE_MS + job.timeout_ms

    async def publish(self, job: Job, delay_ms: int = 0) -> str:
        """Hand a job to the durable queue. Returns the remote message id.

        Raises:
            DurableQueueUnavailableError: unreachable, timed out, or 401/403
            DurableQueueError: any other non-2xx answer
        """
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Delay": f"{math.ceil(delay_ms / 1000)}s",
            # Redelivery is counted by the request queue, not by the remote
            "Upstash-Retries": "0",
            "Upstash-Deduplication-Id": f"{job.id}:{job.retry_count}",
            "Upstash-Forward-X-Job-Priority": job.priority.value,
        }
        url = f"{self.base_url}/publish/{self.callback_url}"

        try:
            response = await self._get_client().post(url, json=job.publish_body(), headers=headers)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise DurableQueueUnavailableError(f"Durable queue unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise DurableQueueError(f"Durable queue request failed: {e}") from e

        if response.status_code in (401, 403):
            raise DurableQueueUnavailableError(
                f"Durable queue rejected credentials: {response.status_code}"
            )
        if response.status_code >= 400:
            raise DurableQueueError(
                f"Durable queue request failed: {response.status_code} {response.text}"
            )

        try:
            message_id = response.json().get("messageId", "no-message-id")
        except ValueError:
            message_id = "no-message-id"
        logger.info("Job published to durable queue", job_id=job.id, message_id=message_id,
                    delay_ms=delay_ms)
        return message_id

    async def is_healthy(self) -> bool:
        try:
            response = await self._get_client().get(
                f"{self.base_url}/topics",
                headers={"Authorization": f"Bearer {self.token}"},
            )
            return response.status_code < 400
        except httpx.HTTPError:
            return False

    def verify_signature(self, body: bytes, signature: Optional[str],
                         timestamp: Optional[str]) -> bool:
        """HMAC-SHA256 over ``{timestamp}.{body}`` with either signing key.

        With no signing keys configured every callback is accepted.
        """
        if not self.signing_keys:
            return True
        if not signature or not timestamp:
            return False
        message = timestamp.encode() + b"." + body
        for key in self.signing_keys:
            expected = hmac.new(key.encode(), message, hashlib.sha256).hexdigest()
            if hmac.compare_digest(expected, signature):
                return True
        return False


def sign_callback(key: str, body: bytes, timestamp: str) -> Tuple[str, str]:
    """Produce ``(signature, timestamp)`` headers accepted by ``verify_signature``."""
    message = timestamp.encode() + b"." + body
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest(), timestamp
