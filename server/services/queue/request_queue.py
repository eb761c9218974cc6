"""Request queue: job registry, retries and backend fallback.

Sits on top of the two queue backends. Jobs are registered here on enqueue
and stay until a terminal status is reached plus the retention window, after
which the sweeper drops them.

Retry policy (transient failures only):
    retry_count += 1
    retry_count <= max_retries -> re-dispatch after min(base * 2^(retry_count-1), max)
    otherwise                  -> FAILED, no further attempts

Backend fallback: a connectivity or auth failure publishing to the durable
queue switches this instance to the in-process backend for the rest of its
life, and the job that hit the failure is re-run there immediately.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from core.config import Settings
from core.errors import (
    DuplicateJobError,
    DurableQueueUnavailableError,
    FetchTimeoutError,
    JobNotFoundError,
    QueueFullError,
    QueueStoppedError,
    ValidationError,
    as_service_error,
)
from core.logging import get_logger, log_job_event
from models.queue import (
    EnqueueResult,
    Job,
    JobPriority,
    JobRequest,
    JobStatus,
    QueueBackendKind,
    RetryPolicy,
    now_ms,
)
from services.queue.backends import DurableQueueBackend, MemoryQueueBackend

logger = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


class RequestQueue:
    """Orchestrates background jobs over a durable or in-process backend."""

    def __init__(self, settings: Settings,
                 durable: Optional[DurableQueueBackend] = None,
                 sleep: Sleeper = asyncio.sleep):
        self.settings = settings
        self.policy = RetryPolicy(
            max_retries=settings.queue_max_retries,
            base_delay_ms=settings.queue_base_delay_ms,
            max_delay_ms=settings.queue_max_delay_ms,
        )
        self.handlers: Dict[str, JobHandler] = {}
        self.jobs: Dict[str, Job] = {}

        if durable is None and settings.durable_queue_configured:
            durable = DurableQueueBackend(settings)
        self.durable = durable
        self.memory = MemoryQueueBackend(self._execute, workers=settings.queue_workers)

        # Flipped off permanently on durable connectivity/auth failure
        self._use_durable = durable is not None

        self._sleep = sleep
        self._retry_tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._running = False
        # Set by stop(); no new jobs or retries afterwards
        self._stopped = False
        self._started_at = time.monotonic()
        self._processing_total_ms = 0
        self._processing_count = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopped = False
        self._started_at = time.monotonic()
        await self.memory.start()
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="queue-retention-sweeper")
        logger.info("Request queue started", backend=self.backend_type(),
                    workers=self.settings.queue_workers)

    async def stop(self) -> None:
        """Cancel pending retries, drain the worker pool, close the publisher.

        Jobs that fail while the pool drains are marked failed instead of
        being rescheduled.
        """
        self._running = False
        self._stopped = True
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        await self._cancel_retry_tasks()
        await self.memory.stop(self.settings.queue_shutdown_grace_seconds)
        await self._cancel_retry_tasks()
        if self.durable is not None:
            await self.durable.close()
        logger.info("Request queue stopped")

    async def _cancel_retry_tasks(self) -> None:
        tasks = list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._retry_tasks.clear()

    # =========================================================================
    # Public API
    # =========================================================================

    def register_handler(self, endpoint: str, handler: JobHandler) -> None:
        """Bind a job endpoint to the coroutine that performs it."""
        self.handlers[endpoint] = handler
        logger.debug("Queue handler registered", endpoint=endpoint)

    def backend_type(self) -> str:
        return (QueueBackendKind.DURABLE if self._use_durable else QueueBackendKind.MEMORY).value

    async def enqueue(self, job_id: str, request: JobRequest) -> EnqueueResult:
        """Register a job and hand it to the active backend. Never waits for it.

        Raises:
            ValidationError: empty id, unknown endpoint or non-dict payload
            DuplicateJobError: a live job already uses ``job_id``
            QueueFullError: QUEUE_MAX_JOBS live jobs already tracked
            QueueStoppedError: the queue has been stopped
        """
        if self._stopped:
            raise QueueStoppedError("Request queue is stopped")
        if not job_id:
            raise ValidationError("Job id is required")
        if request.endpoint not in self.handlers:
            raise ValidationError(f"Unknown job endpoint: {request.endpoint}")
        if not isinstance(request.payload, dict):
            raise ValidationError("Job payload must be an object")

        existing = self.jobs.get(job_id)
        if existing is not None and not existing.status.is_terminal:
            raise DuplicateJobError(f"Job {job_id} already exists")
        if self._live_count() >= self.settings.queue_max_jobs:
            raise QueueFullError(f"Queue is full ({self.settings.queue_max_jobs} live jobs)")

        job = Job(
            id=job_id,
            endpoint=request.endpoint,
            payload=request.payload,
            priority=JobPriority(request.priority),
            timeout_ms=request.timeout_ms or self.settings.queue_default_timeout_ms,
            max_retries=self.policy.max_retries if request.max_retries is None else request.max_retries,
        )
        self.jobs[job_id] = job
        log_job_event(logger, "enqueued", job.id, job.status.value,
                      endpoint=job.endpoint, priority=job.priority.value)

        try:
            await self._dispatch(job)
        except Exception as e:
            await self._handle_failure(job, e)

        estimate = (self.durable if job.backend == QueueBackendKind.DURABLE else self.memory).estimate_ms(job)
        return EnqueueResult(job_id=job.id, status=JobStatus.QUEUED,
                             backend=job.backend, estimated_time_ms=estimate)

    def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Point-in-time view of a job. Safe to call repeatedly."""
        return self.get_job(job_id).status_dict()

    def cancel_job(self, job_id: str) -> bool:
        """Mark a live job cancelled. A running handler is not interrupted."""
        job = self.jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.status = JobStatus.CANCELLED
        job.completed_at = now_ms()
        job.touch()
        log_job_event(logger, "cancelled", job.id, job.status.value)
        return True

    def is_live(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        return job is not None and not job.status.is_terminal

    async def wait_for_job(self, job_id: str, timeout_ms: int,
                           interval_ms: Optional[int] = None) -> Dict[str, Any]:
        """Poll until the job is terminal or ``timeout_ms`` elapses.

        On timeout the returned status is ``timeout``; the job keeps running.
        """
        interval = (interval_ms or self.settings.queue_poll_interval_ms) / 1000
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            status = self.get_job_status(job_id)
            if JobStatus(status["status"]).is_terminal:
                return status
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return {**status, "status": JobStatus.TIMEOUT.value}
            await asyncio.sleep(min(interval, remaining))

    async def handle_callback(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Run a durably delivered job inside the callback request.

        Jobs unknown to this process (restart, other instance) are rebuilt
        from the publish body. Redeliveries of terminal jobs are no-ops.
        """
        job_id = body.get("job_id")
        endpoint = body.get("endpoint")
        if not job_id or not endpoint:
            raise ValidationError("Callback body requires job_id and endpoint")
        if endpoint not in self.handlers:
            raise ValidationError(f"Unknown job endpoint: {endpoint}")

        job = self.jobs.get(job_id)
        if job is None:
            job = Job(
                id=job_id,
                endpoint=endpoint,
                payload=body.get("payload") or {},
                priority=JobPriority(body.get("priority", JobPriority.NORMAL.value)),
                timeout_ms=int(body.get("timeout_ms") or self.settings.queue_default_timeout_ms),
                max_retries=int(body.get("max_retries", self.policy.max_retries)),
                backend=QueueBackendKind.DURABLE,
            )
            self.jobs[job_id] = job
            logger.info("Callback for unknown job, registered from body", job_id=job_id)

        if job.status.is_terminal:
            log_job_event(logger, "redelivery_ignored", job.id, job.status.value)
            return job.status_dict()

        await self._execute(job)
        return job.status_dict()

    def get_stats(self) -> Dict[str, Any]:
        counts = {status: 0 for status in JobStatus if status != JobStatus.TIMEOUT}
        for job in self.jobs.values():
            counts[job.status] += 1

        average = (self._processing_total_ms / self._processing_count) if self._processing_count else 0
        return {
            "total_jobs": len(self.jobs),
            "queued": counts[JobStatus.QUEUED],
            "processing": counts[JobStatus.PROCESSING],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "cancelled": counts[JobStatus.CANCELLED],
            "average_processing_time_ms": round(average, 2),
            "backend": self.backend_type(),
            "uptime_ms": int((time.monotonic() - self._started_at) * 1000),
            "pending_retries": len(self._retry_tasks),
            "active_workers": self.memory.active,
        }

    async def is_healthy(self) -> bool:
        if not self._running:
            return False
        if self._use_durable and self.durable is not None:
            return await self.durable.is_healthy()
        return self.memory.running

    def sweep_expired(self, now: Optional[int] = None) -> int:
        """Drop terminal jobs older than the retention window."""
        now = now if now is not None else now_ms()
        cutoff = now - self.settings.queue_job_retention_seconds * 1000
        expired = [
            job_id for job_id, job in self.jobs.items()
            if job.status.is_terminal and job.updated_at <= cutoff
        ]
        for job_id in expired:
            del self.jobs[job_id]
        if expired:
            logger.info("Swept expired jobs", count=len(expired))
        return len(expired)

    # =========================================================================
    # Internals
    # =========================================================================

    def _live_count(self) -> int:
        return sum(1 for job in self.jobs.values() if not job.status.is_terminal)

    async def _dispatch(self, job: Job) -> None:
        """Send a job to the active backend, falling back to memory if needed."""
        if self._use_durable and self.durable is not None:
            try:
                await self.durable.publish(job)
                job.backend = QueueBackendKind.DURABLE
                job.touch()
                return
            except DurableQueueUnavailableError as e:
                self._use_durable = False
                logger.warning("Durable queue unavailable, switching to in-process backend",
                               job_id=job.id, error=str(e))

        job.backend = QueueBackendKind.MEMORY
        job.touch()
        await self.memory.submit(job)

    async def _execute(self, job: Job) -> None:
        """Run one attempt of a job. Records the outcome on the job."""
        if job.status == JobStatus.CANCELLED:
            log_job_event(logger, "skipped_cancelled", job.id, job.status.value)
            return

        handler = self.handlers.get(job.endpoint)
        if handler is None:
            await self._handle_failure(job, ValidationError(f"Unknown job endpoint: {job.endpoint}"))
            return

        job.status = JobStatus.PROCESSING
        job.started_at = now_ms()
        job.touch()
        log_job_event(logger, "started", job.id, job.status.value, attempt=job.retry_count + 1)

        try:
            with structlog.contextvars.bound_contextvars(job_id=job.id, endpoint=job.endpoint):
                result = await asyncio.wait_for(handler(job.payload), timeout=job.timeout_ms / 1000)
        except asyncio.TimeoutError:
            await self._handle_failure(job, FetchTimeoutError(f"Job {job.id} exceeded {job.timeout_ms} ms"))
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
            return

        job.completed_at = now_ms()
        job.touch()
        self._record_processing_time(job)
        if job.status == JobStatus.CANCELLED:
            # Cancellation is bookkeeping; the work still happened
            log_job_event(logger, "finished_after_cancel", job.id, job.status.value)
            return

        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.error_status = None
        log_job_event(logger, "completed", job.id, job.status.value,
                      processing_time_ms=job.processing_time_ms)

    async def _handle_failure(self, job: Job, exc: BaseException) -> None:
        error = as_service_error(exc)
        job.error = error.details
        job.error_status = error.status_code
        job.touch()

        if job.status == JobStatus.CANCELLED:
            return

        if error.retryable:
            job.retry_count += 1
        policy = RetryPolicy(job.max_retries, self.policy.base_delay_ms, self.policy.max_delay_ms)

        if not self._stopped and policy.should_retry(job.retry_count, error.retryable):
            delay_ms = policy.calculate_delay_ms(job.retry_count)
            job.status = JobStatus.QUEUED
            log_job_event(logger, "retry_scheduled", job.id, job.status.value,
                          retry_count=job.retry_count, delay_ms=delay_ms, error=job.error)
            self._schedule_retry(job, delay_ms)
            return

        job.status = JobStatus.FAILED
        job.completed_at = now_ms()
        if job.started_at is not None:
            self._record_processing_time(job)
        log_job_event(logger, "failed", job.id, job.status.value,
                      retry_count=job.retry_count, error=job.error,
                      retryable=error.retryable)

    def _schedule_retry(self, job: Job, delay_ms: int) -> None:
        if self._stopped:
            return

        async def _retry_later():
            await self._sleep(delay_ms / 1000)
            if self._stopped or job.status != JobStatus.QUEUED:
                return
            try:
                await self._dispatch(job)
            except Exception as e:
                await self._handle_failure(job, e)

        task = asyncio.create_task(_retry_later(), name=f"retry-{job.id}-{job.retry_count}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    def _record_processing_time(self, job: Job) -> None:
        if job.processing_time_ms is not None:
            self._processing_total_ms += job.processing_time_ms
            self._processing_count += 1

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.queue_sweep_interval_seconds)
                self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Job retention sweep failed", error=str(e))
