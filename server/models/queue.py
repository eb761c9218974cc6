"""Request queue state models.

All models are JSON-serializable so job status can be returned directly from
HTTP handlers and shipped to the durable queue as a publish body.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class JobStatus(str, Enum):
    """Job lifecycle.

    State transitions:
        QUEUED -> PROCESSING -> COMPLETED
                             -> FAILED
                             -> QUEUED (retry after backoff)
        QUEUED/PROCESSING -> CANCELLED (bookkeeping only)

    TIMEOUT is reported by pollers that gave up waiting. A job never holds it.
    """
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort key for the in-process work queue; lower runs first."""
        return {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}[self]


class QueueBackendKind(str, Enum):
    DURABLE = "durable"
    MEMORY = "memory"


@dataclass
class RetryPolicy:
    """Exponential backoff for transient job failures.

    Delay before retry k (1-indexed): min(base_delay_ms * 2^(k-1), max_delay_ms)
    """
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000

    def calculate_delay_ms(self, retry_count: int) -> int:
        delay = self.base_delay_ms * (2 ** max(retry_count - 1, 0))
        return min(delay, self.max_delay_ms)

    def should_retry(self, retry_count: int, retryable: bool) -> bool:
        """``retry_count`` is the already-incremented attempt counter."""
        return retryable and retry_count <= self.max_retries


@dataclass
class JobRequest:
    """What a submitter hands to ``RequestQueue.enqueue``."""
    endpoint: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None


@dataclass
class Job:
    """A unit of background work tracked by the request queue."""
    id: str
    endpoint: str
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    timeout_ms: int = 30000
    retry_count: int = 0
    max_retries: int = 3
    status: JobStatus = JobStatus.QUEUED
    backend: QueueBackendKind = QueueBackendKind.MEMORY
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    result: Any = None
    error: Optional[str] = None
    error_status: Optional[int] = None
    # Monotonic submission counter; FIFO tie-breaker within a priority
    sequence: int = 0

    def touch(self) -> None:
        self.updated_at = now_ms()

    @property
    def processing_time_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def status_dict(self) -> Dict[str, Any]:
        """Point-in-time status view returned to pollers."""
        data: Dict[str, Any] = {
            "job_id": self.id,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "priority": self.priority.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "backend": self.backend.value,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
            data["error_status"] = self.error_status
        if self.processing_time_ms is not None:
            data["processing_time_ms"] = self.processing_time_ms
        return data

    def publish_body(self) -> Dict[str, Any]:
        """Body sent to the durable queue and echoed back on callback."""
        return {
            "job_id": self.id,
            "endpoint": self.endpoint,
            "payload": self.payload,
            "priority": self.priority.value,
            "timeout_ms": self.timeout_ms,
            "max_retries": self.max_retries,
        }


@dataclass
class EnqueueResult:
    job_id: str
    status: JobStatus
    backend: QueueBackendKind
    estimated_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "backend": self.backend.value,
            "estimated_time_ms": self.estimated_time_ms,
        }
