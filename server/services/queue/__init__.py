"""Background job orchestration.

Usage:
    from services.queue import RequestQueue

    queue = RequestQueue(settings)
    queue.register_handler("fetch-match", fetch_match)
    await queue.start()
    result = await queue.enqueue("match-1-1700000000000", JobRequest("fetch-match", {"match_id": "1"}))
"""

from .backends import DurableQueueBackend, MemoryQueueBackend, sign_callback
from .request_queue import JobHandler, RequestQueue

__all__ = [
    "DurableQueueBackend",
    "JobHandler",
    "MemoryQueueBackend",
    "RequestQueue",
    "sign_callback",
]
