"""Match routes: cached reads, synchronous refresh and replay parsing."""

import time
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import ORJSONResponse

from constants import JOB_FETCH_MATCH, JOB_PARSE_MATCH
from core.config import Settings
from core.container import container
from core.logging import get_logger
from models.api import ForceRequest
from models.queue import JobPriority, JobStatus
from services.cache_keys import match_key, parsed_match_key
from services.cache_or_queue import CacheOrQueue
from services.resources import ResourceService, validate_id

logger = get_logger(__name__)
router = APIRouter(prefix="/matches", tags=["matches"])

# Extra time the parse job gets beyond the upstream parse deadline
PARSE_JOB_MARGIN_MS = 5000


@router.get("/{match_id}")
async def get_match(
    match_id: str,
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue())
):
    """Cached match, or 202 while a background fetch is queued."""
    match_id = validate_id(match_id, "match id")
    result = await protocol.get_or_queue(
        match_key(match_id), JOB_FETCH_MATCH, {"match_id": match_id}, signature=match_id
    )
    return ORJSONResponse(result.body, status_code=result.status_code)


@router.post("/{match_id}")
async def refresh_match(
    match_id: str,
    force: bool = Query(False),
    request: Optional[ForceRequest] = Body(None),
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue()),
    resources: ResourceService = Depends(lambda: container.resource_service())
):
    """Get or fetch a match synchronously; ``force`` bypasses the cache."""
    match_id = validate_id(match_id, "match id")
    request = request or ForceRequest()
    team_id = validate_id(request.team_id, "team id") if request.team_id else None

    data = await protocol.get_or_fetch(
        match_key(match_id),
        lambda: resources.fetch_match(match_id, team_id),
        force=force or bool(request.force),
    )
    return ORJSONResponse(data)


@router.post("/{match_id}/parse")
async def parse_match(
    match_id: str,
    timeout: Optional[int] = Query(None, ge=1000, le=600000),
    priority: JobPriority = Query(JobPriority.NORMAL),
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue()),
    settings: Settings = Depends(lambda: container.settings())
):
    """Queue a replay parse and poll until it finishes or ``timeout`` ms pass.

    200 on completion, 408 when the poll gives up (the job keeps running),
    and the job's own error status when it fails.
    """
    match_id = validate_id(match_id, "match id")
    timeout_ms = timeout or settings.parse_default_timeout_ms
    started = time.monotonic()

    job = await protocol.enqueue_and_wait(
        parsed_match_key(match_id),
        JOB_PARSE_MATCH,
        {"match_id": match_id, "timeout_ms": timeout_ms},
        timeout_ms=timeout_ms,
        priority=priority,
        job_timeout_ms=timeout_ms + PARSE_JOB_MARGIN_MS,
    )

    status = job["status"]
    body = {
        "job_id": job["job_id"],
        "status": status,
        "match_id": match_id,
        "parsed": status == JobStatus.COMPLETED.value,
        "processing_time_ms": int((time.monotonic() - started) * 1000),
        "backend": job["backend"],
    }
    if status == JobStatus.COMPLETED.value:
        body["data"] = job.get("result")
        status_code = 200
    elif status == JobStatus.TIMEOUT.value:
        body["error"] = f"Match parsing timed out after {timeout_ms} ms"
        status_code = 408
    else:
        body["error"] = job.get("error") or f"Parse job {status}"
        status_code = job.get("error_status") or 500

    logger.info("Match parse finished", match_id=match_id, job_id=job["job_id"],
                status=status, processing_time_ms=body["processing_time_ms"])
    return ORJSONResponse(body, status_code=status_code)
