"""Job status, cancellation and the durable queue callback."""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse

from core.container import container
from core.errors import ValidationError
from core.logging import get_logger
from services.queue import RequestQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])

SIGNATURE_HEADER = "upstash-signature"
TIMESTAMP_HEADER = "upstash-timestamp"


@router.get("/stats")
async def get_queue_stats(queue: RequestQueue = Depends(lambda: container.request_queue())):
    return ORJSONResponse(queue.get_stats())


@router.post("/callback")
async def job_callback(
    request: Request,
    queue: RequestQueue = Depends(lambda: container.request_queue())
):
    """Durable queue delivery: run the job in this request.

    Always answers 200 once the attempt is recorded so the remote queue does
    not redeliver; retries are scheduled by the request queue itself.
    """
    raw = await request.body()
    if queue.durable is not None and not queue.durable.verify_signature(
        raw, request.headers.get(SIGNATURE_HEADER), request.headers.get(TIMESTAMP_HEADER)
    ):
        logger.warning("Rejected job callback with bad signature")
        return ORJSONResponse(
            {"error": "Invalid signature", "status": 401, "details": "Callback signature verification failed"},
            status_code=401,
        )

    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("Callback body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Callback body must be a JSON object")

    status = await queue.handle_callback(body)
    return ORJSONResponse(status)


@router.get("/{job_id}")
async def get_job_status(job_id: str, queue: RequestQueue = Depends(lambda: container.request_queue())):
    return ORJSONResponse(queue.get_job_status(job_id))


@router.delete("/{job_id}")
async def cancel_job(job_id: str, queue: RequestQueue = Depends(lambda: container.request_queue())):
    cancelled = queue.cancel_job(job_id)
    return ORJSONResponse({"job_id": job_id, "cancelled": cancelled})
