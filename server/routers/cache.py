"""Cache administration routes."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import ORJSONResponse

from core.cache import CacheService
from core.container import container
from core.errors import ValidationError
from core.logging import get_logger
from models.api import InvalidateRequest
from services.cache_keys import normalize_key

logger = get_logger(__name__)
router = APIRouter(prefix="/cache", tags=["cache"])


@router.post("/invalidate")
async def invalidate_cache(
    request: InvalidateRequest,
    cache: CacheService = Depends(lambda: container.cache())
):
    """Delete one key or every key matching a glob pattern.

    Exactly one of ``pattern``/``key`` must be given; otherwise nothing is
    deleted and the request is rejected.
    """
    has_pattern = bool(request.pattern)
    has_key = bool(request.key)
    if not has_pattern and not has_key:
        raise ValidationError("Either pattern or key must be provided", error="Missing invalidation criteria")
    if has_pattern and has_key:
        raise ValidationError("Cannot specify both pattern and key", error="Invalid invalidation criteria")

    if has_pattern:
        invalidated = await cache.invalidate_pattern(request.pattern)
        data = {"invalidated": invalidated, "pattern": request.pattern}
        details = {"operation": "pattern-invalidation", "pattern": request.pattern}
    else:
        key = normalize_key(request.key)
        invalidated = 0
        if await cache.exists(key):
            invalidated = 1 if await cache.delete(key) else 0
        data = {"invalidated": invalidated}
        details = {"operation": "key-invalidation", "key": key}

    logger.info("Cache invalidation", invalidated=invalidated, **details)
    return ORJSONResponse({
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "backend": cache.backend_type(),
        "details": {**details, "backend_name": cache.backend_name()},
    })
