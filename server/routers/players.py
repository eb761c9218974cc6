"""Player routes."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import ORJSONResponse

from constants import JOB_FETCH_PLAYER, JOB_FETCH_PLAYER_STATS
from core.container import container
from models.api import ForceRequest
from services.cache_keys import player_key, player_stats_key
from services.cache_or_queue import CacheOrQueue
from services.resources import ResourceService, validate_id

router = APIRouter(prefix="/players", tags=["players"])


@router.get("/{account_id}")
async def get_player(
    account_id: str,
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue())
):
    account_id = validate_id(account_id, "player id")
    result = await protocol.get_or_queue(
        player_key(account_id), JOB_FETCH_PLAYER, {"account_id": account_id}
    )
    return ORJSONResponse(result.body, status_code=result.status_code)


@router.post("/{account_id}/data")
async def get_or_fetch_player(
    account_id: str,
    force: bool = Query(False),
    request: Optional[ForceRequest] = Body(None),
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue()),
    resources: ResourceService = Depends(lambda: container.resource_service())
):
    """Player profile, fetched synchronously on a miss or when forced."""
    account_id = validate_id(account_id, "player id")
    request = request or ForceRequest()
    data = await protocol.get_or_fetch(
        player_key(account_id),
        lambda: resources.fetch_player(account_id),
        force=force or bool(request.force),
    )
    return ORJSONResponse(data)


@router.get("/{account_id}/stats")
async def get_player_stats(
    account_id: str,
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue())
):
    account_id = validate_id(account_id, "player id")
    result = await protocol.get_or_queue(
        player_stats_key(account_id), JOB_FETCH_PLAYER_STATS, {"account_id": account_id}
    )
    return ORJSONResponse(result.body, status_code=result.status_code)
