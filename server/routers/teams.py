"""Team routes."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import ORJSONResponse

from constants import JOB_FETCH_TEAM
from core.container import container
from models.api import ForceRequest
from services.cache_keys import team_key
from services.cache_or_queue import CacheOrQueue
from services.resources import ResourceService, validate_id

router = APIRouter(prefix="/teams", tags=["teams"])


@router.get("/{team_id}")
async def get_team(
    team_id: str,
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue())
):
    team_id = validate_id(team_id, "team id")
    result = await protocol.get_or_queue(team_key(team_id), JOB_FETCH_TEAM, {"team_id": team_id})
    return ORJSONResponse(result.body, status_code=result.status_code)


@router.post("/{team_id}")
async def get_or_create_team(
    team_id: str,
    force: bool = Query(False),
    request: Optional[ForceRequest] = Body(None),
    protocol: CacheOrQueue = Depends(lambda: container.cache_or_queue()),
    resources: ResourceService = Depends(lambda: container.resource_service())
):
    """Add a team: returns once its data is cached."""
    team_id = validate_id(team_id, "team id")
    request = request or ForceRequest()
    data = await protocol.get_or_fetch(
        team_key(team_id),
        lambda: resources.fetch_team(team_id),
        force=force or bool(request.force),
    )
    return ORJSONResponse(data)
