"""Request bodies for the HTTP API."""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class ForceRequest(BaseModel):
    """Body of the synchronous "get or create" endpoints."""
    model_config = ConfigDict(extra="ignore")

    force: Optional[bool] = False
    team_id: Optional[str] = None


class InvalidateRequest(BaseModel):
    """Exactly one of ``pattern`` or ``key``."""
    model_config = ConfigDict(extra="ignore")

    pattern: Optional[str] = None
    key: Optional[str] = None
