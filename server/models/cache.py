"""SQLite-backed cache model for key-value storage with TTL.

Used by the ``sqlite`` cache backend as a persistent alternative to Redis for
single-process deployments.
"""

import time
from typing import Optional
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Cached upstream payload with its storage time and lifetime."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=10000000)  # JSON serialized
    stored_at: float = Field(default_factory=time.time)
    ttl_seconds: int = Field(default=3600)
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp
