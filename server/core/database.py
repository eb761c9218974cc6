"""Async database service with SQLModel and SQLAlchemy 2.0.

Only the cache table lives here. Methods raise on I/O failure and let the
cache layer decide whether to fail open.
"""

import time
from typing import List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import delete as sql_delete
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from models.cache import CacheEntry
from core.logging import get_logger

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                future=True
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Cache Entries
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[CacheEntry]:
        """Get a live cache entry. Expired rows are deleted and reported absent."""
        async with self.get_session() as session:
            entry = await session.get(CacheEntry, key)
            if not entry:
                return None

            if entry.expires_at is not None and entry.expires_at <= time.time():
                await session.delete(entry)
                await session.commit()
                return None

            return entry

    async def set_cache_entry(self, key: str, value: str, ttl: int) -> None:
        """Insert or overwrite a cache entry, resetting its storage time."""
        now = time.time()
        async with self.get_session() as session:
            existing = await session.get(CacheEntry, key)
            if existing:
                existing.value = value
                existing.stored_at = now
                existing.ttl_seconds = ttl
                existing.expires_at = now + ttl
            else:
                session.add(CacheEntry(
                    key=key,
                    value=value,
                    stored_at=now,
                    ttl_seconds=ttl,
                    expires_at=now + ttl,
                ))
            await session.commit()

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key. Returns whether a row was removed."""
        async with self.get_session() as session:
            entry = await session.get(CacheEntry, key)
            if not entry:
                return False
            await session.delete(entry)
            await session.commit()
            return True

    async def list_cache_keys(self, like_pattern: str = "%") -> List[str]:
        """List keys matching a SQL LIKE pattern (backslash escaped)."""
        async with self.get_session() as session:
            stmt = select(CacheEntry.key).where(CacheEntry.key.like(like_pattern, escape="\\"))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_cache_keys(self, keys: List[str]) -> int:
        if not keys:
            return 0
        async with self.get_session() as session:
            result = await session.execute(sql_delete(CacheEntry).where(CacheEntry.key.in_(keys)))
            await session.commit()
            return result.rowcount or 0

    async def count_cache_entries(self) -> int:
        keys = await self.list_cache_keys()
        return len(keys)

    async def purge_expired_entries(self) -> int:
        """Delete rows whose expiry has passed. Returns the count removed."""
        async with self.get_session() as session:
            result = await session.execute(
                sql_delete(CacheEntry).where(CacheEntry.expires_at <= time.time())
            )
            await session.commit()
            return result.rowcount or 0

    async def ping(self) -> bool:
        from sqlalchemy import text
        async with self.get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
