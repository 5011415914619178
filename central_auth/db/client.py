"""
Database engine and session management.

The datastore is optional: with no DATABASE_URL the service still issues
tokens, using default claims. `Database.configured` tells callers which mode
they are in.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


class DatastoreError(Exception):
    """A datastore query or transaction failed."""
    pass


def to_async_url(url: str) -> str:
    """Use the asyncpg driver for plain postgres URLs."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


class Database:
    """Async engine plus session factory for one PostgreSQL database."""

    def __init__(self, url: Optional[str], pool_size: int = 10, max_overflow: int = 5):
        self.url = url
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None

        if url:
            self.engine = create_async_engine(
                to_async_url(url),
                echo=False,
                pool_pre_ping=True,
                pool_size=pool_size,
                max_overflow=max_overflow,
            )
            self.session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

    @property
    def configured(self) -> bool:
        return self.session_factory is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session that commits on success and rolls back on error.

        Raises:
            DatastoreError: If the datastore is not configured or a statement fails
        """
        if self.session_factory is None:
            raise DatastoreError("DATABASE_URL is not configured")

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                raise DatastoreError(str(e)) from e
            except Exception:
                await session.rollback()
                raise

    async def fetch_all(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Mapping[str, Any]]:
        """Run one statement and return its rows as mappings."""
        async with self.transaction() as session:
            result = await session.execute(text(sql), params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    async def fetch_one(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Mapping[str, Any]]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Closed database connection pool")
