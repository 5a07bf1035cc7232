"""Async database engine and session scope.

Provides PostgreSQL async connectivity using SQLAlchemy 2.0 asyncio
extension with asyncpg driver. The Database object is constructed by the
composition root and passed to repositories explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crust.config import Settings
from crust.core.errors import AuthoritativeStoreError

logger = logging.getLogger(__name__)


class Database:
    """Engine, session factory and transactional scope for the authoritative store."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations.

        Commits on success, rolls back on any error. Driver and SQLAlchemy
        errors surface as AuthoritativeStoreError; domain errors raised inside
        the scope propagate unchanged.

        Usage:
            async with db.session() as session:
                await session.execute(...)
        """
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except (SQLAlchemyError, OSError) as e:
            await session.rollback()
            logger.error(f"Database operation failed: {e}")
            raise AuthoritativeStoreError(f"database operation failed: {e}") from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_db(self) -> None:
        """Create tables if they do not exist."""
        from crust.persistence.tables import Base

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise AuthoritativeStoreError(f"schema creation failed: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except AuthoritativeStoreError:
            return False
