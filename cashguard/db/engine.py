"""
Database engine, session factory and declarative base.

Async SQLAlchemy 2.0: asyncpg against PostgreSQL in production, aiosqlite
against a local file in development and tests. The alert store opens one
short transaction per compare-and-set, so on SQLite concurrent writers
queue on the database lock for up to DB_LOCK_TIMEOUT_SECONDS.
"""

from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from cashguard.config import settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def engine_options(url: str) -> dict[str, Any]:
    """create_async_engine keyword arguments for a database URL."""
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": settings.db_lock_timeout_seconds}}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = settings.async_database_url
        _engine = create_async_engine(url, echo=settings.debug, **engine_options(url))
        logger.info("database_engine_created", dialect=_engine.dialect.name)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory. Sessions never expire loaded rows on commit."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db() -> None:
    """
    Create missing tables in development.

    In every other environment the schema is owned by the deployment and
    this only opens the engine.
    """
    engine = get_engine()

    import cashguard.db.models  # noqa: F401  (populate Base.metadata)

    if settings.environment.lower() != "development":
        logger.info("skipping_auto_create", environment=settings.environment)
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_created", dialect=engine.dialect.name, tables=len(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
