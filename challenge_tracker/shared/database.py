"""Async database engine and session management.

The engine and session factory are module-level singletons created by
:func:`init_database` and torn down by :func:`close_database`. Operations in
:mod:`challenge_tracker.web.crud` only ever flush; the session owner decides
when to commit, which :func:`get_db_session` does on a clean exit.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from challenge_tracker.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all challenge tracker models."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(
    settings: Optional[Settings] = None,
    engine: Optional[AsyncEngine] = None,
) -> AsyncEngine:
    """Create the engine and session factory.

    Args:
        settings: Settings to read the database URL from
        engine: Pre-built engine to use instead of creating one

    Returns:
        AsyncEngine: The active engine
    """
    global _engine, _session_factory

    if _engine is not None:
        return _engine

    settings = settings or get_settings()
    if engine is None:
        engine_kwargs = {"echo": settings.database_echo}
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs["pool_size"] = settings.database_pool_size
            engine_kwargs["pool_pre_ping"] = True
        engine = create_async_engine(settings.database_url, **engine_kwargs)

    _engine = engine
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info(f"Database initialized ({_engine.url.drivername})")
    return _engine


async def close_database() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None


async def create_tables() -> None:
    """Create all tables registered on :class:`Base`."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    # Register models on the metadata before creating
    from challenge_tracker.web import models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
