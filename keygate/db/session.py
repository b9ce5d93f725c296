"""Async SQLAlchemy engine and session factory for credential lookups."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from keygate.config import get_settings


@lru_cache
def get_engine() -> AsyncEngine:
    """Build and cache the engine with bounded connect and statement timeouts."""
    database = get_settings().database
    return create_async_engine(
        database.url,
        pool_pre_ping=True,
        pool_timeout=database.pool_timeout_seconds,
        connect_args={
            "timeout": database.connect_timeout_seconds,
            "command_timeout": database.command_timeout_seconds,
        },
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Build and cache the async session factory."""
    return async_sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session for credential and tier reads."""
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    """Dispose the SQLAlchemy engine if it was ever created."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
