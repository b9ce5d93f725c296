"""Health check router endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from keygate.core.counter_store import CounterStoreStatus, get_counter_store
from keygate.db.session import get_engine

router = APIRouter(prefix="/health", tags=["health"])


async def check_postgres_ready() -> bool:
    """Return True when Postgres accepts a lightweight query."""
    try:
        async with get_engine().connect() as connection:
            await connection.execute(select(1))
        return True
    except (SQLAlchemyError, OSError, TimeoutError):
        return False


async def check_counter_store() -> CounterStoreStatus:
    """Probe the counter store when a probe is allowed and report its flags."""
    store = get_counter_store()
    if store.is_available():
        await store.ping()
    return store.status()


@router.get("/live")
async def live() -> dict[str, str]:
    """Liveness probe endpoint."""
    return {"status": "live"}


@router.get("/ready")
async def ready(
    postgres_ready: Annotated[bool, Depends(check_postgres_ready)],
    counter_store: Annotated[CounterStoreStatus, Depends(check_counter_store)],
) -> dict[str, Any]:
    """Readiness requires Postgres; the counter store is reported but optional."""
    if not postgres_ready:
        raise HTTPException(
            status_code=503,
            detail={"detail": "Service not ready.", "code": "service_unavailable"},
        )
    return {
        "status": "ready",
        "counter_store": {
            "enabled": counter_store.enabled,
            "configured": counter_store.configured,
            "healthy": counter_store.healthy,
        },
    }
