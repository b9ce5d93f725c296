"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.config import get_settings
from keygate.core.client_ip import extract_client_ip
from keygate.core.rate_limiter import RateLimiter, RateLimitResult, WindowMode, get_rate_limiter
from keygate.db.session import get_db_session
from keygate.services.credential_service import ValidatedCaller


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Expose the request-scoped async database session dependency."""
    async for session in get_db_session():
        yield session


def get_current_caller(request: Request) -> ValidatedCaller:
    """Return the caller the API gate attached to this request."""
    caller = getattr(request.state, "caller", None)
    if not isinstance(caller, ValidatedCaller):
        raise HTTPException(
            status_code=401,
            detail={"detail": "Invalid API key.", "code": "invalid_api_key"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


def action_scope(action: str, client_ip: str) -> str:
    """Rate-limit scope for a sensitive action attempted from one address."""
    return f"{action}:{client_ip}"


def rate_limit_action(
    action: str,
    limit: int | None = None,
    window_ms: int | None = None,
) -> Callable[..., Awaitable[RateLimitResult]]:
    """Build a dependency applying the rolling brute-force limiter to an action.

    The scope is stored on ``request.state.rate_limit_scope`` so a handler can
    reset it after a successful attempt.
    """

    async def _dependency(
        request: Request,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> RateLimitResult:
        effective_limit = limit
        effective_window_ms = window_ms
        if effective_limit is None or effective_window_ms is None:
            settings = get_settings().rate_limit
            effective_limit = effective_limit or settings.sensitive_attempts
            effective_window_ms = effective_window_ms or settings.sensitive_window_ms

        scope = action_scope(action, extract_client_ip(request))
        request.state.rate_limit_scope = scope
        result = await limiter.check(
            scope,
            limit=effective_limit,
            window_ms=effective_window_ms,
            mode=WindowMode.ROLLING,
        )
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail={"detail": "Too many attempts. Try again later.", "code": "rate_limited"},
                headers=result.headers(),
            )
        return result

    return _dependency
