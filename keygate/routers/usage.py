"""Caller usage endpoint served behind the API gate."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from keygate.config import Settings, get_settings
from keygate.core.rate_limiter import RateLimiter, WindowMode, get_rate_limiter
from keygate.dependencies import get_current_caller
from keygate.schemas.usage import MonthlyUsage, RateWindowUsage, UsageResponse
from keygate.services.credential_service import ValidatedCaller
from keygate.services.gate_service import api_key_scope
from keygate.services.quota_service import QuotaTracker, get_quota_tracker

router = APIRouter(prefix="/api/v1", tags=["usage"])


@router.get("/usage", response_model=UsageResponse)
async def usage(
    caller: Annotated[ValidatedCaller, Depends(get_current_caller)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    quota_tracker: Annotated[QuotaTracker, Depends(get_quota_tracker)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> UsageResponse:
    """Report the calling key's short-window and monthly usage.

    The route is listed in `api_keys.unmetered_paths`, so reading usage spends
    neither a rate-limit unit nor monthly quota and stays reachable once the
    quota is exhausted.
    """
    limits = settings.rate_limit
    window = await limiter.status(
        api_key_scope(caller.key_hash),
        limit=limits.requests_per_window,
        window_ms=limits.window_ms,
        mode=WindowMode.FIXED,
    )
    monthly = await quota_tracker.check_monthly(caller.key_hash, caller.tier)
    return UsageResponse(
        key_id=caller.key_id,
        key_prefix=caller.key_prefix,
        tier=caller.tier.name,
        rate_limit=RateWindowUsage(
            limit=window.limit,
            used=window.count,
            remaining=window.remaining,
            reset_at=window.reset_at,
            source=window.source,
        ),
        monthly=MonthlyUsage(
            limit=monthly.limit,
            used=monthly.used,
            remaining=monthly.remaining,
            reset_at=monthly.reset_at,
            source=monthly.source,
        ),
    )
