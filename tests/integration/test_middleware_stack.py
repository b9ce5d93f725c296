"""Integration tests for the production middleware stack around the API gate."""

from __future__ import annotations

import re
from typing import Annotated, Any
from uuid import uuid4

import pytest
from fastapi import Depends, FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from keygate.config import RateLimitSettings
from keygate.core.counter_store import RedisCounterStore
from keygate.core.failover import FailoverCounter
from keygate.core.memory_counter import MemoryCounterStore
from keygate.core.metrics import MetricsRegistry
from keygate.core.rate_limiter import RateLimiter
from keygate.core.tiers import TierDescriptor
from keygate.dependencies import get_current_caller
from keygate.error_handlers import register_exception_handlers
from keygate.middleware.api_gate import APIGateMiddleware
from keygate.middleware.correlation_id import CorrelationIdMiddleware
from keygate.middleware.logging import LoggingMiddleware
from keygate.middleware.metrics import MetricsMiddleware, build_metrics_endpoint
from keygate.services.credential_service import (
    FailureReason,
    ValidatedCaller,
    ValidationOutcome,
)
from keygate.services.gate_service import APIGate
from keygate.services.quota_service import QuotaTracker

_CALLER = ValidatedCaller(
    owner_id=uuid4(),
    tier=TierDescriptor("business", 3, True),
    key_hash="c" * 64,
    key_id=uuid4(),
    key_prefix="qrw_stak",
)


class _ValidatorStub:
    async def validate(self, db_session: Any, raw_key: str | None, client_ip: str | None):
        if raw_key == "qrw_good":
            return ValidationOutcome(caller=_CALLER)
        if raw_key is None:
            return ValidationOutcome(failure=FailureReason.MALFORMED)
        return ValidationOutcome(failure=FailureReason.INVALID)


class _NullSession:
    async def __aenter__(self) -> _NullSession:
        return self

    async def __aexit__(self, *args: object) -> None:
        return None


def _build_test_app(requests_per_window: int = 100) -> tuple[FastAPI, MetricsRegistry]:
    """Build test app with middleware stack wired in production order."""
    app = FastAPI()
    registry = MetricsRegistry()
    counter = FailoverCounter(RedisCounterStore(None, enabled=False), MemoryCounterStore())
    gate = APIGate(
        validator=_ValidatorStub(),
        rate_limiter=RateLimiter(counter),
        quota_tracker=QuotaTracker(counter, persist_usage=False),
        rate_limit_settings=RateLimitSettings(requests_per_window=requests_per_window),
        metrics=registry,
    )

    register_exception_handlers(app, environment="production")
    app.add_middleware(
        APIGateMiddleware,
        gate=gate,
        session_factory=_NullSession,
        protected_prefixes=["/api/v1"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, registry=registry)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_api_route(
        "/metrics",
        build_metrics_endpoint(registry=registry),
        methods=["GET"],
        include_in_schema=False,
    )

    @app.get("/api/v1/codes")
    async def codes(
        caller: Annotated[ValidatedCaller, Depends(get_current_caller)],
    ) -> dict[str, str]:
        return {"key_prefix": caller.key_prefix}

    @app.get("/api/v1/fails")
    async def fails() -> None:
        raise HTTPException(status_code=400, detail="bad input")

    @app.get("/public")
    async def public() -> dict[str, bool]:
        return {"ok": True}

    return app, registry


_GOOD = {"Authorization": "Bearer qrw_good"}


@pytest.mark.asyncio
async def test_correlation_id_present_on_success_and_denial() -> None:
    app, _ = _build_test_app()

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        ok_response = await client.get(
            "/api/v1/codes", headers={**_GOOD, "x-correlation-id": "cid-test"}
        )
        denied = await client.get("/api/v1/codes")
        public = await client.get("/public")

    assert ok_response.status_code == 200
    assert ok_response.headers["x-correlation-id"] == "cid-test"
    assert denied.status_code == 401
    assert denied.json() == {"detail": "Invalid API key.", "code": "invalid_api_key"}
    assert denied.headers["www-authenticate"] == "Bearer"
    assert denied.headers.get("x-correlation-id")
    assert public.status_code == 200


@pytest.mark.asyncio
async def test_monthly_quota_counts_only_successful_requests() -> None:
    app, _ = _build_test_app()

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        failed = await client.get("/api/v1/fails", headers=_GOOD)
        successes = [await client.get("/api/v1/codes", headers=_GOOD) for _ in range(3)]
        over = await client.get("/api/v1/codes", headers=_GOOD)

    assert failed.status_code == 400
    assert [response.status_code for response in successes] == [200, 200, 200]
    assert successes[0].headers["x-ratelimit-monthly-remaining"] == "2"
    assert successes[-1].headers["x-ratelimit-monthly-remaining"] == "0"
    assert over.status_code == 429
    assert over.json()["code"] == "quota_exceeded"
    assert over.headers["x-ratelimit-monthly-limit"] == "3"
    assert over.headers["x-ratelimit-monthly-remaining"] == "0"


@pytest.mark.asyncio
async def test_short_window_limit_rejects_with_retry_after() -> None:
    app, _ = _build_test_app(requests_per_window=1)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        first = await client.get("/api/v1/codes", headers=_GOOD)
        second = await client.get("/api/v1/codes", headers=_GOOD)

    assert first.status_code == 200
    assert first.headers["x-ratelimit-limit"] == "1"
    assert second.status_code == 429
    assert second.json() == {"detail": "Rate limit exceeded.", "code": "rate_limited"}
    assert int(second.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_metrics_include_gate_rejections() -> None:
    app, registry = _build_test_app(requests_per_window=1)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        await client.get("/api/v1/codes", headers=_GOOD)
        await client.get("/api/v1/codes", headers=_GOOD)
        metrics_response = await client.get("/metrics")

    assert metrics_response.status_code == 200
    assert registry.gate_decision_count(outcome="allowed", source="memory") == 1
    assert registry.gate_decision_count(outcome="rate_limited", source="memory") == 1
    assert re.search(
        r'keygate_http_requests_total\{method="GET",path="/api/v1/codes",status="429"\} 1',
        metrics_response.text,
    )
