"""API gate composing credential validation, rate limiting and monthly quota."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.config import RateLimitSettings, get_settings
from keygate.core.api_keys import extract_bearer_token
from keygate.core.rate_limiter import RateLimiter, RateLimitResult, WindowMode, get_rate_limiter
from keygate.core.metrics import DEFAULT_METRICS_REGISTRY, MetricsRegistry
from keygate.services.credential_service import (
    CredentialValidator,
    FailureReason,
    ValidatedCaller,
    get_credential_validator,
)
from keygate.services.quota_service import QuotaResult, QuotaTracker, get_quota_tracker

logger = structlog.get_logger(__name__)

OUTCOME_ALLOWED = "allowed"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_QUOTA_EXCEEDED = "quota_exceeded"
_NO_SOURCE = "none"


def api_key_scope(key_hash: str) -> str:
    """Rate-limit scope for traffic authenticated by one credential."""
    return f"apikey:{key_hash}"


@dataclass(frozen=True)
class GateDecision:
    """Combined verdict handed to the HTTP layer."""

    caller: ValidatedCaller | None = None
    rate_limit: RateLimitResult | None = None
    monthly_exceeded: bool = False
    failure: FailureReason | None = None
    quota: QuotaResult | None = None
    metered: bool = True

    @property
    def allowed(self) -> bool:
        if self.caller is None or self.failure is not None:
            return False
        if not self.metered:
            return True
        return (
            self.rate_limit is not None
            and self.rate_limit.allowed
            and not self.monthly_exceeded
        )

    @property
    def outcome(self) -> str:
        if self.failure is not None:
            return self.failure.value
        if self.rate_limit is not None and not self.rate_limit.allowed:
            return OUTCOME_RATE_LIMITED
        if self.monthly_exceeded:
            return OUTCOME_QUOTA_EXCEEDED
        return OUTCOME_ALLOWED

    def as_dict(self) -> dict[str, Any]:
        return {
            "caller": self.caller.as_dict() if self.caller else None,
            "rate_limit": self.rate_limit.as_dict() if self.rate_limit else None,
            "monthly_exceeded": self.monthly_exceeded,
            "failure": self.failure.value if self.failure else None,
            "quota": self.quota.as_dict() if self.quota else None,
            "metered": self.metered,
        }


class APIGate:
    """Run validator, short-window limiter and monthly quota in order."""

    def __init__(
        self,
        validator: CredentialValidator,
        rate_limiter: RateLimiter,
        quota_tracker: QuotaTracker,
        rate_limit_settings: RateLimitSettings,
        metrics: MetricsRegistry = DEFAULT_METRICS_REGISTRY,
    ) -> None:
        self._validator = validator
        self._rate_limiter = rate_limiter
        self._quota_tracker = quota_tracker
        self._limits = rate_limit_settings
        self._metrics = metrics

    async def evaluate(
        self,
        db_session: AsyncSession,
        authorization: str | None,
        client_ip: str | None,
        metered: bool = True,
    ) -> GateDecision:
        """Evaluate one request; the first failing stage short-circuits the rest.

        Unmetered requests are only authenticated: they spend no rate-limit unit
        and are neither checked against nor counted toward the monthly quota.
        """
        token = extract_bearer_token(authorization)
        outcome = await self._validator.validate(db_session, token, client_ip)
        if outcome.caller is None:
            return self._finish(GateDecision(failure=outcome.failure, metered=metered))

        caller = outcome.caller
        if not metered:
            return self._finish(GateDecision(caller=caller, metered=False))
        rate_limit = await self._rate_limiter.check(
            api_key_scope(caller.key_hash),
            limit=self._limits.requests_per_window,
            window_ms=self._limits.window_ms,
            mode=WindowMode.FIXED,
        )
        if not rate_limit.allowed:
            return self._finish(GateDecision(caller=caller, rate_limit=rate_limit))

        quota = await self._quota_tracker.check_monthly(caller.key_hash, caller.tier)
        return self._finish(
            GateDecision(
                caller=caller,
                rate_limit=rate_limit,
                monthly_exceeded=quota.exceeded,
                quota=quota,
            )
        )

    async def commit(self, decision: GateDecision) -> None:
        """Count a successfully handled request against the caller's monthly quota."""
        if not decision.allowed or decision.caller is None:
            raise ValueError("only allowed gate decisions can be committed")
        if not decision.metered:
            raise ValueError("unmetered gate decisions are never billed")
        await self._quota_tracker.commit(decision.caller.key_hash)

    def _finish(self, decision: GateDecision) -> GateDecision:
        source = decision.rate_limit.source if decision.rate_limit else _NO_SOURCE
        self._metrics.record_gate_decision(outcome=decision.outcome, source=source)
        logger.info(
            "api_gate_decision",
            outcome=decision.outcome,
            source=source,
            key_prefix=decision.caller.key_prefix if decision.caller else None,
            tier=decision.caller.tier.name if decision.caller else None,
            remaining=decision.rate_limit.remaining if decision.rate_limit else None,
            metered=decision.metered,
        )
        return decision


@lru_cache
def get_api_gate() -> APIGate:
    """Create and cache the API gate dependency."""
    return APIGate(
        validator=get_credential_validator(),
        rate_limiter=get_rate_limiter(),
        quota_tracker=get_quota_tracker(),
        rate_limit_settings=get_settings().rate_limit,
    )
