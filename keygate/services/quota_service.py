"""Monthly per-credential quota tracking."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import case, or_, update

from keygate.config import get_settings
from keygate.core.failover import FailoverCounter, get_failover_counter
from keygate.core.tiers import UNLIMITED, TierDescriptor
from keygate.db.session import get_session_factory
from keygate.models.api_key import APIKey

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "quota"
_EXPIRY_SLACK = timedelta(days=1)


@dataclass(frozen=True)
class QuotaResult:
    """Monthly usage verdict for one credential."""

    exceeded: bool
    used: int
    limit: int
    reset_at: int
    source: str | None = None

    @property
    def remaining(self) -> int | None:
        if self.limit == UNLIMITED:
            return None
        return max(0, self.limit - self.used)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["remaining"] = self.remaining
        return payload


def month_start(moment: datetime) -> datetime:
    """First instant of the calendar month containing moment, in moment's zone."""
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(moment: datetime) -> datetime:
    start = month_start(moment)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class QuotaTracker:
    """Month-scoped usage counters keyed by credential hash."""

    def __init__(
        self,
        counter: FailoverCounter,
        timezone: str = "UTC",
        session_factory: Callable[[], Any] | None = None,
        persist_usage: bool = True,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._counter = counter
        self._zone = ZoneInfo(timezone)
        self._session_factory = session_factory
        self._persist_usage = persist_usage
        self._now = now or time.time

    def month_key(self, key_hash: str, moment: datetime | None = None) -> str:
        """Counter key for the month containing moment (default: now)."""
        local = moment.astimezone(self._zone) if moment is not None else self._local_now()
        return f"{_KEY_PREFIX}:{key_hash}:{local:%Y-%m}"

    async def check_monthly(self, key_hash: str, tier: TierDescriptor) -> QuotaResult:
        """Report whether the credential has used up its tier's monthly allowance."""
        local_now = self._local_now()
        reset_at = int(next_month_start(local_now).timestamp())
        if tier.unlimited:
            return QuotaResult(exceeded=False, used=0, limit=UNLIMITED, reset_at=reset_at)

        reading = await self._counter.peek(self.month_key(key_hash, local_now))
        return QuotaResult(
            exceeded=reading.count >= tier.monthly_request_limit,
            used=reading.count,
            limit=tier.monthly_request_limit,
            reset_at=reset_at,
            source=reading.source,
        )

    async def commit(self, key_hash: str) -> None:
        """Count one successful request against the current month."""
        local_now = self._local_now()
        expires_at = next_month_start(local_now) + _EXPIRY_SLACK
        ttl_ms = max(1, math.ceil((expires_at.timestamp() - self._now()) * 1000))
        await self._counter.hit(self.month_key(key_hash, local_now), ttl_ms)
        if self._persist_usage:
            await self._record_usage(key_hash, local_now)

    async def _record_usage(self, key_hash: str, local_now: datetime) -> None:
        """Atomically bump the durable usage columns, rolling the month over in SQL."""
        rolled_over = or_(
            APIKey.monthly_reset_at.is_(None),
            APIKey.monthly_reset_at <= local_now,
        )
        statement = (
            update(APIKey)
            .where(APIKey.key_hash == key_hash)
            .values(
                request_count=APIKey.request_count + 1,
                monthly_request_count=case(
                    (rolled_over, 1), else_=APIKey.monthly_request_count + 1
                ),
                monthly_reset_at=case(
                    (rolled_over, next_month_start(local_now)), else_=APIKey.monthly_reset_at
                ),
                last_used_at=local_now,
            )
        )
        session_factory = self._session_factory or get_session_factory()
        try:
            async with session_factory() as usage_db:
                await usage_db.execute(statement)
                await usage_db.commit()
        except Exception as exc:
            logger.error("api_key_usage_write_failed", error=type(exc).__name__)

    def _local_now(self) -> datetime:
        return datetime.fromtimestamp(self._now(), tz=self._zone)


@lru_cache
def get_quota_tracker() -> QuotaTracker:
    """Create and cache quota tracker dependency."""
    return QuotaTracker(
        counter=get_failover_counter(),
        timezone=get_settings().quota.timezone,
    )
