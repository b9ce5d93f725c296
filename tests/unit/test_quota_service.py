"""Unit tests for monthly quota tracking."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from keygate.core.counter_store import RedisCounterStore
from keygate.core.failover import FailoverCounter
from keygate.core.memory_counter import MemoryCounterStore
from keygate.core.tiers import UNLIMITED, TierDescriptor
from keygate.services.quota_service import QuotaTracker, month_start, next_month_start

_BUSINESS = TierDescriptor("business", 3, True)
_UNLIMITED = TierDescriptor("enterprise", UNLIMITED, True)
_KEY_HASH = "f" * 64


class _FakeUsageSession:
    """Session stub capturing the durable usage UPDATE."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.statements: list[Any] = []
        self.commits = 0

    async def __aenter__(self) -> _FakeUsageSession:
        return self

    async def __aexit__(self, *args: object) -> None:
        return None

    async def execute(self, statement: Any) -> None:
        if self.fail:
            raise OSError("database unavailable")
        self.statements.append(statement)

    async def commit(self) -> None:
        self.commits += 1


def _set_clock(clock, moment: datetime) -> None:
    clock.current = moment.timestamp()


def _tracker(
    fake_redis,
    clock,
    monotonic,
    timezone: str = "UTC",
    usage_session: _FakeUsageSession | None = None,
) -> QuotaTracker:
    store = RedisCounterStore(redis_client=fake_redis, now=monotonic.now)
    counter = FailoverCounter(store=store, fallback=MemoryCounterStore(now=clock.now))
    return QuotaTracker(
        counter=counter,
        timezone=timezone,
        session_factory=(lambda: usage_session) if usage_session else None,
        persist_usage=usage_session is not None,
        now=clock.now,
    )


def test_month_boundaries() -> None:
    moment = datetime(2026, 12, 31, 23, 59, tzinfo=UTC)
    assert month_start(moment) == datetime(2026, 12, 1, tzinfo=UTC)
    assert next_month_start(moment) == datetime(2027, 1, 1, tzinfo=UTC)


@pytest.mark.asyncio
async def test_exceeded_once_used_reaches_limit(fake_redis, clock, monotonic) -> None:
    _set_clock(clock, datetime(2026, 3, 10, tzinfo=UTC))
    tracker = _tracker(fake_redis, clock, monotonic)

    verdicts = []
    for _ in range(3):
        verdicts.append(await tracker.check_monthly(_KEY_HASH, _BUSINESS))
        await tracker.commit(_KEY_HASH)
    final = await tracker.check_monthly(_KEY_HASH, _BUSINESS)

    assert [verdict.exceeded for verdict in verdicts] == [False, False, False]
    assert [verdict.used for verdict in verdicts] == [0, 1, 2]
    assert final.exceeded is True
    assert final.used == 3
    assert final.remaining == 0
    assert final.reset_at == int(datetime(2026, 4, 1, tzinfo=UTC).timestamp())
    assert final.source == "redis"


@pytest.mark.asyncio
async def test_unlimited_tier_never_exceeds_and_skips_store(fake_redis, clock, monotonic) -> None:
    tracker = _tracker(fake_redis, clock, monotonic)
    for _ in range(25):
        await tracker.commit(_KEY_HASH)
    calls_before = list(fake_redis.calls)

    result = await tracker.check_monthly(_KEY_HASH, _UNLIMITED)

    assert result.exceeded is False
    assert result.limit == UNLIMITED
    assert result.remaining is None
    assert fake_redis.calls == calls_before


@pytest.mark.asyncio
async def test_counter_rolls_over_at_month_start(fake_redis, clock, monotonic) -> None:
    _set_clock(clock, datetime(2026, 3, 31, 23, 59, 59, tzinfo=UTC))
    tracker = _tracker(fake_redis, clock, monotonic)
    for _ in range(3):
        await tracker.commit(_KEY_HASH)
    assert (await tracker.check_monthly(_KEY_HASH, _BUSINESS)).exceeded is True

    clock.advance(1)

    result = await tracker.check_monthly(_KEY_HASH, _BUSINESS)
    assert result.exceeded is False
    assert result.used == 0


@pytest.mark.asyncio
async def test_month_key_uses_reference_timezone(fake_redis, clock, monotonic) -> None:
    """23:30 UTC on March 31 is already April in Berlin."""
    _set_clock(clock, datetime(2026, 3, 31, 23, 30, tzinfo=UTC))
    utc_tracker = _tracker(fake_redis, clock, monotonic)
    berlin_tracker = _tracker(fake_redis, clock, monotonic, timezone="Europe/Berlin")

    assert utc_tracker.month_key(_KEY_HASH) == f"quota:{_KEY_HASH}:2026-03"
    assert berlin_tracker.month_key(_KEY_HASH) == f"quota:{_KEY_HASH}:2026-04"
    result = await berlin_tracker.check_monthly(_KEY_HASH, _BUSINESS)
    assert result.reset_at == int(datetime(2026, 5, 1, tzinfo=ZoneInfo("Europe/Berlin")).timestamp())


@pytest.mark.asyncio
async def test_commit_sets_expiry_past_month_end(fake_redis, clock, monotonic) -> None:
    _set_clock(clock, datetime(2026, 3, 10, tzinfo=UTC))
    tracker = _tracker(fake_redis, clock, monotonic)

    await tracker.commit(_KEY_HASH)

    key = tracker.month_key(_KEY_HASH)
    expected_expiry = datetime(2026, 4, 2, tzinfo=UTC).timestamp() * 1000
    assert fake_redis.expires_at_ms[key] == int(expected_expiry)


@pytest.mark.asyncio
async def test_commit_falls_back_to_memory(fake_redis, clock, monotonic) -> None:
    tracker = _tracker(fake_redis, clock, monotonic)
    fake_redis.fail = True

    await tracker.commit(_KEY_HASH)
    result = await tracker.check_monthly(_KEY_HASH, _BUSINESS)

    assert result.used == 1
    assert result.source == "memory"


@pytest.mark.asyncio
async def test_commit_records_durable_usage_in_one_update(fake_redis, clock, monotonic) -> None:
    usage_session = _FakeUsageSession()
    tracker = _tracker(fake_redis, clock, monotonic, usage_session=usage_session)

    await tracker.commit(_KEY_HASH)

    assert usage_session.commits == 1
    assert len(usage_session.statements) == 1
    compiled = str(usage_session.statements[0])
    assert compiled.startswith("UPDATE api_keys SET")
    assert "api_keys.request_count +" in compiled
    assert "CASE WHEN" in compiled
    assert "api_keys.monthly_request_count +" in compiled
    assert "last_used_at" in compiled


@pytest.mark.asyncio
async def test_durable_usage_failure_is_logged_not_raised(fake_redis, clock, monotonic) -> None:
    usage_session = _FakeUsageSession(fail=True)
    tracker = _tracker(fake_redis, clock, monotonic, usage_session=usage_session)

    await tracker.commit(_KEY_HASH)

    result = await tracker.check_monthly(_KEY_HASH, _BUSINESS)
    assert result.used == 1
