"""Fixed-bucket and rolling-TTL rate limiting over the failover counter."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

import structlog

from keygate.core.failover import FailoverCounter, get_failover_counter

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "ratelimit"
# Extra lifetime on fixed-bucket keys so a slow clock never resurrects a closed bucket.
_BUCKET_SLACK_MS = 1000


class WindowMode(str, Enum):
    """Counter addressing schemes."""

    FIXED = "fixed"
    ROLLING = "rolling"


@dataclass(frozen=True)
class RateLimitResult:
    """Verdict for one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    source: str
    retry_after_seconds: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def headers(self) -> dict[str, str]:
        """Standard short-window response headers; denials also carry Retry-After."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


@dataclass(frozen=True)
class RateLimitStatus:
    """Non-consuming view of a scope's current window."""

    count: int
    limit: int
    remaining: int
    reset_at: int | None
    source: str


@dataclass(frozen=True)
class _Window:
    key: str
    ttl_ms: int
    bucket_end_ms: int | None


class RateLimiter:
    """Single rate limiter whose windowing is selected per call by `WindowMode`."""

    def __init__(self, counter: FailoverCounter, now: Callable[[], float] | None = None) -> None:
        self._counter = counter
        self._now = now or time.time

    async def check(
        self,
        scope: str,
        limit: int,
        window_ms: int,
        mode: WindowMode = WindowMode.FIXED,
    ) -> RateLimitResult:
        """Consume one unit for scope and report whether it stays within limit."""
        self._validate(limit, window_ms)
        now_ms = self._now_ms()
        window = self._window(scope, window_ms, mode, now_ms)
        reading = await self._counter.hit(window.key, window.ttl_ms)

        reset_ms = self._reset_ms(window, reading.ttl_ms, window_ms, now_ms)
        allowed = reading.count <= limit
        result = RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - reading.count),
            reset_at=math.ceil(reset_ms / 1000),
            source=reading.source,
            retry_after_seconds=0 if allowed else max(1, math.ceil((reset_ms - now_ms) / 1000)),
        )
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                scope_kind=scope.split(":", 1)[0],
                mode=mode.value,
                limit=limit,
                reset_at=result.reset_at,
                source=result.source,
            )
        return result

    async def status(
        self,
        scope: str,
        limit: int,
        window_ms: int,
        mode: WindowMode = WindowMode.FIXED,
    ) -> RateLimitStatus:
        """Report current usage for scope without consuming a unit."""
        self._validate(limit, window_ms)
        now_ms = self._now_ms()
        window = self._window(scope, window_ms, mode, now_ms)
        reading = await self._counter.peek(window.key)

        reset_at: int | None = None
        if reading.count > 0:
            reset_at = math.ceil(self._reset_ms(window, reading.ttl_ms, window_ms, now_ms) / 1000)
        return RateLimitStatus(
            count=reading.count,
            limit=limit,
            remaining=max(0, limit - reading.count),
            reset_at=reset_at,
            source=reading.source,
        )

    async def reset(
        self,
        scope: str,
        mode: WindowMode = WindowMode.ROLLING,
        window_ms: int | None = None,
    ) -> None:
        """Delete the scope's counter so the next check starts a fresh window."""
        if mode is WindowMode.FIXED:
            if window_ms is None or window_ms < 1:
                raise ValueError("window_ms is required to reset a fixed-bucket scope")
            key = self._window(scope, window_ms, mode, self._now_ms()).key
        else:
            key = self._rolling_key(scope)
        await self._counter.delete(key)

    def _window(self, scope: str, window_ms: int, mode: WindowMode, now_ms: int) -> _Window:
        if mode is WindowMode.FIXED:
            bucket = now_ms // window_ms
            bucket_end_ms = (bucket + 1) * window_ms
            return _Window(
                key=f"{_KEY_PREFIX}:{scope}:{bucket}",
                ttl_ms=bucket_end_ms - now_ms + _BUCKET_SLACK_MS,
                bucket_end_ms=bucket_end_ms,
            )
        return _Window(key=self._rolling_key(scope), ttl_ms=window_ms, bucket_end_ms=None)

    @staticmethod
    def _rolling_key(scope: str) -> str:
        return f"{_KEY_PREFIX}:{scope}"

    @staticmethod
    def _reset_ms(window: _Window, ttl_ms: int, window_ms: int, now_ms: int) -> int:
        if window.bucket_end_ms is not None:
            return window.bucket_end_ms
        if ttl_ms >= 0:
            return now_ms + ttl_ms
        return now_ms + window_ms

    @staticmethod
    def _validate(limit: int, window_ms: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

    def _now_ms(self) -> int:
        return int(self._now() * 1000)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Create and cache the rate limiter dependency."""
    return RateLimiter(counter=get_failover_counter())
