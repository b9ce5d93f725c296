"""Redis-backed shared counter store with a circuit-breaker health flag."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Generic, Protocol, TypeVar

import structlog
from redis import asyncio as redis_async
from redis.exceptions import RedisError, ResponseError

from keygate.config import CounterStoreSettings, get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REDIS_SOURCE = "redis"


@dataclass(frozen=True)
class StoreReply(Generic[T]):
    """Outcome of one store call; `ok=False` means the store was unavailable."""

    ok: bool
    value: T | None = None

    @classmethod
    def unavailable(cls) -> StoreReply[Any]:
        return cls(ok=False)


@dataclass(frozen=True)
class CounterHit:
    """Counter value after an increment plus the key's remaining lifetime."""

    count: int
    ttl_ms: int


@dataclass(frozen=True)
class CounterStoreStatus:
    """Operator-facing snapshot of the store's availability."""

    enabled: bool
    configured: bool
    healthy: bool


class CounterPipeline(Protocol):
    """Protocol for the transactional pipeline used by atomic increments."""

    def incr(self, name: str, amount: int = 1) -> Any: ...

    def pexpire(self, name: str, time: int, nx: bool = False) -> Any: ...

    def pttl(self, name: str) -> Any: ...

    async def execute(self) -> list[Any]: ...

    async def __aenter__(self) -> CounterPipeline: ...

    async def __aexit__(self, *args: object) -> None: ...


class CounterRedis(Protocol):
    """Protocol for Redis operations used by the counter store."""

    async def incr(self, name: str, amount: int = 1) -> int: ...

    async def expire(self, name: str, time: int) -> bool: ...

    async def get(self, name: str) -> str | None: ...

    async def ttl(self, name: str) -> int: ...

    async def delete(self, *names: str) -> int: ...

    async def ping(self) -> bool: ...

    def pipeline(self, transaction: bool = True) -> CounterPipeline: ...


class RedisCounterStore:
    """Atomic counters in a shared Redis, degrading to an explicit unavailable reply."""

    label = REDIS_SOURCE

    def __init__(
        self,
        redis_client: CounterRedis | None,
        enabled: bool = True,
        timeout_seconds: float = 0.5,
        cooldown_seconds: float = 60.0,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis_client
        self._enabled = enabled
        self._timeout_seconds = timeout_seconds
        self._cooldown_seconds = cooldown_seconds
        self._now = now or time.monotonic
        self._healthy = True
        self._failed_at: float | None = None

    @property
    def healthy(self) -> bool:
        return self._healthy

    def status(self) -> CounterStoreStatus:
        """Return enabled/configured/healthy flags for monitoring."""
        return CounterStoreStatus(
            enabled=self._enabled,
            configured=self._redis is not None,
            healthy=self._healthy,
        )

    def is_available(self) -> bool:
        """Return True when a remote call may be attempted right now."""
        if not self._enabled or self._redis is None:
            return False
        if self._healthy or self._failed_at is None:
            return True
        return self._now() - self._failed_at >= self._cooldown_seconds

    def mark_unhealthy(self, operation: str = "external", error: str | None = None) -> None:
        """Open the breaker so no remote call is attempted until the cooldown elapses."""
        was_healthy = self._healthy
        self._healthy = False
        self._failed_at = self._now()
        if not was_healthy:
            logger.debug("counter_store_retry_failed", operation=operation, error=error)
            return
        logger.warning(
            "counter_store_unavailable",
            operation=operation,
            error=error,
            cooldown_seconds=self._cooldown_seconds,
        )

    async def increment(self, key: str) -> StoreReply[int]:
        """Atomically increment a counter and return its new value."""
        return await self._call("incr", lambda redis: redis.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> StoreReply[bool]:
        """Set a key's expiry in seconds."""
        return await self._call("expire", lambda redis: redis.expire(key, ttl_seconds))

    async def get(self, key: str) -> StoreReply[int | None]:
        """Read a counter without modifying it; a missing key reads as None."""
        reply = await self._call("get", lambda redis: redis.get(key))
        if not reply.ok or reply.value is None:
            return reply
        return StoreReply(ok=True, value=int(reply.value))

    async def ttl(self, key: str) -> StoreReply[int]:
        """Return remaining lifetime in seconds, -1 without expiry, -2 when missing."""
        return await self._call("ttl", lambda redis: redis.ttl(key))

    async def delete(self, key: str) -> StoreReply[int]:
        """Delete a counter key."""
        return await self._call("delete", lambda redis: redis.delete(key))

    async def ping(self) -> bool:
        """Probe the store; a successful reply clears the unhealthy flag."""
        reply = await self._call("ping", lambda redis: redis.ping())
        return reply.ok and bool(reply.value)

    async def increment_and_get_count(self, key: str, ttl_ms: int) -> StoreReply[CounterHit]:
        """Increment and apply a first-write expiry in one MULTI/EXEC round trip.

        PEXPIRE NX only sets an expiry on keys that have none, so the expiry is
        fixed by the first hit and a key that lost its expiry is repaired on the
        next hit instead of living forever.
        """

        async def _transaction(redis: CounterRedis) -> CounterHit:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.pexpire(key, ttl_ms, nx=True)
                pipe.pttl(key)
                count, _, remaining_ms = await pipe.execute()
            return CounterHit(count=int(count), ttl_ms=int(remaining_ms))

        return await self._call("increment_and_get_count", _transaction)

    async def aclose(self) -> None:
        """Close the underlying client regardless of redis-py close API version."""
        if self._redis is None:
            return
        close = getattr(self._redis, "aclose", None) or getattr(self._redis, "close", None)
        if callable(close):
            result = close()
            if hasattr(result, "__await__"):
                await result

    async def _call(
        self,
        operation: str,
        command: Callable[[CounterRedis], Awaitable[T]],
    ) -> StoreReply[T]:
        """Run one bounded remote call, converting transport failures into a reply."""
        if not self.is_available():
            return StoreReply.unavailable()
        assert self._redis is not None

        try:
            value = await asyncio.wait_for(command(self._redis), timeout=self._timeout_seconds)
        except ResponseError as exc:
            # Server rejected the command itself; PEXPIRE NX needs Redis >= 7.
            logger.error("counter_store_command_rejected", operation=operation, error=str(exc))
            self.mark_unhealthy(operation=operation, error=type(exc).__name__)
            return StoreReply.unavailable()
        except (RedisError, OSError, TimeoutError) as exc:
            self.mark_unhealthy(operation=operation, error=type(exc).__name__)
            return StoreReply.unavailable()

        if not self._healthy:
            self._healthy = True
            self._failed_at = None
            logger.info("counter_store_recovered", operation=operation)
        return StoreReply(ok=True, value=value)


def build_counter_store(settings: CounterStoreSettings) -> RedisCounterStore:
    """Construct a store from settings; an unset URL yields a fallback-only store."""
    redis_client = None
    if settings.enabled and settings.url:
        redis_client = redis_async.from_url(
            settings.url,
            decode_responses=True,
            socket_timeout=settings.timeout_seconds,
            socket_connect_timeout=settings.timeout_seconds,
        )
    return RedisCounterStore(
        redis_client=redis_client,
        enabled=settings.enabled,
        timeout_seconds=settings.timeout_seconds,
        cooldown_seconds=settings.cooldown_seconds,
    )


@lru_cache
def get_counter_store() -> RedisCounterStore:
    """Create and cache the process-wide counter store."""
    return build_counter_store(get_settings().counter_store)
