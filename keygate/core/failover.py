"""Shared-store-first counter with transparent in-process fallback."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import structlog

from keygate.core.counter_store import CounterHit, RedisCounterStore, get_counter_store
from keygate.core.memory_counter import MemoryCounterStore, get_memory_counter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CounterReading:
    """Counter state plus the label of the store that produced it."""

    count: int
    ttl_ms: int
    source: str


class FailoverCounter:
    """Route counter calls to Redis while it is available, otherwise to memory.

    Deletes the store could not apply are remembered and replayed before the
    next call that reaches it, so a reset made during an outage is not undone
    when the store comes back.
    """

    def __init__(self, store: RedisCounterStore, fallback: MemoryCounterStore) -> None:
        self._store = store
        self._fallback = fallback
        self._pending_deletes: set[str] = set()

    @property
    def store(self) -> RedisCounterStore:
        return self._store

    @property
    def fallback(self) -> MemoryCounterStore:
        return self._fallback

    @property
    def pending_deletes(self) -> frozenset[str]:
        return frozenset(self._pending_deletes)

    async def hit(self, key: str, ttl_ms: int) -> CounterReading:
        """Atomically increment key, setting its expiry on first write."""
        await self._replay_deletes()
        reply = await self._store.increment_and_get_count(key, ttl_ms)
        if reply.ok and reply.value is not None:
            return self._reading(reply.value, self._store.label)
        return self._reading(self._fallback.hit(key, ttl_ms), self._fallback.label)

    async def peek(self, key: str) -> CounterReading:
        """Read a counter without consuming; absent keys read as zero."""
        await self._replay_deletes()
        count_reply = await self._store.get(key)
        if count_reply.ok:
            if count_reply.value is None:
                return CounterReading(count=0, ttl_ms=-2, source=self._store.label)
            ttl_reply = await self._store.ttl(key)
            if ttl_reply.ok and ttl_reply.value is not None:
                ttl_ms = ttl_reply.value * 1000 if ttl_reply.value >= 0 else ttl_reply.value
                return CounterReading(
                    count=count_reply.value, ttl_ms=ttl_ms, source=self._store.label
                )

        count = self._fallback.get(key)
        return CounterReading(
            count=count or 0,
            ttl_ms=self._fallback.ttl_ms(key),
            source=self._fallback.label,
        )

    async def delete(self, key: str) -> None:
        """Delete key from both stores so neither keeps a stale window."""
        self._fallback.delete(key)
        await self._replay_deletes()
        reply = await self._store.delete(key)
        status = self._store.status()
        if reply.ok:
            self._pending_deletes.discard(key)
        elif status.enabled and status.configured:
            self._pending_deletes.add(key)

    async def _replay_deletes(self) -> None:
        if not self._pending_deletes or not self._store.is_available():
            return
        for key in sorted(self._pending_deletes):
            reply = await self._store.delete(key)
            if not reply.ok:
                return
            self._pending_deletes.discard(key)
        logger.info("counter_store_deletes_replayed")

    @staticmethod
    def _reading(hit: CounterHit, source: str) -> CounterReading:
        return CounterReading(count=hit.count, ttl_ms=hit.ttl_ms, source=source)


@lru_cache
def get_failover_counter() -> FailoverCounter:
    """Create and cache the process-wide failover counter."""
    return FailoverCounter(store=get_counter_store(), fallback=get_memory_counter())
