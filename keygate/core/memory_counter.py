"""In-process fallback counter with the same increment/expire semantics as Redis.

Counts are per-process only: while the shared store is down, a fleet of N
instances admits up to N times the configured limit.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock

import structlog

from keygate.core.counter_store import CounterHit

logger = structlog.get_logger(__name__)

MEMORY_SOURCE = "memory"


@dataclass
class _Entry:
    count: int
    reset_at: float


class MemoryCounterStore:
    """Map-based counters whose expiry is fixed on first write."""

    label = MEMORY_SOURCE

    def __init__(self, now: Callable[[], float] | None = None) -> None:
        self._now = now or time.time
        self._entries: dict[str, _Entry] = {}
        self._lock = Lock()
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def hit(self, key: str, ttl_ms: int) -> CounterHit:
        """Increment a counter, starting a fresh window when the key is absent or expired."""
        now = self._now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _Entry(count=0, reset_at=now + ttl_ms / 1000)
                self._entries[key] = entry
            entry.count += 1
            count = entry.count
            reset_at = entry.reset_at
        return CounterHit(count=count, ttl_ms=max(0, math.ceil((reset_at - now) * 1000)))

    def get(self, key: str) -> int | None:
        """Return the live count for key, or None when absent or expired."""
        entry = self._live_entry(key)
        return entry.count if entry is not None else None

    def ttl_ms(self, key: str) -> int:
        """Remaining lifetime in milliseconds, -2 when the key is absent."""
        entry = self._live_entry(key)
        if entry is None:
            return -2
        return max(0, math.ceil((entry.reset_at - self._now()) * 1000))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._now()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def stop_sweeper(self) -> None:
        """Cancel the periodic sweep task if running."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("memory_counter_swept", removed=removed, remaining=len(self))

    def _live_entry(self, key: str) -> _Entry | None:
        now = self._now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                return None
            return _Entry(count=entry.count, reset_at=entry.reset_at)


@lru_cache
def get_memory_counter() -> MemoryCounterStore:
    """Create and cache the process-local fallback counter."""
    return MemoryCounterStore()
