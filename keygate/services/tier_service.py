"""Subscription tier resolution with a short-lived in-process cache."""

from __future__ import annotations

from functools import lru_cache
from threading import Lock
from uuid import UUID

import structlog
from cachetools import TTLCache
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.config import get_settings
from keygate.core.tiers import TierCatalog, TierDescriptor
from keygate.models.profile import Profile

logger = structlog.get_logger(__name__)

_CACHE_MAXSIZE = 10_000


class TierResolver:
    """Map a credential owner onto the configured tier catalog."""

    def __init__(self, catalog: TierCatalog, cache_ttl_seconds: float = 30.0) -> None:
        self._catalog = catalog
        self._cache: TTLCache[UUID, str | None] | None = None
        if cache_ttl_seconds > 0:
            self._cache = TTLCache(maxsize=_CACHE_MAXSIZE, ttl=cache_ttl_seconds)
        self._lock = Lock()

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    async def resolve(self, db_session: AsyncSession, owner_id: UUID) -> TierDescriptor:
        """Return the owner's tier; owners without a profile resolve to free."""
        cached, hit = self._cached(owner_id)
        if hit:
            return self._catalog.resolve(cached)

        result = await db_session.execute(
            select(Profile.subscription_tier).where(Profile.id == owner_id)
        )
        tier_name = result.scalar_one_or_none()
        if self._cache is not None:
            with self._lock:
                self._cache[owner_id] = tier_name
        descriptor = self._catalog.resolve(tier_name)
        if tier_name is not None and descriptor.name != tier_name.strip().lower():
            logger.info("unknown_subscription_tier", tier=tier_name, resolved=descriptor.name)
        return descriptor

    def invalidate(self, owner_id: UUID) -> None:
        """Drop a cached tier, e.g. after a plan change."""
        if self._cache is None:
            return
        with self._lock:
            self._cache.pop(owner_id, None)

    def _cached(self, owner_id: UUID) -> tuple[str | None, bool]:
        if self._cache is None:
            return None, False
        with self._lock:
            if owner_id in self._cache:
                return self._cache[owner_id], True
        return None, False


@lru_cache
def get_tier_resolver() -> TierResolver:
    """Create and cache the tier resolver dependency."""
    settings = get_settings()
    return TierResolver(
        catalog=TierCatalog.from_settings(settings.tiers),
        cache_ttl_seconds=settings.api_keys.tier_cache_ttl_seconds,
    )
