"""Bearer credential validation against the stored key hashes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.config import get_settings
from keygate.core.api_keys import APIKeyCore
from keygate.core.client_ip import UNKNOWN_CLIENT_IP
from keygate.core.tiers import TierDescriptor
from keygate.db.session import get_session_factory
from keygate.models.api_key import APIKey
from keygate.services.tier_service import TierResolver, get_tier_resolver

logger = structlog.get_logger(__name__)

_ALLOW_ANY_IP = "*"


class FailureReason(str, Enum):
    """Why a presented credential did not validate."""

    MALFORMED = "malformed"
    INVALID = "invalid"
    REVOKED = "revoked"
    EXPIRED = "expired"
    IP_NOT_ALLOWED = "ip_not_allowed"
    TIER_NOT_ALLOWED = "tier_not_allowed"


@dataclass(frozen=True)
class ValidatedCaller:
    """Identity attached to a request after successful validation; holds no secret."""

    owner_id: UUID
    tier: TierDescriptor
    key_hash: str
    key_id: UUID
    key_prefix: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner_id": str(self.owner_id),
            "tier": self.tier.name,
            "key_id": str(self.key_id),
            "key_prefix": self.key_prefix,
        }


@dataclass(frozen=True)
class ValidationOutcome:
    """Either a validated caller or the reason validation failed."""

    caller: ValidatedCaller | None = None
    failure: FailureReason | None = None

    @property
    def valid(self) -> bool:
        return self.caller is not None


@dataclass(frozen=True)
class TouchResult:
    """Outcome of the best-effort last-used timestamp write."""

    key_id: UUID
    ok: bool
    error: str | None = None


def ip_allowed(ip_whitelist: Sequence[str] | None, client_ip: str | None) -> bool:
    """Return True when the allowlist is empty, the IP is unknown, or an entry matches."""
    if not ip_whitelist:
        return True
    if not client_ip or client_ip == UNKNOWN_CLIENT_IP:
        return True
    return any(entry == _ALLOW_ANY_IP or entry == client_ip for entry in ip_whitelist)


class CredentialValidator:
    """Resolve a bearer token into a validated caller or a failure reason."""

    def __init__(
        self,
        core: APIKeyCore,
        tier_resolver: TierResolver,
        session_factory: Callable[[], Any] | None = None,
        touch_last_used: bool = True,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._core = core
        self._tier_resolver = tier_resolver
        self._session_factory = session_factory
        self._touch_last_used = touch_last_used
        self._now = now or (lambda: datetime.now(UTC))
        self._background_tasks: set[asyncio.Task[TouchResult]] = set()

    @property
    def core(self) -> APIKeyCore:
        return self._core

    async def validate(
        self,
        db_session: AsyncSession,
        bearer_token: str | None,
        client_ip: str | None = None,
    ) -> ValidationOutcome:
        """Validate a raw bearer token. The token itself is never logged or retained."""
        if not bearer_token or not self._core.is_valid_format(bearer_token):
            return ValidationOutcome(failure=FailureReason.MALFORMED)

        key_hash = self._core.hash_key(bearer_token)
        key_prefix = self._core.key_prefix(bearer_token)
        key_row = await self._get_key_by_hash(db_session=db_session, key_hash=key_hash)
        if key_row is None or not self._core.hash_matches(key_row.key_hash, bearer_token):
            return self._reject(FailureReason.INVALID, key_prefix)
        if key_row.revoked_at is not None:
            return self._reject(FailureReason.REVOKED, key_prefix)
        if key_row.expires_at is not None and key_row.expires_at <= self._now():
            return self._reject(FailureReason.EXPIRED, key_prefix)
        if not ip_allowed(key_row.ip_whitelist, client_ip):
            return self._reject(FailureReason.IP_NOT_ALLOWED, key_prefix)

        tier = await self._tier_resolver.resolve(db_session, key_row.user_id)
        if not tier.api_access:
            return self._reject(FailureReason.TIER_NOT_ALLOWED, key_prefix, tier=tier.name)

        caller = ValidatedCaller(
            owner_id=key_row.user_id,
            tier=tier,
            key_hash=key_hash,
            key_id=key_row.id,
            key_prefix=key_row.key_prefix,
        )
        if self._touch_last_used:
            self._schedule_touch(caller.key_id)
        return ValidationOutcome(caller=caller)

    async def drain(self) -> None:
        """Wait for pending background touches, used on shutdown and in tests."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    async def touch_last_used(self, key_id: UUID) -> TouchResult:
        """Write last_used_at on a dedicated session; failures are reported, not raised."""
        session_factory = self._session_factory or get_session_factory()
        try:
            async with session_factory() as touch_db:
                await touch_db.execute(
                    update(APIKey).where(APIKey.id == key_id).values(last_used_at=self._now())
                )
                await touch_db.commit()
        except Exception as exc:
            return TouchResult(key_id=key_id, ok=False, error=type(exc).__name__)
        return TouchResult(key_id=key_id, ok=True)

    def _schedule_touch(self, key_id: UUID) -> None:
        task = asyncio.create_task(self.touch_last_used(key_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._touch_done)

    def _touch_done(self, task: asyncio.Task[TouchResult]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        result = task.result()
        if not result.ok:
            logger.warning("api_key_touch_failed", key_id=str(result.key_id), error=result.error)

    @staticmethod
    def _reject(
        reason: FailureReason, key_prefix: str, tier: str | None = None
    ) -> ValidationOutcome:
        logger.info("api_key_rejected", reason=reason.value, key_prefix=key_prefix, tier=tier)
        return ValidationOutcome(failure=reason)

    async def _get_key_by_hash(self, db_session: AsyncSession, key_hash: str) -> APIKey | None:
        """Fetch credential row by stored hash."""
        result = await db_session.execute(select(APIKey).where(APIKey.key_hash == key_hash))
        return result.scalar_one_or_none()


@lru_cache
def get_credential_validator() -> CredentialValidator:
    """Create and cache credential validator dependency."""
    return CredentialValidator(
        core=APIKeyCore(prefix=get_settings().api_keys.prefix),
        tier_resolver=get_tier_resolver(),
    )
