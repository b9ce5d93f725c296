"""Subscription tier descriptors and the configured catalog."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from keygate.config import TierSettings

UNLIMITED = -1
DEFAULT_TIER = "free"


@dataclass(frozen=True)
class TierDescriptor:
    """Static per-tier API limits."""

    name: str
    monthly_request_limit: int
    api_access: bool

    @property
    def unlimited(self) -> bool:
        return self.monthly_request_limit == UNLIMITED


class TierCatalog:
    """Lookup of tier descriptors by subscription tier name."""

    def __init__(self, tiers: Mapping[str, TierDescriptor]) -> None:
        if DEFAULT_TIER not in tiers:
            raise ValueError(f"tier catalog must define the '{DEFAULT_TIER}' tier")
        self._tiers = dict(tiers)

    @classmethod
    def from_settings(cls, tiers: Mapping[str, TierSettings]) -> TierCatalog:
        return cls(
            {
                name: TierDescriptor(
                    name=name,
                    monthly_request_limit=tier.monthly_request_limit,
                    api_access=tier.api_access,
                )
                for name, tier in tiers.items()
            }
        )

    def resolve(self, tier_name: str | None) -> TierDescriptor:
        """Return the descriptor for tier_name, treating unknown or missing tiers as free."""
        if tier_name:
            descriptor = self._tiers.get(tier_name.strip().lower())
            if descriptor is not None:
                return descriptor
        return self._tiers[DEFAULT_TIER]

    def names(self) -> list[str]:
        return sorted(self._tiers)
