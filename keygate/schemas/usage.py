"""Usage and introspection response schemas."""

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class RateWindowUsage(BaseModel):
    """Short-window usage of the calling credential."""

    limit: int
    used: int
    remaining: int
    reset_at: int | None
    source: str


class MonthlyUsage(BaseModel):
    """Monthly quota usage of the calling credential; limit -1 means unlimited."""

    limit: int
    used: int
    remaining: int | None
    reset_at: int
    source: str | None


class UsageResponse(BaseModel):
    """Caller usage summary."""

    key_id: UUID
    key_prefix: str
    tier: str
    rate_limit: RateWindowUsage
    monthly: MonthlyUsage


class APIKeyIntrospectRequest(BaseModel):
    """Introspect raw API key request."""

    api_key: str = Field(min_length=1, max_length=512)


class APIKeyIntrospectResponse(BaseModel):
    """Introspection verdict; identity fields are set only for valid keys."""

    valid: bool
    code: str | None = None
    owner_id: UUID | None = None
    tier: str | None = None
    key_id: UUID | None = None
    key_prefix: str | None = None
