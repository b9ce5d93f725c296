"""Application settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "keygate"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"] = "development"
    service: str = "keygate"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class DatabaseSettings(BaseModel):
    """Database connection settings for the credential and profile tables."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    command_timeout_seconds: float = Field(default=5.0, gt=0)
    pool_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class CounterStoreSettings(BaseModel):
    """Shared counter store settings; requires Redis 7 or newer for PEXPIRE NX."""

    enabled: bool = False
    url: str | None = Field(default=None, description="Redis >= 7 URL.")
    timeout_seconds: float = Field(default=0.5, gt=0)
    cooldown_seconds: float = Field(default=60.0, ge=0)

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str | None) -> str | None:
        """Ensure the Redis URL uses a supported scheme."""
        if value is None or not value.strip():
            return None
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("counter_store.url must start with 'redis://' or 'rediss://'.")
        return value


class RateLimitSettings(BaseModel):
    """Short-window and brute-force rate limiting thresholds."""

    requests_per_window: int = Field(default=60, ge=1)
    window_ms: int = Field(default=60_000, ge=1)
    sensitive_attempts: int = Field(default=5, ge=1)
    sensitive_window_ms: int = Field(default=900_000, ge=1)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)


class APIKeySettings(BaseModel):
    """Credential format and validation settings."""

    prefix: str = Field(default="qrw_", min_length=1)
    tier_cache_ttl_seconds: float = Field(default=30.0, ge=0)
    protected_path_prefixes: list[str] = Field(default_factory=lambda: ["/api/v1"])
    unmetered_paths: list[str] = Field(
        default_factory=lambda: ["/api/v1/usage"],
        description="Protected paths that authenticate without spending rate or quota.",
    )


class QuotaSettings(BaseModel):
    """Monthly quota settings."""

    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the reference timezone is a known IANA zone."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"quota.timezone '{value}' is not a known timezone.") from exc
        return value


class TierSettings(BaseModel):
    """Per-tier API limits."""

    monthly_request_limit: int = Field(default=0, ge=-1)
    api_access: bool = False


def _default_tiers() -> dict[str, TierSettings]:
    """Default tier catalog mirroring the subscription plans."""
    return {
        "free": TierSettings(monthly_request_limit=0, api_access=False),
        "pro": TierSettings(monthly_request_limit=0, api_access=False),
        "business": TierSettings(monthly_request_limit=10_000, api_access=True),
    }


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings
    counter_store: CounterStoreSettings = Field(default_factory=CounterStoreSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    api_keys: APIKeySettings = Field(default_factory=APIKeySettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    tiers: dict[str, TierSettings] = Field(default_factory=_default_tiers)

    @field_validator("tiers", mode="before")
    @classmethod
    def merge_tier_overrides(cls, value: Any) -> Any:
        """Merge partial per-tier overrides onto the default catalog."""
        if not isinstance(value, dict):
            return value
        merged: dict[str, dict[str, Any]] = {
            name: tier.model_dump() for name, tier in _default_tiers().items()
        }
        for name, override in value.items():
            tier_name = str(name).strip().lower()
            if isinstance(override, TierSettings):
                override = override.model_dump()
            if not isinstance(override, dict):
                raise ValueError(f"tiers.{tier_name} must be a mapping.")
            merged[tier_name] = {**merged.get(tier_name, {}), **override}
        return merged


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
