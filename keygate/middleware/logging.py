"""Structured request logging middleware with credential redaction."""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from keygate.core.client_ip import extract_client_ip

SENSITIVE_KEYS = {
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "key",
    "proxy_authorization",
    "set_cookie",
    "token",
    "x_api_key",
}
REDACTED = "***REDACTED***"

logger = structlog.get_logger(__name__)


def _is_sensitive_key(key: str) -> bool:
    """Return True when key likely carries credential material."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return "token" in normalized or "secret" in normalized or "api_key" in normalized


def redact_mapping(values: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values from a dictionary, recursing into nested containers."""
    redacted: dict[str, Any] = {}
    for key, value in values.items():
        if _is_sensitive_key(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_mapping(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_mapping(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            redacted[key] = value
    return redacted


def _caller_fields(request: Request) -> dict[str, Any]:
    """Non-secret caller identity set by the API gate, when present."""
    caller = getattr(request.state, "caller", None)
    if caller is None:
        return {}
    return {"key_prefix": caller.key_prefix, "tier": caller.tier.name}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Emit one structured log per request with redacted metadata."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = perf_counter()
        query_params = redact_mapping(dict(request.query_params.items()))
        client_ip = extract_client_ip(request)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_completed",
                method=request.method,
                path=request.url.path,
                query_params=query_params,
                status_code=500,
                duration_ms=round((perf_counter() - start) * 1000, 2),
                client_ip=client_ip,
                user_agent=request.headers.get("user-agent", ""),
            )
            raise

        event_logger = logger.warning if response.status_code >= 400 else logger.info
        event_logger(
            "request_completed",
            method=request.method,
            path=request.url.path,
            query_params=query_params,
            status_code=response.status_code,
            duration_ms=round((perf_counter() - start) * 1000, 2),
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent", ""),
            **_caller_fields(request),
        )
        return response
