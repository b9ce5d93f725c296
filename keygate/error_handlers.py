"""Global exception handlers enforcing the API error response contract."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keygate.core.client_ip import extract_client_ip

VALID_ERROR_CODES = {
    "invalid_api_key",
    "revoked_api_key",
    "expired_api_key",
    "forbidden",
    "rate_limited",
    "quota_exceeded",
    "invalid_request",
    "service_unavailable",
    "internal_error",
}

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_request",
    401: "invalid_api_key",
    403: "forbidden",
    404: "invalid_request",
    405: "invalid_request",
    422: "invalid_request",
    429: "rate_limited",
    503: "service_unavailable",
}

logger = structlog.get_logger(__name__)


def _error_response(
    status_code: int,
    detail: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code},
        headers=headers,
    )


def _resolve_error_code(status_code: int, raw_code: str | None) -> str:
    """Resolve a valid machine-readable error code."""
    if raw_code in VALID_ERROR_CODES:
        return raw_code
    if status_code >= 500:
        return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "internal_error")
    return _DEFAULT_ERROR_CODE_BY_STATUS.get(status_code, "invalid_request")


def _extract_detail_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_detail = detail.get("detail", "Request failed.")
        raw_code = detail.get("code")
        return str(raw_detail), str(raw_code) if raw_code is not None else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_detail(detail: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error."
    return detail


def _is_gate_path(path: str, protected_prefixes: Sequence[str]) -> bool:
    return any(path.startswith(prefix) for prefix in protected_prefixes) or path.startswith(
        "/internal/apikeys"
    )


def _log_auth_failure(
    request: Request,
    status_code: int,
    detail: str,
    code: str,
    protected_prefixes: Sequence[str],
) -> None:
    """Emit WARNING-level log for client error responses on gate-protected paths."""
    if status_code < 400 or status_code >= 500:
        return
    if not _is_gate_path(request.url.path, protected_prefixes):
        return

    caller = getattr(request.state, "caller", None)
    logger.warning(
        "auth_failure",
        event_type="auth_failure",
        key_prefix=caller.key_prefix if caller is not None else None,
        ip_address=extract_client_ip(request),
        success=False,
        status_code=status_code,
        code=code,
        detail=detail,
        path=request.url.path,
        method=request.method,
    )


def register_exception_handlers(
    app: FastAPI,
    environment: str,
    protected_prefixes: Sequence[str] = ("/api/v1",),
) -> None:
    """Register global exception handlers enforcing error shape contract."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        raw_detail, raw_code = _extract_detail_and_code(exc.detail)
        code = _resolve_error_code(exc.status_code, raw_code)
        detail = _sanitize_detail(raw_detail, exc.status_code, environment)
        _log_auth_failure(request, exc.status_code, detail, code, protected_prefixes)
        return _error_response(
            status_code=exc.status_code,
            detail=detail,
            code=code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        detail = "Invalid request payload."
        if environment == "development":
            errors = exc.errors()
            if errors:
                detail = f"Invalid request payload: {errors[0].get('msg', 'validation error')}."
        code = "invalid_request"
        _log_auth_failure(request, 422, detail, code, protected_prefixes)
        return _error_response(status_code=422, detail=detail, code=code)

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        detail = _sanitize_detail(str(exc), 500, environment)
        return _error_response(status_code=500, detail=detail, code="internal_error")
