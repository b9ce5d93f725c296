"""API gate middleware enforcing credential, rate and quota checks on API paths."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from keygate.config import get_settings
from keygate.core.client_ip import extract_client_ip
from keygate.db.session import get_session_factory
from keygate.services.credential_service import FailureReason
from keygate.services.gate_service import APIGate, GateDecision, get_api_gate

logger = structlog.get_logger(__name__)

_INVALID_KEY = (401, "Invalid API key.", "invalid_api_key")
_FAILURE_RESPONSES: dict[FailureReason, tuple[int, str, str]] = {
    FailureReason.MALFORMED: _INVALID_KEY,
    FailureReason.INVALID: _INVALID_KEY,
    FailureReason.REVOKED: (401, "API key has been revoked.", "revoked_api_key"),
    FailureReason.EXPIRED: (401, "API key has expired.", "expired_api_key"),
    FailureReason.IP_NOT_ALLOWED: (
        403,
        "API key is not allowed from this IP address.",
        "forbidden",
    ),
    FailureReason.TIER_NOT_ALLOWED: (
        403,
        "API access is not included in the current plan.",
        "forbidden",
    ),
}


def is_protected_path(path: str, prefixes: Sequence[str]) -> bool:
    """Return True when path equals or sits below one of the prefixes."""
    for prefix in prefixes:
        normalized = prefix.rstrip("/")
        if path == normalized or path.startswith(f"{normalized}/"):
            return True
    return False


def is_unmetered_path(path: str, unmetered_paths: Sequence[str]) -> bool:
    """Return True when path exactly matches an unmetered route."""
    normalized = path.rstrip("/") or "/"
    return any(normalized == (entry.rstrip("/") or "/") for entry in unmetered_paths)


def build_denial_response(decision: GateDecision) -> JSONResponse:
    """Map a denied gate decision onto the HTTP error contract."""
    if decision.failure is not None:
        status_code, detail, code = _FAILURE_RESPONSES[decision.failure]
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return _error_response(status_code, detail, code, headers)

    if decision.rate_limit is not None and not decision.rate_limit.allowed:
        return _error_response(
            429, "Rate limit exceeded.", "rate_limited", decision.rate_limit.headers()
        )

    headers = decision.rate_limit.headers() if decision.rate_limit else {}
    limit = decision.quota.limit if decision.quota else 0
    headers["X-RateLimit-Monthly-Limit"] = str(limit)
    headers["X-RateLimit-Monthly-Remaining"] = "0"
    if decision.quota is not None:
        headers["X-RateLimit-Monthly-Reset"] = str(decision.quota.reset_at)
    return _error_response(
        429,
        f"Monthly request limit of {limit} exceeded. Limits reset on the first of each month.",
        "quota_exceeded",
        headers,
    )


def _error_response(
    status_code: int,
    detail: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code},
        headers=headers,
    )


class APIGateMiddleware(BaseHTTPMiddleware):
    """Admit requests on protected prefixes only when the API gate allows them."""

    def __init__(
        self,
        app,
        gate: APIGate | None = None,
        session_factory: Callable[[], Any] | None = None,
        protected_prefixes: Sequence[str] | None = None,
        unmetered_paths: Sequence[str] | None = None,
    ) -> None:
        super().__init__(app)
        self._gate = gate
        self._session_factory = session_factory
        if protected_prefixes is None:
            protected_prefixes = get_settings().api_keys.protected_path_prefixes
        if unmetered_paths is None:
            unmetered_paths = get_settings().api_keys.unmetered_paths
        self._protected_prefixes = tuple(protected_prefixes)
        self._unmetered_paths = tuple(unmetered_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        """Evaluate the gate, run the handler, then commit usage on success."""
        if not is_protected_path(request.url.path, self._protected_prefixes):
            return await call_next(request)

        gate = self._gate or get_api_gate()
        session_factory = self._session_factory or get_session_factory()
        async with session_factory() as db_session:
            decision = await gate.evaluate(
                db_session,
                authorization=request.headers.get("authorization"),
                client_ip=extract_client_ip(request),
                metered=not is_unmetered_path(request.url.path, self._unmetered_paths),
            )
        request.state.gate_decision = decision
        if not decision.allowed:
            return build_denial_response(decision)

        request.state.caller = decision.caller
        response = await call_next(request)
        if decision.rate_limit is not None:
            response.headers.update(decision.rate_limit.headers())
        if decision.quota is not None and decision.quota.remaining is not None:
            response.headers["X-RateLimit-Monthly-Limit"] = str(decision.quota.limit)
            # Includes the request being answered.
            response.headers["X-RateLimit-Monthly-Remaining"] = str(
                max(0, decision.quota.remaining - 1)
            )

        if not decision.metered:
            return response
        if response.status_code < 400:
            await gate.commit(decision)
        else:
            logger.debug(
                "api_gate_commit_skipped",
                status_code=response.status_code,
                path=request.url.path,
            )
        return response


def failure_code(reason: FailureReason) -> str:
    """Machine-readable error code for a validation failure."""
    return _FAILURE_RESPONSES[reason][2]
