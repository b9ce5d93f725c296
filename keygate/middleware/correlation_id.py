"""Correlation ID middleware."""

from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"
_CONTEXT_KEY = "correlation_id"
_MAX_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str:
    """Accept a caller-supplied ID when it is short and printable, else mint one."""
    candidate = request.headers.get(CORRELATION_ID_HEADER, "").strip()
    if candidate and len(candidate) <= _MAX_LENGTH and candidate.isprintable():
        return candidate
    return str(uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a request correlation ID and bind it to structlog context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars(_CONTEXT_KEY)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
