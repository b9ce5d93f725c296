"""Prometheus-style metrics middleware and endpoint."""

from __future__ import annotations

from time import perf_counter

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse, Response

from keygate.core.metrics import DEFAULT_METRICS_REGISTRY, MetricsRegistry

_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record metrics for all responses, including failed requests."""

    def __init__(self, app, registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY) -> None:
        super().__init__(app)
        self._registry = registry

    async def dispatch(self, request: Request, call_next) -> Response:
        """Capture request counts and durations under the matched route template."""
        start = perf_counter()
        path = request.url.path
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            if route is not None:
                path = getattr(route, "path", path)
            self._registry.record(
                method=request.method,
                path=path,
                status=str(status_code),
                duration_seconds=perf_counter() - start,
            )


def build_metrics_endpoint(registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY):
    """Build FastAPI-compatible endpoint that serves metrics text."""

    async def metrics_endpoint() -> PlainTextResponse:
        """Return current metrics in Prometheus exposition format."""
        return PlainTextResponse(registry.render_prometheus_text(), media_type=_CONTENT_TYPE)

    return metrics_endpoint
