"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from keygate.config import configure_structlog, get_settings
from keygate.core.counter_store import get_counter_store
from keygate.core.memory_counter import get_memory_counter
from keygate.db.session import dispose_engine
from keygate.error_handlers import register_exception_handlers
from keygate.middleware.api_gate import APIGateMiddleware
from keygate.middleware.correlation_id import CorrelationIdMiddleware
from keygate.middleware.logging import LoggingMiddleware
from keygate.middleware.metrics import MetricsMiddleware, build_metrics_endpoint
from keygate.routers import health, introspect, usage
from keygate.services.credential_service import get_credential_validator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the fallback counter sweep and release shared clients on shutdown."""
    settings = get_settings()
    memory_counter = get_memory_counter()
    memory_counter.start_sweeper(settings.rate_limit.sweep_interval_seconds)
    try:
        yield
    finally:
        await memory_counter.stop_sweeper()
        await get_credential_validator().drain()
        await get_counter_store().aclose()
        await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    register_exception_handlers(
        app,
        environment=settings.app.environment,
        protected_prefixes=settings.api_keys.protected_path_prefixes,
    )
    app.add_middleware(APIGateMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.add_api_route("/metrics", build_metrics_endpoint(), methods=["GET"], include_in_schema=False)
    app.include_router(usage.router)
    app.include_router(introspect.router)
    app.include_router(health.router)
    return app


app = create_app()
