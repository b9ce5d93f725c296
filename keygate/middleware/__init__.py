"""Middleware package exports."""

from keygate.middleware.api_gate import APIGateMiddleware
from keygate.middleware.correlation_id import CorrelationIdMiddleware
from keygate.middleware.logging import LoggingMiddleware
from keygate.middleware.metrics import MetricsMiddleware, build_metrics_endpoint

__all__ = [
    "APIGateMiddleware",
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "MetricsMiddleware",
    "build_metrics_endpoint",
]
