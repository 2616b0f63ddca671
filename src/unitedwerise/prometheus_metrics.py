"""Prometheus metrics instrumentation for the UnitedWeRise backend.

HTTP request metrics are collected by ``PrometheusMiddleware``; the domain
services report through the ``track_*`` helpers at the bottom of the module.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

if TYPE_CHECKING:
    from collections.abc import Awaitable


# ============================================================================
# HTTP Metrics
# ============================================================================

http_requests_total = Counter(
    "uwr_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "uwr_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "uwr_http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"],
)


# ============================================================================
# Domain Metrics
# ============================================================================

feed_generations_total = Counter(
    "uwr_feed_generations_total",
    "Feeds generated",
    ["algorithm"],
)

feed_generation_duration_seconds = Histogram(
    "uwr_feed_generation_duration_seconds",
    "Feed generation duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

reputation_events_total = Counter(
    "uwr_reputation_events_total",
    "Reputation events applied",
    ["event_type"],
)

topic_aggregation_duration_seconds = Histogram(
    "uwr_topic_aggregation_duration_seconds",
    "Topic aggregation duration in seconds",
    ["scope"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

topics_aggregated = Gauge(
    "uwr_topics_aggregated",
    "Topics produced by the last aggregation run",
    ["scope"],
)

security_events_total = Counter(
    "uwr_security_events_total",
    "Security events logged",
    ["event_type", "risk_level"],
)

llm_requests_total = Counter(
    "uwr_llm_requests_total",
    "LLM completion requests",
    ["provider", "outcome"],
)


# ============================================================================
# Middleware
# ============================================================================

class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics for Prometheus."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics/prometheus":
            return await call_next(request)

        method = request.method
        endpoint_normalized = self._normalize_endpoint(request.url.path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint_normalized).inc()
        start_time = time.time()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            duration = time.time() - start_time
            http_requests_in_progress.labels(method=method, endpoint=endpoint_normalized).dec()
            http_requests_total.labels(method=method, endpoint=endpoint_normalized, status=status).inc()
            http_request_duration_seconds.labels(
                method=method, endpoint=endpoint_normalized, status=status
            ).observe(duration)

    @staticmethod
    def _normalize_endpoint(endpoint: str) -> str:
        """Collapse ids in the path so label cardinality stays bounded."""
        endpoint = endpoint.split("?")[0]
        parts = []
        for part in endpoint.split("/"):
            if part.isdigit():
                parts.append("{id}")
            elif len(part) == 36 and part.count("-") == 4:
                parts.append("{uuid}")
            elif len(part) == 32 and all(c in "0123456789abcdef" for c in part):
                parts.append("{id}")
            elif part.startswith("topic_"):
                parts.append("{topic_id}")
            else:
                parts.append(part)
        return "/".join(parts)


def get_prometheus_metrics() -> Response:
    """Generate Prometheus metrics in text format."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# Helper Functions
# ============================================================================

def track_feed_generation(algorithm: str, duration: float) -> None:
    feed_generations_total.labels(algorithm=algorithm).inc()
    feed_generation_duration_seconds.observe(duration)


def track_reputation_event(event_type: str) -> None:
    reputation_events_total.labels(event_type=event_type).inc()


def track_topic_aggregation(scope: str, duration: float, count: int) -> None:
    """Record one aggregation run.

    Args:
        scope: national, state or local
        duration: Run duration in seconds
        count: Number of topics produced
    """
    topic_aggregation_duration_seconds.labels(scope=scope).observe(duration)
    topics_aggregated.labels(scope=scope).set(count)


def track_security_event(event_type: str, risk_level: str) -> None:
    security_events_total.labels(event_type=event_type, risk_level=risk_level).inc()


def track_llm_request(provider: str, outcome: str) -> None:
    llm_requests_total.labels(provider=provider, outcome=outcome).inc()
