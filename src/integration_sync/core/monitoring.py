"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_sync_run(): Context manager recording run count and duration
- record_fetch_attempt(): provider call counter
- init_sentry(): Initialize Sentry with organization-aware before_send callback
- get_metrics_response(): Response body for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

ORGANIZATION_HEADER = "X-Organization-ID"

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

integration_runs_total = Counter(
    "integration_runs_total",
    "Integration runs by final status",
    ["provider", "run_type", "status"],
)

integration_run_duration_seconds = Histogram(
    "integration_run_duration_seconds",
    "Wall-clock duration of integration runs in seconds",
    ["provider", "run_type"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

provider_fetch_attempts_total = Counter(
    "provider_fetch_attempts_total",
    "Provider page fetch attempts",
    ["provider", "outcome"],
)

integration_records_processed_total = Counter(
    "integration_records_processed_total",
    "Records fetched from providers and handed to the processing queue",
    ["provider"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    Organization ids are left out of the labels to keep cardinality bounded.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helpers ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(
    provider: str,
    run_type: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks integration run metrics.

    Usage:
        async with track_sync_run("GONG", "MANUAL") as tracker:
            run_id = await execute(...)
            tracker["records"] = 42

    Automatically records:
    - Duration in histogram
    - Run count labelled COMPLETED or FAILED
    - Processed record count (if set in tracker dict)
    """
    tracker: dict[str, Any] = {"records": 0}
    start_time = time.perf_counter()
    status = "COMPLETED"

    try:
        yield tracker
    except Exception:
        status = "FAILED"
        raise
    finally:
        duration = time.perf_counter() - start_time

        integration_runs_total.labels(
            provider=provider,
            run_type=run_type,
            status=status,
        ).inc()

        integration_run_duration_seconds.labels(
            provider=provider,
            run_type=run_type,
        ).observe(duration)

        if tracker.get("records"):
            integration_records_processed_total.labels(provider=provider).inc(tracker["records"])


def record_fetch_attempt(provider: str, outcome: str) -> None:
    """Count one provider fetch attempt (``success`` or ``failure``)."""
    provider_fetch_attempts_total.labels(provider=provider, outcome=outcome).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with organization-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the organization of the originating request."""
        headers = (event.get("request") or {}).get("headers") or {}
        organization_id = headers.get(ORGANIZATION_HEADER) or headers.get(ORGANIZATION_HEADER.lower())
        if organization_id:
            event.setdefault("tags", {})["organization_id"] = organization_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )
    logger.info("sentry.initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
