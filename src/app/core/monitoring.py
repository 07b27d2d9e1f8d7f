"""Prometheus metrics, Sentry integration, and sync pipeline tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Sync metrics: jobs by outcome, remote calls, webhook outcomes, queue depth
- track_remote_call(): Context manager for NetSuite call metrics
- init_sentry(): Initialize Sentry with sync-aware before_send callback
- get_metrics_response(): FastAPI route handler for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

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

sync_jobs_total = Counter(
    "opms_sync_jobs_total",
    "Sync jobs processed, by entity type and outcome",
    ["entity_type", "outcome"],
)

sync_job_duration_seconds = Histogram(
    "opms_sync_job_duration_seconds",
    "Time from claim to terminal or retry state",
    ["entity_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

sync_queue_depth = Gauge(
    "opms_sync_queue_depth",
    "Sync jobs by status",
    ["status"],
)

sync_auth_failures_total = Counter(
    "opms_sync_auth_failures_total",
    "NetSuite authentication failures that halted the processor",
)

remote_requests_total = Counter(
    "netsuite_requests_total",
    "NetSuite RESTlet operations",
    ["operation", "status"],
)

remote_request_duration_seconds = Histogram(
    "netsuite_request_duration_seconds",
    "NetSuite RESTlet operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_events_total = Counter(
    "netsuite_webhook_events_total",
    "NetSuite webhook notifications by status and reason",
    ["status", "reason"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route pattern as the endpoint label so path parameters
    (item and job ids) do not explode label cardinality.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

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


# ── Remote Call Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_remote_call(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one NetSuite operation.

    Usage:
        async with track_remote_call("upsert") as tracker:
            result = await adapter.upsert(payload)
            tracker["status"] = result.operation.value

    Records duration and a request count labeled with the final status
    ("error" if the block raised).
    """
    tracker: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        remote_requests_total.labels(operation=operation, status=tracker["status"]).inc()
        remote_request_duration_seconds.labels(operation=operation).observe(duration)


def record_queue_depth(by_status: dict[str, int]) -> None:
    """Publish queue counts to the depth gauge."""
    for status, count in by_status.items():
        sync_queue_depth.labels(status=status).set(count)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with sync job tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Lift sync job context from structlog contextvars into tags."""
        import structlog

        context = structlog.contextvars.get_contextvars()
        tags = event.setdefault("tags", {})
        for key in ("job_id", "entity_type", "entity_id", "request_id"):
            if key in context:
                tags[key] = str(context[key])
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


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
