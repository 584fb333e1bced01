"""Prometheus metrics, Sentry integration, and remote call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry for the FastAPI app
- track_remote_call(): Context manager for outbound API call metrics
- record_flow_outcome() / record_loop_skip(): reconciliation counters
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
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

# ── Remote Call Metrics ──────────────────────────────────────────────────────

remote_calls_total = Counter(
    "remote_calls_total",
    "Total outbound calls to external systems",
    ["service", "operation", "status"],
)

remote_call_duration_seconds = Histogram(
    "remote_call_duration_seconds",
    "Outbound call duration in seconds, retries included",
    ["service", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# ── Reconciliation Metrics ───────────────────────────────────────────────────

flow_executions_total = Counter(
    "flow_executions_total",
    "Completed flow executions by outcome",
    ["flow_name", "status"],
)

loop_prevention_skips_total = Counter(
    "loop_prevention_skips_total",
    "Writes skipped because the value already matched",
    ["flow_name", "field"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Records request count and duration per method/endpoint.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Skip metrics for the /metrics endpoint itself
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


# ── Remote Call Helper ───────────────────────────────────────────────────────


@asynccontextmanager
async def track_remote_call(
    service: str,
    operation: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that times an outbound call.

    Usage:
        async with track_remote_call("target", "update_task") as tracker:
            task = await client.update_task(...)
            tracker["http_status"] = 200

    On exit the tracker holds ``duration_ms`` and ``status`` ("success",
    "failed" or "timeout") so the caller can hand it to the execution
    recorder after the block, whether or not the call raised.
    """
    tracker: dict[str, Any] = {
        "duration_ms": 0,
        "status": "success",
        "http_status": None,
        "error": None,
    }
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception as exc:
        tracker["status"] = "timeout" if getattr(exc, "timed_out", False) else "failed"
        tracker["error"] = exc
        tracker["http_status"] = tracker["http_status"] or getattr(exc, "status_code", None)
        raise
    finally:
        duration = time.perf_counter() - start_time
        tracker["duration_ms"] = int(duration * 1000)

        remote_calls_total.labels(
            service=service,
            operation=operation,
            status=tracker["status"],
        ).inc()

        remote_call_duration_seconds.labels(
            service=service,
            operation=operation,
        ).observe(duration)


def record_flow_outcome(flow_name: str, status: str) -> None:
    """Count a flow reaching finality."""
    flow_executions_total.labels(flow_name=flow_name, status=status).inc()


def record_loop_skip(flow_name: str, field: str) -> None:
    """Count a write skipped by the loop guard."""
    loop_prevention_skips_total.labels(flow_name=flow_name, field=field).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    # Set sample rate based on environment
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
