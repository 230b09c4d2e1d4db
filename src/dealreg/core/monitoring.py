"""Prometheus metrics, Sentry integration, and conflict engine tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with staff-aware before_send callback
- track_detection(): Context manager for detection pass metrics
- record_* helpers: conflict lifecycle counters
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
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

# ── Conflict Metrics ─────────────────────────────────────────────────────────

conflict_detection_runs_total = Counter(
    "conflict_detection_runs_total",
    "Total conflict detection passes",
    ["status"],
)

conflict_detection_duration_seconds = Histogram(
    "conflict_detection_duration_seconds",
    "Conflict detection pass duration in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

conflicts_detected_total = Counter(
    "conflicts_detected_total",
    "Conflicts matched by the rule set",
    ["conflict_type", "severity", "outcome"],
)

conflict_persist_failures_total = Counter(
    "conflict_persist_failures_total",
    "Matched conflicts that could not be written to the store",
    ["conflict_type"],
)

conflict_resolutions_total = Counter(
    "conflict_resolutions_total",
    "Conflicts moved to a terminal resolution status",
    ["resolution"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Records request count and duration per method/endpoint. Skips the
    /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern keeps cardinality bounded (ids stay out of labels)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

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


# ── Conflict Metrics Helpers ─────────────────────────────────────────────────


@asynccontextmanager
async def track_detection() -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one detection pass.

    Usage:
        async with track_detection() as tracker:
            result = await run_pass(...)
            tracker["partial"] = bool(result.failed)

    Records duration and a run counter labelled success, partial or error.
    """
    tracker: dict[str, Any] = {"partial": False}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        conflict_detection_duration_seconds.observe(time.perf_counter() - start_time)
        if status == "success" and tracker.get("partial"):
            status = "partial"
        conflict_detection_runs_total.labels(status=status).inc()


def record_conflict_detected(conflict_type: str, severity: str, created: bool) -> None:
    conflicts_detected_total.labels(
        conflict_type=conflict_type,
        severity=severity,
        outcome="created" if created else "existing",
    ).inc()


def record_persist_failure(conflict_type: str) -> None:
    conflict_persist_failures_total.labels(conflict_type=conflict_type).inc()


def record_resolution(resolution: str, count: int = 1) -> None:
    conflict_resolutions_total.labels(resolution=resolution).inc(count)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with staff-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the acting staff member when the request carried one."""
        request = event.get("request") or {}
        headers = request.get("headers") or {}
        staff_id = headers.get("X-Staff-Id") or headers.get("x-staff-id")
        if staff_id:
            event.setdefault("tags", {})["staff_id"] = staff_id
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
