"""Unit tests for observability: Prometheus metrics, Sentry, middleware, health.

Tests cover:
- Conflict counters and the track_detection context manager
- init_sentry configuration and staff tagging in before_send
- LoggingMiddleware request id propagation and MetricsMiddleware route labels
- Liveness and readiness endpoints
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.dealreg.api.middleware.logging import LoggingMiddleware
from src.dealreg.api.v1 import health
from src.dealreg.core.monitoring import (
    MetricsMiddleware,
    conflict_detection_runs_total,
    conflict_persist_failures_total,
    conflict_resolutions_total,
    conflicts_detected_total,
    get_metrics_response,
    http_requests_total,
    init_sentry,
    record_conflict_detected,
    record_persist_failure,
    record_resolution,
    track_detection,
)


# ── Conflict metrics ─────────────────────────────────────────────────────────


class TestConflictMetrics:
    def test_detected_counter_splits_created_and_existing(self):
        created = conflicts_detected_total.labels(
            conflict_type="timing_conflict", severity="low", outcome="created"
        )
        existing = conflicts_detected_total.labels(
            conflict_type="timing_conflict", severity="low", outcome="existing"
        )
        before_created = created._value.get()
        before_existing = existing._value.get()

        record_conflict_detected("timing_conflict", "low", True)
        record_conflict_detected("timing_conflict", "low", False)
        record_conflict_detected("timing_conflict", "low", False)

        assert created._value.get() == before_created + 1
        assert existing._value.get() == before_existing + 2

    def test_persist_failure_counter(self):
        counter = conflict_persist_failures_total.labels(conflict_type="territory_overlap")
        before = counter._value.get()
        record_persist_failure("territory_overlap")
        assert counter._value.get() == before + 1

    def test_resolution_counter_counts_batch(self):
        counter = conflict_resolutions_total.labels(resolution="resolved")
        before = counter._value.get()
        record_resolution("resolved", 3)
        assert counter._value.get() == before + 3

    @pytest.mark.asyncio
    async def test_track_detection_statuses(self):
        def value(status):
            return conflict_detection_runs_total.labels(status=status)._value.get()

        before = {s: value(s) for s in ("success", "partial", "error")}

        async with track_detection():
            pass
        async with track_detection() as tracker:
            tracker["partial"] = True
        with pytest.raises(RuntimeError):
            async with track_detection():
                raise RuntimeError("boom")

        assert value("success") == before["success"] + 1
        assert value("partial") == before["partial"] + 1
        assert value("error") == before["error"] + 1

    def test_metrics_response(self):
        response = get_metrics_response()
        assert response.media_type.startswith("text/plain")
        assert b"conflict_detection_runs_total" in response.body


# ── Sentry ───────────────────────────────────────────────────────────────────


class TestInitSentry:
    def test_production_sample_rate(self):
        with patch("src.dealreg.core.monitoring.sentry_sdk.init") as init:
            init_sentry("https://key@sentry.example/1", "production")
        kwargs = init.call_args.kwargs
        assert kwargs["environment"] == "production"
        assert kwargs["traces_sample_rate"] == 0.1

    def test_before_send_tags_staff(self):
        with patch("src.dealreg.core.monitoring.sentry_sdk.init") as init:
            init_sentry("https://key@sentry.example/1", "development")
        before_send = init.call_args.kwargs["before_send"]

        tagged = before_send({"request": {"headers": {"x-staff-id": "staff-7"}}}, {})
        untagged = before_send({"request": {"headers": {}}}, {})

        assert tagged["tags"] == {"staff_id": "staff-7"}
        assert "tags" not in untagged


# ── Middleware ───────────────────────────────────────────────────────────────


def _make_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/items/{item_id}")
    async def get_item(item_id: str):
        return {"id": item_id}

    return app


@pytest.mark.asyncio
async def test_request_id_echoed_or_generated():
    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        given = await client.get("/items/1", headers={"X-Request-ID": "req-123"})
        generated = await client.get("/items/2")

    assert given.headers["X-Request-ID"] == "req-123"
    assert generated.headers["X-Request-ID"]
    assert generated.headers["X-Request-ID"] != "req-123"


@pytest.mark.asyncio
async def test_metrics_use_route_template():
    counter = http_requests_total.labels(
        method="GET", endpoint="/items/{item_id}", status_code="200"
    )
    before = counter._value.get()

    transport = ASGITransport(app=_make_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.get("/items/a")
        await client.get("/items/b")

    assert counter._value.get() == before + 2


# ── Health ───────────────────────────────────────────────────────────────────


def _health_app() -> FastAPI:
    app = FastAPI()
    app.include_router(health.router)
    return app


@pytest.mark.asyncio
async def test_liveness():
    transport = ASGITransport(app=_health_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.parametrize(
    ("checks", "code", "status"),
    [
        ({"database": "ok", "redis": "ok"}, 200, "ready"),
        ({"database": "ok", "redis": "error"}, 200, "degraded"),
        ({"database": "error", "redis": "ok"}, 503, "degraded"),
    ],
)
@pytest.mark.asyncio
async def test_readiness(checks, code, status):
    transport = ASGITransport(app=_health_app())
    with patch.object(health, "_check_dependencies", AsyncMock(return_value=checks)):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health/ready")
    assert response.status_code == code
    assert response.json()["status"] == status
