"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events wiring the repositories and conflict services onto app.state,
and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealreg.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealreg.api.v1.router import router as v1_router
from src.dealreg.config import get_settings
from src.dealreg.core.database import close_db, get_session, init_db
from src.dealreg.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealreg.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services; drain and close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Conflict notifications (best effort) ───────────────────────────
    try:
        from src.dealreg.deals.notifications import ConflictNotifier
        from src.dealreg.events.bus import EventBus

        app.state.conflict_notifier = ConflictNotifier(
            bus=EventBus(get_redis_pool()),
            stream=settings.CONFLICT_EVENTS_STREAM,
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
        log.info("conflict_notifier_initialized", stream=settings.CONFLICT_EVENTS_STREAM)
    except Exception:
        log.warning("conflict_notifier_init_failed", exc_info=True)
        app.state.conflict_notifier = None

    # ── Deal registration services ─────────────────────────────────────
    try:
        from src.dealreg.deals.detection import ConflictDetectionEngine
        from src.dealreg.deals.repository import ConflictRepository, DealRepository
        from src.dealreg.deals.resolution import ConflictResolutionService
        from src.dealreg.deals.retry import RetryPolicy
        from src.dealreg.deals.rules import RuleConfig

        retry_policy = RetryPolicy.from_settings(settings)
        deal_repository = DealRepository(
            session_factory=get_session,
            timeout=settings.DB_OPERATION_TIMEOUT_SECONDS,
        )
        conflict_repository = ConflictRepository(
            session_factory=get_session,
            timeout=settings.DB_OPERATION_TIMEOUT_SECONDS,
            retry_policy=retry_policy,
        )
        app.state.deal_repository = deal_repository
        app.state.conflict_repository = conflict_repository

        app.state.detection_engine = ConflictDetectionEngine(
            deal_repository=deal_repository,
            conflict_repository=conflict_repository,
            config=RuleConfig.from_settings(settings),
            retry_policy=retry_policy,
            notifier=app.state.conflict_notifier,
            prefilter_by_territory=settings.CONFLICT_PREFILTER_BY_TERRITORY,
        )
        app.state.resolution_service = ConflictResolutionService(
            deal_repository=deal_repository,
            conflict_repository=conflict_repository,
            retry_policy=retry_policy,
            notifier=app.state.conflict_notifier,
        )
        log.info("deal_registration_initialized")
    except Exception:
        log.warning("deal_registration_init_failed", exc_info=True)
        # Set all to None for graceful 503 responses
        app.state.deal_repository = None
        app.state.conflict_repository = None
        app.state.detection_engine = None
        app.state.resolution_service = None

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    notifier = getattr(app.state, "conflict_notifier", None)
    if notifier is not None:
        await notifier.drain()

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Registration API",
        version="0.1.0",
        description="Channel partner deal registration with conflict detection and resolution",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
