"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring for the reconciliation engine and its observability sinks,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the engine and sinks on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    app.state.settings = settings

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    http = httpx.AsyncClient(timeout=settings.REMOTE_CALL_TIMEOUT)
    app.state.http = http

    # Each module is wrapped in its own try/except so a single failure
    # (e.g. Postgres unreachable) does not prevent the webhooks from starting.

    # Execution trace store
    try:
        from src.app.observability.repository import ExecutionRepository

        await init_db()
        app.state.execution_repository = ExecutionRepository(session_factory=get_session)
        log.info("startup.execution_store_initialized")
    except Exception:
        log.warning("startup.execution_store_init_failed", exc_info=True)
        app.state.execution_repository = None

    # Time-series sink (optional)
    app.state.timeseries = None
    if settings.CLICKHOUSE_URL:
        try:
            from src.app.observability.timeseries import ClickHouseSink

            sink = ClickHouseSink(
                http,
                settings.CLICKHOUSE_URL,
                user=settings.CLICKHOUSE_USER,
                password=settings.CLICKHOUSE_PASSWORD,
                database=settings.CLICKHOUSE_DATABASE,
            )
            await sink.ensure_schema()
            app.state.timeseries = sink
            log.info("startup.timeseries_initialized")
        except Exception:
            log.warning("startup.timeseries_init_failed", exc_info=True)

    # Flow log trail (Redis)
    try:
        from src.app.events.trail import FlowLogTrail

        app.state.flow_trail = FlowLogTrail(get_redis_pool(), ttl_seconds=settings.FLOW_LOG_TTL_SECONDS)
    except Exception:
        log.warning("startup.flow_trail_init_failed", exc_info=True)
        app.state.flow_trail = None

    # Dispatcher, recorder, engine and flows
    try:
        from src.app.core.retry import RetryPolicy
        from src.app.events.bus import EventDispatcher
        from src.app.observability.notifications import FinalityNotifier, MailgunNotifier
        from src.app.observability.recorder import ExecutionRecorder
        from src.app.sync.clients import HttpSourceClient, HttpTargetClient
        from src.app.sync.engine import ReconciliationEngine
        from src.app.sync.flows import SyncFlows, register_finality_handler
        from src.app.sync.loop_guard import LoopGuard
        from src.app.sync.users import UserDirectory

        policy = RetryPolicy.from_settings(settings)
        users = UserDirectory.from_settings(settings)
        dispatcher = EventDispatcher.from_settings(get_redis_pool(), settings)

        recorder = ExecutionRecorder(
            repository=app.state.execution_repository,
            timeseries=app.state.timeseries,
            trail=app.state.flow_trail,
            on_finality=dispatcher.publish_finality,
        )

        source = HttpSourceClient(
            http,
            settings.SOURCE_API_URL,
            account_id=settings.SOURCE_ACCOUNT_ID,
            auth_token=settings.SOURCE_AUTH_TOKEN,
            policy=policy,
        )
        target = HttpTargetClient(
            http,
            settings.TARGET_API_URL,
            token=settings.TARGET_API_TOKEN,
            folder_ids=settings.get_target_folder_ids(),
            custom_field_ids=settings.get_target_custom_field_ids(),
            policy=policy,
        )
        engine = ReconciliationEngine(
            source,
            target,
            users,
            status_ids=settings.get_target_status_ids(),
            loop_guard=LoopGuard(users),
        )
        SyncFlows(engine, recorder).register(dispatcher)

        mailer = None
        if settings.MAILGUN_API_KEY and settings.MAILGUN_DOMAIN and settings.NOTIFICATION_RECIPIENT:
            mailer = MailgunNotifier(
                http,
                api_key=settings.MAILGUN_API_KEY,
                domain=settings.MAILGUN_DOMAIN,
                sender=settings.NOTIFICATION_SENDER,
                recipient=settings.NOTIFICATION_RECIPIENT,
                api_url=settings.MAILGUN_API_URL,
                policy=policy,
            )
        register_finality_handler(dispatcher, FinalityNotifier(app.state.flow_trail, mailer).handle)

        dispatcher.start()
        app.state.dispatcher = dispatcher
        app.state.recorder = recorder
        app.state.engine = engine
        log.info(
            "startup.sync_initialized",
            topics=len(dispatcher.topics()),
            users=len(users),
            notifications_enabled=mailer is not None,
        )
    except Exception:
        log.warning("startup.sync_init_failed", exc_info=True)
        app.state.dispatcher = None

    # Housekeeping loops (orphan traces, retention)
    if app.state.execution_repository is not None:
        try:
            from src.app.observability.housekeeping import (
                setup_housekeeping_tasks,
                start_housekeeping_background,
                task_intervals,
            )

            bus = app.state.dispatcher
            publish_finality = bus.publish_finality if bus is not None else None
            tasks = setup_housekeeping_tasks(app.state.execution_repository, settings, publish_finality)
            start_housekeeping_background(tasks, task_intervals(settings), app.state)
        except Exception:
            log.warning("startup.housekeeping_init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    for task_ref in getattr(app.state, "housekeeping_tasks", None) or []:
        task_ref.cancel()

    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        try:
            await dispatcher.stop()
        except Exception:
            log.warning("shutdown.dispatcher_stop_failed", exc_info=True)

    await http.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Sync Bridge API",
        version="0.1.0",
        description="Cross-system reconciliation between the shop system and the project board",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
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

    # Health checks at the root, everything else under /api/v1
    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
