"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring for the sync engine and its operator surfaces, and the v1
API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.integration_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.integration_sync.api.v1.router import router as v1_router
from src.integration_sync.config import get_settings
from src.integration_sync.core.database import close_db, get_session, init_db
from src.integration_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.integration_sync.core.redis import close_redis, get_redis_pool

_COMPONENTS = (
    "run_ledger",
    "config_store",
    "provider_registry",
    "processing_queue",
    "sync_engine",
    "dead_letter_manager",
    "backfill_manager",
    "slo_monitor",
    "health_monitor",
    "pipeline_reporter",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the engine on startup, release resources on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    try:
        from src.integration_sync.integrations.registry import create_provider_registry
        from src.integration_sync.operations.backfill import BackfillManager
        from src.integration_sync.operations.dead_letter import DeadLetterManager
        from src.integration_sync.operations.health import SyntheticHealthMonitor
        from src.integration_sync.operations.pipeline import PipelineStatusReporter
        from src.integration_sync.operations.slo import QueueSLOMonitor, SLOThresholds
        from src.integration_sync.processing.queue import RedisStreamProcessingQueue
        from src.integration_sync.runs.repository import SqlIntegrationConfigStore, SqlRunLedger
        from src.integration_sync.sync.engine import SyncEngine
        from src.integration_sync.sync.retry import RetryPolicy

        run_ledger = SqlRunLedger(session_factory=get_session)
        config_store = SqlIntegrationConfigStore(session_factory=get_session)
        registry = create_provider_registry(settings)
        processing_queue = RedisStreamProcessingQueue(
            get_redis_pool(),
            stream=settings.PROCESSING_QUEUE_STREAM,
            maxlen=settings.PROCESSING_QUEUE_MAXLEN,
        )
        engine = SyncEngine(
            run_ledger,
            config_store,
            registry,
            processing_queue,
            retry_policy=RetryPolicy.from_settings(settings),
            max_pages=settings.SYNC_MAX_PAGES,
        )

        app.state.run_ledger = run_ledger
        app.state.config_store = config_store
        app.state.provider_registry = registry
        app.state.processing_queue = processing_queue
        app.state.sync_engine = engine
        app.state.dead_letter_manager = DeadLetterManager(run_ledger, config_store, engine)
        app.state.backfill_manager = BackfillManager(run_ledger, config_store, registry, engine)
        app.state.slo_monitor = QueueSLOMonitor(run_ledger, config_store, SLOThresholds.from_settings(settings))
        app.state.health_monitor = SyntheticHealthMonitor(
            run_ledger,
            processing_queue,
            registry,
            probe_timeout=settings.HEALTH_PROBE_TIMEOUT_SECONDS,
        )
        app.state.pipeline_reporter = PipelineStatusReporter(run_ledger)
        log.info("sync_engine.initialized", providers=[p.value for p, _ in registry.items()])
    except Exception as exc:
        log.warning("sync_engine.init_failed", error=str(exc))
        for name in _COMPONENTS:
            setattr(app.state, name, None)

    if settings.SCHEDULER_ENABLED and getattr(app.state, "sync_engine", None) is not None:
        from src.integration_sync.scheduler import setup_sync_scheduler, start_scheduler_background

        tasks = setup_sync_scheduler(app.state.sync_engine, settings)
        await start_scheduler_background(tasks, app.state)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler_tasks = getattr(app.state, "sync_scheduler_tasks", None)
    if scheduler_tasks:
        for task_ref in scheduler_tasks:
            task_ref.cancel()
        await asyncio.gather(*scheduler_tasks, return_exceptions=True)
        log.info("scheduler.stopped")

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Integration Sync Engine",
        version="0.1.0",
        description="Idempotent provider syncs with a durable run ledger and operator tooling",
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

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
