"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring of the sync engine (queue store, change detector, worker,
maintenance scheduler, webhook receiver), and the v1 API router.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import Settings, get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.opms.repository import OpmsRepository
from src.app.sync.detector import ChangeDetector
from src.app.sync.netsuite import NetSuiteAdapter, RateLimiter
from src.app.sync.processor import QueueProcessor
from src.app.sync.rate_limiter import AsyncRateLimiter, RedisRateLimiter
from src.app.sync.scheduler import SyncScheduler
from src.app.sync.store import SyncQueueStore
from src.app.sync.transformer import DataTransformer
from src.app.sync.webhook import WebhookReceiver


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """In-process limiter by default; a Redis slot when several workers share one account."""
    if settings.SYNC_RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimiter(get_redis_pool(), settings.SYNC_RATE_LIMIT_PER_SECOND)
    return AsyncRateLimiter(settings.SYNC_RATE_LIMIT_PER_SECOND)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine; stop them on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync Engine ─────────────────────────────────────────────────────
    # The queue store, detector and webhook receiver only need the database.
    # The worker additionally needs NetSuite credentials; without them the
    # app still serves webhooks and operator endpoints.

    app.state.sync_store = None
    app.state.change_detector = None
    app.state.opms_repository = None
    app.state.webhook_receiver = None
    app.state.queue_processor = None
    app.state.sync_scheduler = None
    app.state.sync_adapter = None
    app.state.sync_worker_task = None

    try:
        store = SyncQueueStore(get_session, default_max_retries=settings.SYNC_MAX_RETRIES)
        detector = ChangeDetector(store, get_session, sync_actor_id=settings.SYNC_ACTOR_ID)
        repository = OpmsRepository(get_session, detector)
        app.state.sync_store = store
        app.state.change_detector = detector
        app.state.opms_repository = repository
        app.state.webhook_receiver = WebhookReceiver(
            get_session, repository, store, sync_actor_id=settings.SYNC_ACTOR_ID
        )
        log.info("sync.components_initialized")
    except Exception:
        log.warning("sync.components_init_failed", exc_info=True)

    if app.state.sync_store is not None:
        if settings.netsuite_configured():
            try:
                adapter = NetSuiteAdapter.from_settings(settings, build_rate_limiter(settings))
                processor = QueueProcessor(
                    store=app.state.sync_store,
                    transformer=DataTransformer(),
                    adapter=adapter,
                    session_factory=get_session,
                    enabled=settings.SYNC_ENABLED,
                    dry_run=settings.SYNC_DRY_RUN,
                    batch_size=settings.SYNC_BATCH_SIZE,
                    poll_interval=settings.SYNC_POLL_INTERVAL_SECONDS,
                    retry_base_seconds=settings.SYNC_RETRY_BASE_SECONDS,
                    retry_max_seconds=settings.SYNC_RETRY_MAX_SECONDS,
                )
                app.state.sync_adapter = adapter
                app.state.queue_processor = processor
                app.state.sync_worker_task = asyncio.create_task(processor.run_forever())
            except Exception:
                log.warning("sync.worker_init_failed", exc_info=True)
        else:
            log.warning("sync.netsuite_not_configured", worker="disabled")

        try:
            scheduler = SyncScheduler(
                app.state.change_detector,
                app.state.sync_store,
                polling_interval_seconds=settings.POLLING_INTERVAL_SECONDS,
                stale_after_seconds=settings.SYNC_STALE_AFTER_SECONDS,
                retention_days=settings.COMPLETED_JOB_RETENTION_DAYS,
            )
            scheduler.start()
            app.state.sync_scheduler = scheduler
        except Exception:
            log.warning("sync.scheduler_init_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = app.state.sync_scheduler
    if scheduler is not None:
        scheduler.stop()

    worker_task = app.state.sync_worker_task
    if worker_task is not None and not worker_task.done():
        app.state.queue_processor.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=settings.NETSUITE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass
        log.info("sync.worker_stopped")

    adapter = app.state.sync_adapter
    if adapter is not None:
        try:
            await adapter.close()
        except Exception:
            log.warning("sync.adapter_close_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="OPMS NetSuite Sync",
        version="0.1.0",
        description="Bidirectional item sync between OPMS and NetSuite",
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

    # Health probes, /api/v1/sync and /api/v1/webhooks
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
