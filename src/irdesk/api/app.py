"""FastAPI application entry point."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from irdesk.api.exceptions import register_exception_handlers
from irdesk.api.routes import incidents
from irdesk.audit.sink import InMemoryAuditSink, audit_forwarder
from irdesk.config import settings
from irdesk.incidents.manager import IncidentResponseManager
from irdesk.incidents.store import IncidentStore, InMemoryIncidentStore
from irdesk.messaging.bus import IncidentEventBus
from irdesk.messaging.topics import AUDIT_RECORD, NOTIFICATION_EVENTS
from irdesk.notifications.base import (
    LogNotificationChannel,
    NotificationChannel,
    notification_forwarder,
)
from irdesk.notifications.webhook import WebhookNotificationChannel

logger = structlog.get_logger()


def _notification_channel() -> NotificationChannel:
    if settings.webhook_url:
        return WebhookNotificationChannel(
            url=settings.webhook_url,
            secret=settings.webhook_secret,
            timeout=settings.webhook_timeout,
        )
    return LogNotificationChannel()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup and shutdown lifecycle."""
    logger.info("irdesk_starting", environment=settings.environment)

    # ── Incident store ───────────────────────────────────────────
    engine = None
    manager: IncidentResponseManager | None = getattr(app.state, "manager", None)
    if manager is None:
        store: IncidentStore
        if settings.database_url:
            from irdesk.db import (
                SqlIncidentStore,
                create_async_engine,
                create_schema,
                create_session_factory,
            )

            engine = create_async_engine(settings.database_url)
            await create_schema(engine)
            sql_store = SqlIncidentStore(create_session_factory(engine))
            await sql_store.load()
            store = sql_store
            logger.info("incident_store_initialized", backend="sql")
        else:
            store = InMemoryIncidentStore()
            logger.info("incident_store_initialized", backend="memory")
        bus = IncidentEventBus(queue_size=settings.subscriber_queue_size)
        manager = IncidentResponseManager(store, settings=settings, bus=bus)
        app.state.manager = manager
    bus = manager.bus

    # ── Event bus subscribers ────────────────────────────────────
    audit_sink = InMemoryAuditSink()
    bus.subscribe("audit", audit_forwarder(audit_sink), event_types={AUDIT_RECORD})
    bus.subscribe(
        "notifications",
        notification_forwarder(_notification_channel()),
        event_types=NOTIFICATION_EVENTS,
    )
    await bus.start()
    app.state.audit_sink = audit_sink

    # ── Scheduler ─────────────────────────────────────────────────
    from irdesk.scheduler import JobScheduler
    from irdesk.scheduler.jobs import (
        compliance_report_job,
        escalation_sweep_job,
        metrics_refresh_job,
        retention_sweep_job,
    )

    scheduler = JobScheduler()
    scheduler.add_job(
        "escalation_sweep",
        escalation_sweep_job,
        interval_seconds=settings.escalation_sweep_interval_seconds,
        manager=manager,
    )
    scheduler.add_job(
        "retention_sweep",
        retention_sweep_job,
        interval_seconds=settings.retention_sweep_interval_seconds,
        manager=manager,
    )
    scheduler.add_job(
        "metrics_refresh",
        metrics_refresh_job,
        interval_seconds=settings.metrics_refresh_interval_seconds,
        manager=manager,
    )
    scheduler.add_job(
        "compliance_reports",
        compliance_report_job,
        interval_seconds=settings.compliance_report_interval_seconds,
        manager=manager,
    )
    await scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler_initialized", jobs=len(scheduler.list_jobs()))

    yield

    logger.info("irdesk_shutting_down")
    await scheduler.stop()
    await bus.stop()
    await bus.unsubscribe("audit")
    await bus.unsubscribe("notifications")
    if engine is not None:
        await engine.dispose()


def create_app(manager: IncidentResponseManager | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Passing *manager* skips store construction in the lifespan.
    """
    app = FastAPI(
        title="IRDesk API",
        description="Security incident response manager",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )
    if manager is not None:
        app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-User-ID"],
    )
    register_exception_handlers(app)
    app.include_router(incidents.router, prefix=settings.api_prefix, tags=["Incidents"])

    @app.get("/health")
    async def health() -> dict[str, Any]:
        scheduler = getattr(app.state, "scheduler", None)
        manager_ = getattr(app.state, "manager", None)
        return {
            "status": "healthy",
            "version": settings.app_version,
            "event_bus": manager_.bus.stats() if manager_ is not None else [],
            "jobs": scheduler.list_jobs() if scheduler is not None else [],
        }

    return app


app = create_app()
