from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from pulse.api.routes import admin, notifications, tickets
from pulse.core.config import Settings, get_settings
from pulse.core.logging import configure_logging, init_tracer, shutdown_tracer
from pulse.metrics import metrics_registry
from pulse.notifications import (
    DispatchConfig,
    DispatchEngine,
    GatewayConfig,
    MailTransport,
    NotificationCoordinator,
    NotificationTemplate,
    RecipientConfig,
    SoapMailGateway,
)
from pulse.tickets import AuditLog, InMemoryTicketRepository, LifecycleEngine, SqlTicketRepository, TicketRepository
from pulse.workflow import TicketWorkflow


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://") :]
    return dsn


def build_notification_stack(settings: Settings) -> tuple[DispatchEngine, NotificationCoordinator]:
    template = NotificationTemplate(
        system_url=settings.system_url, copy_subject_prefix=settings.mail_copy_subject_prefix
    )
    transport = MailTransport(SoapMailGateway(GatewayConfig.from_settings(settings)))
    dispatcher = DispatchEngine(
        transport,
        template,
        config=DispatchConfig.from_settings(settings),
        registry=metrics_registry,
    )
    coordinator = NotificationCoordinator(dispatcher, template, RecipientConfig.from_settings(settings))
    return dispatcher, coordinator


async def build_repository(settings: Settings) -> tuple[TicketRepository, AsyncEngine | None]:
    audit_log = AuditLog(attempts=settings.audit_write_attempts, registry=metrics_registry)
    if settings.storage_backend == "memory":
        return InMemoryTicketRepository(audit_log=audit_log), None

    engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), future=True)
    try:
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
        repository = SqlTicketRepository(session_factory, engine=engine, audit_log=audit_log)
        await repository.ensure_schema()
    except BaseException:
        await engine.dispose()
        raise
    return repository, engine


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.metrics_registry = metrics_registry

    dispatcher, coordinator = build_notification_stack(settings)
    app.state.dispatch_engine = dispatcher
    app.state.notification_coordinator = coordinator

    db_engine = None
    app.state.ticket_workflow = None
    try:
        repository, db_engine = await build_repository(settings)
        engine = LifecycleEngine(repository, registry=metrics_registry)
        app.state.ticket_workflow = TicketWorkflow(engine, coordinator)
    except Exception:
        logging.getLogger(__name__).exception("Ticket storage unavailable; ticket routes will return 503")
    try:
        yield
    finally:
        await coordinator.drain()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(tickets.router)
    app.include_router(notifications.router)
    app.include_router(admin.router)
    return app


app = create_app()
