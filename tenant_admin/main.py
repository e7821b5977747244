"""
FastAPI application factory.

Assembles the app, wires the impersonation subsystem (store, directory,
issuer, audit sink, manager, sweeper) from one session factory, and
ties the background workers to the app lifecycle.  Database schema is
managed by Alembic — NOT create_all.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_admin.controllers.impersonation_controller import router as impersonation_router
from tenant_admin.core.config import Settings, settings as default_settings
from tenant_admin.core.database import async_session_factory, engine
from tenant_admin.core.exceptions import ImpersonationError
from tenant_admin.models import Base  # noqa: F401  registers every table
from tenant_admin.models.base import Clock, utcnow
from tenant_admin.services.audit_service import DatabaseAuditWriter, QueuedAuditSink
from tenant_admin.services.credential_service import CredentialIssuer
from tenant_admin.services.directory_service import AccountScopeLookup, UserDirectory
from tenant_admin.services.impersonation_service import ImpersonationManager
from tenant_admin.services.session_store import SessionStore
from tenant_admin.services.sweeper import ExpirySweeper

logging.basicConfig(
    level=logging.DEBUG if default_settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def build_impersonation(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings = default_settings,
    clock: Clock = utcnow,
) -> tuple[ImpersonationManager, ExpirySweeper, QueuedAuditSink]:
    """Construct the impersonation subsystem around one session factory."""
    store = SessionStore(session_factory)
    audit_sink = QueuedAuditSink(
        DatabaseAuditWriter(session_factory),
        maxsize=settings.AUDIT_QUEUE_MAXSIZE,
        clock=clock,
    )
    manager = ImpersonationManager(
        store,
        UserDirectory(session_factory),
        AccountScopeLookup(session_factory),
        CredentialIssuer(
            store,
            secret_key=settings.SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            clock=clock,
        ),
        audit_sink,
        clock=clock,
        settings=settings,
    )
    sweeper = ExpirySweeper(manager, clock=clock, settings=settings)
    return manager, sweeper, audit_sink


def create_app(
    settings: Settings = default_settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    owns_engine = session_factory is None
    manager, sweeper, audit_sink = build_impersonation(
        session_factory or async_session_factory, settings, clock,
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.impersonation_manager = manager
    app.state.impersonation_sweeper = sweeper
    app.state.audit_sink = audit_sink

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(impersonation_router)

    # ── Error mapping ────────────────────────────────────────────────
    @app.exception_handler(ImpersonationError)
    async def impersonation_error_handler(request: Request, exc: ImpersonationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": exc.code},
            headers=exc.headers,
        )

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        audit_sink.start()
        if settings.IMPERSONATION_SWEEPER_ENABLED:
            sweeper.start()
        logger.info("Impersonation subsystem started.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await sweeper.stop()
        await audit_sink.stop()
        if owns_engine:
            await engine.dispose()
            logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "sweeper_running": sweeper.running}

    return app


app = create_app()
