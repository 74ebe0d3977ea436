"""
FastAPI application factory.

Assembles the app, registers all routers & exception handlers, and
wires up lifecycle events.  Database schema is managed by Alembic —
NOT create_all.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError

from app.controllers.admin_controller import router as admin_router
from app.controllers.session_controller import router as session_router
from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.core.exceptions import SessionServiceError, StoreUnavailableError
from app.models import Base  # noqa: F401 — ensures all models are registered
from app.schemas import MessageResponse
from app.services.expiry_reaper import ExpiryReaper

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def session_error_handler(request: Request, exc: SessionServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=MessageResponse(detail=exc.detail).model_dump(),
    )


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unretried store failures still fail closed with a retryable 503."""
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=MessageResponse(detail=StoreUnavailableError.default_detail).model_dump(),
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(session_router)
    app.include_router(admin_router)

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(SessionServiceError, session_error_handler)
    app.add_exception_handler(OperationalError, store_error_handler)
    app.add_exception_handler(InterfaceError, store_error_handler)

    reaper = ExpiryReaper(
        async_session_factory,
        interval_seconds=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
    )
    app.state.expiry_reaper = reaper

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Start the background expiry sweep.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        if settings.EXPIRY_SWEEP_ENABLED:
            reaper.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await reaper.stop()
        await engine.dispose()
        logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
