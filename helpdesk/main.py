"""
FastAPI application factory.

Assembles the app, registers all routers and the domain-error
handlers, and wires up lifecycle events.  Database schema is managed
by Alembic — NOT create_all.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from helpdesk.controllers.admin_controller import router as admin_router
from helpdesk.controllers.auth_controller import router as auth_router
from helpdesk.controllers.session_controller import router as session_router
from helpdesk.core.config import settings
from helpdesk.core.database import async_session_factory, engine
from helpdesk.core.errors import (
    InvalidCredentials,
    LockedOut,
    NotLocked,
    SessionNotFound,
    StorageUnavailable,
)
from helpdesk.models import Base  # noqa: F401 — ensures all models are registered

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidCredentials)
    async def invalid_credentials_handler(request: Request, exc: InvalidCredentials):
        # Same answer for unknown account, wrong password and disabled account
        return _error(status.HTTP_401_UNAUTHORIZED, exc.code, "Invalid email or password")

    @app.exception_handler(LockedOut)
    async def locked_out_handler(request: Request, exc: LockedOut):
        response = _error(
            status.HTTP_423_LOCKED,
            exc.code,
            "Too many failed attempts. Try again later.",
            remaining_seconds=exc.remaining_seconds,
        )
        response.headers["Retry-After"] = str(exc.remaining_seconds)
        return response

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
        logger.error("Storage unavailable while serving %s %s", request.method, request.url.path)
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.code,
            "Service temporarily unavailable. Please try again.",
        )

    @app.exception_handler(NotLocked)
    async def not_locked_handler(request: Request, exc: NotLocked):
        return _error(status.HTTP_409_CONFLICT, exc.code, "Subject is not locked")

    @app.exception_handler(SessionNotFound)
    async def session_not_found_handler(request: Request, exc: SessionNotFound):
        return _error(status.HTTP_404_NOT_FOUND, exc.code, "Session not found")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(session_router)
    app.include_router(admin_router)

    register_exception_handlers(app)

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """Seed permissions & roles on startup.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        # Auto-seed permissions & roles (idempotent)
        from helpdesk.rbac.permission_seed import seed

        async with async_session_factory() as session:
            await seed(session)
        logger.info("Permission seed complete.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await engine.dispose()
        logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
