"""
FastAPI application for the mail sync engine.

Endpoints for:
- Connecting mailboxes (OAuth and IMAP) and triggering syncs
- Provider push notifications
- Push subscription administration
- Health checks

Sync work itself runs in ``mailsync.workers.sync_worker``.
"""

import logging
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mailsync import __version__
from mailsync.core.config import settings
from mailsync.core.database import DatabaseManager
from mailsync.core.exceptions import (
    AuthError,
    MailSyncError,
    SubscriptionError,
    TransientProviderError,
)
from mailsync.routers import accounts, subscriptions, webhooks
from mailsync.services.engine import SyncEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    logger.info("Starting mail sync API...")

    db_manager = DatabaseManager()
    await db_manager.connect()
    app.state.db = db_manager

    engine = SyncEngine(db_manager.db, settings)
    try:
        await engine.ensure_indexes()
    except Exception as e:
        logger.warning(f"Failed to ensure indexes: {e}")
    app.state.engine = engine

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    logger.info("Shutting down mail sync API...")
    await db_manager.disconnect()


def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


def _error_response(status_code: int, error: str, message: str, error_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "error_id": error_id},
    )


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        error_id = _get_error_id()
        logger.error(
            f"Validation error [{error_id}] on {request.method} {request.url.path}: "
            f"{exc.errors()}"
        )
        return _error_response(
            422, "validation_error",
            "Invalid request data. Please check your input and try again.", error_id,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error_id = _get_error_id()
        logger.warning(
            f"HTTP {exc.status_code} [{error_id}] on {request.method} {request.url.path}: "
            f"{exc.detail}"
        )
        return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), error_id)

    @app.exception_handler(MailSyncError)
    async def mail_sync_exception_handler(request: Request, exc: MailSyncError):
        error_id = _get_error_id()
        if isinstance(exc, AuthError):
            status_code, error = 401, "auth_error"
        elif isinstance(exc, (TransientProviderError, SubscriptionError)):
            status_code, error = 502, "provider_error"
        else:
            status_code, error = 500, "sync_error"
        logger.error(
            f"{type(exc).__name__} [{error_id}] on {request.method} {request.url.path}: {exc}"
        )
        return _error_response(status_code, error, str(exc), error_id)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = _get_error_id()
        logger.error(
            f"Unhandled {type(exc).__name__} [{error_id}] on {request.method} {request.url.path}: {exc}\n"
            f"{traceback.format_exc()}"
        )
        message = f"Request failed. Quote error ID {error_id} when reporting this."
        if settings.debug:
            message = f"{message} ({type(exc).__name__}: {exc})"
        return _error_response(500, "internal_server_error", message, error_id)


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the application. Tests skip the lifespan and set ``app.state.engine`` themselves."""
    app = FastAPI(
        title="Mail Sync API",
        description="Mailbox synchronization for Gmail, Outlook and IMAP accounts.",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(webhooks.router)
    app.include_router(accounts.router)
    app.include_router(subscriptions.router)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {"name": "Mail Sync API", "version": __version__, "status": "running", "docs": "/docs"}

    @app.get("/health", tags=["Health"])
    async def health(request: Request):
        """Quick health check for load balancers."""
        db_manager = getattr(request.app.state, "db", None)
        database = "unknown" if db_manager is None else ("up" if await db_manager.ping() else "down")
        return {"status": "healthy", "database": database}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
    )
