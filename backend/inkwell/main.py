"""
Inkwell Backend: FastAPI Application Factory
============================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() builds the service graph (blob store, OCR dispatcher,
       dispatch pool, lifecycle, scheduler), stores it on app.state, and
       registers middleware, exception handlers and routes. The lifespan
       starts and stops the background parts.
Who:   uvicorn (`uvicorn inkwell.main:app`) and the test suite, which
       passes its own session factory, blob store and dispatcher.

Application Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │  Middleware:  Request ID → Logging → CORS                     │
    │                                                              │
    │  Routes:      /api/assets/*   /api/internal/ocr/*   /health  │
    │                        │                │                    │
    │               ┌────────▼────────────────▼──────┐             │
    │               │         AssetLifecycle         │             │
    │               └──┬──────────┬───────────────┬──┘             │
    │        AssetStore│ BlobStore│ OcrDispatchPool│               │
    │                  │          │   └─▶ HttpOcrDispatcher        │
    │  Background:  OcrDispatchPool workers, ReconciliationScheduler│
    └──────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, config validation, dispatch workers, scheduler
    Shutdown: scheduler, dispatch workers, HTTP client, database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inkwell import __version__
from inkwell.config import settings
from inkwell.database import async_session_factory, dispose_engine
from inkwell.exceptions import (
    AlreadyConfirmedError,
    BlobNotUploadedError,
    BlobStorageError,
    ForbiddenError,
    InkwellError,
    NotFoundError,
    StorageFailureError,
    StorageQuotaExceededError,
    UploadIntentExpiredError,
    ValidationError,
)
from inkwell.middleware.logging import RequestLoggingMiddleware
from inkwell.middleware.request_id import RequestIDMiddleware, request_id_var
from inkwell.routes import assets, health, ocr_callbacks
from inkwell.services.asset_lifecycle import AssetLifecycle
from inkwell.services.blob_store import BlobStore, LocalBlobStore
from inkwell.services.dispatch_pool import OcrDispatchPool
from inkwell.services.ocr_dispatcher import HttpOcrDispatcher, OcrDispatcher
from inkwell.services.reconciliation import ReconciliationScheduler
from inkwell.services.upload_policy import NoteAccessChecker, UploadPolicy

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """Configure the root logger once, at startup, to stdout."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    state = app.state

    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Inkwell Backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Not fatal: uploads and health checks still work
        logger.error("Configuration error: %s", str(e))

    await state.dispatch_pool.start()
    if state.scheduler_enabled:
        state.scheduler.start()
    else:
        logger.warning("Reconciliation scheduler disabled; stuck extractions will not time out")

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Inkwell Backend shutting down...")
    await state.scheduler.stop()
    await state.dispatch_pool.stop()
    await state.dispatcher.aclose()
    if state.owns_engine:
        await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP status codes.

    Handler hierarchy:
        ValidationError             → 400
        StorageQuotaExceededError   → 400
        BlobNotUploadedError        → 400 (client may retry after uploading)
        ForbiddenError              → 403
        NotFoundError               → 404
        AlreadyConfirmedError       → 409
        UploadIntentExpiredError    → 409
        StorageFailureError         → 500 (generic message)
        BlobStorageError            → 500
        InkwellError (base)         → 500
        Exception (fallback)        → 500

    Internal details (SQL, paths, OS errors) are logged, never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        details = {"field": exc.field} if exc.field else None
        return _error_response(400, "validation_error", exc.message, details)

    @app.exception_handler(StorageQuotaExceededError)
    async def handle_quota_exceeded(request: Request, exc: StorageQuotaExceededError):
        return _error_response(
            400,
            "storage_quota_exceeded",
            exc.message,
            {"limit_bytes": exc.limit_bytes, "used_bytes": exc.used_bytes},
        )

    @app.exception_handler(BlobNotUploadedError)
    async def handle_blob_not_uploaded(request: Request, exc: BlobNotUploadedError):
        return _error_response(400, "blob_not_uploaded", exc.message)

    @app.exception_handler(ForbiddenError)
    async def handle_forbidden(request: Request, exc: ForbiddenError):
        logger.warning("[%s] Forbidden: %s", request_id_var.get(""), exc.context)
        return _error_response(403, "forbidden", exc.message)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(AlreadyConfirmedError)
    async def handle_already_confirmed(request: Request, exc: AlreadyConfirmedError):
        return _error_response(409, "already_confirmed", exc.message)

    @app.exception_handler(UploadIntentExpiredError)
    async def handle_intent_expired(request: Request, exc: UploadIntentExpiredError):
        return _error_response(409, "upload_intent_expired", exc.message)

    @app.exception_handler(StorageFailureError)
    async def handle_storage_failure(request: Request, exc: StorageFailureError):
        rid = request_id_var.get("")
        logger.error("[%s] Database error: %s | Context: %s", rid, exc.message, exc.context)
        return _error_response(
            500, "server_error", "An internal error occurred. Please try again later."
        )

    @app.exception_handler(BlobStorageError)
    async def handle_blob_storage_error(request: Request, exc: BlobStorageError):
        rid = request_id_var.get("")
        logger.error("[%s] Blob storage error: %s | Context: %s", rid, exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(InkwellError)
    async def handle_inkwell_error(request: Request, exc: InkwellError):
        rid = request_id_var.get("")
        logger.error("[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    blob_store: Optional[BlobStore] = None,
    dispatcher: Optional[OcrDispatcher] = None,
    note_access: Optional[NoteAccessChecker] = None,
    callback_token: Optional[str] = None,
    reconciliation_enabled: Optional[bool] = None,
) -> FastAPI:
    """
    Assemble the application.

    Every argument defaults to the production component built from
    settings; tests override the ones they need to observe.
    """
    app = FastAPI(
        title="Inkwell API",
        description=(
            "Asset upload confirmation and OCR text-extraction lifecycle for notes. "
            "Clients announce uploads, write blobs out-of-band, confirm, and poll "
            "for the extracted text."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Service Graph ─────────────────────────────────────────────────────
    # Built eagerly so handlers work even when the lifespan has not run
    dispatcher = dispatcher or HttpOcrDispatcher()
    dispatch_pool = OcrDispatchPool(dispatcher)
    lifecycle = AssetLifecycle(
        session_factory=session_factory or async_session_factory,
        blob_store=blob_store or LocalBlobStore(),
        dispatch_pool=dispatch_pool,
        upload_policy=UploadPolicy(note_access=note_access),
    )

    app.state.session_factory = lifecycle.session_factory
    app.state.owns_engine = session_factory is None
    app.state.blob_store = lifecycle.blob_store
    app.state.dispatcher = dispatcher
    app.state.dispatch_pool = dispatch_pool
    app.state.lifecycle = lifecycle
    app.state.scheduler = ReconciliationScheduler(lifecycle)
    app.state.scheduler_enabled = (
        settings.reconciliation_enabled if reconciliation_enabled is None else reconciliation_enabled
    )
    app.state.callback_token = (
        settings.ocr_callback_token if callback_token is None else callback_token
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(assets.router)
    app.include_router(ocr_callbacks.router)
    app.include_router(health.router)

    return app


app = create_app()
