"""
VoxNotes Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn voxnotes.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                       FastAPI App                        │
    │                                                          │
    │  Middleware:  Request ID → Logging → GZip → CORS         │
    │                                                          │
    │  Routes:                                                 │
    │  ┌──────────────┐ ┌───────────────────┐ ┌─────────────┐  │
    │  │ /api/process │ │ /api/notes/{id}/… │ │ GET /health │  │
    │  └──────┬───────┘ └─────────┬─────────┘ └──────┬──────┘  │
    │         └───────────────────┼──────────────────┘         │
    │                  app.state.orchestrator                  │
    │                                                          │
    │  Exception Handlers: VoxNotesError → its status_code     │
    │                      Exception     → 500                 │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration (logged, not fatal)
    3. Create the audio storage root
    4. Build the orchestrator (breaker registry included) onto app.state
    Shutdown:
    1. Reset breaker state
    2. Dispose database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from voxnotes import __version__
from voxnotes.config import settings
from voxnotes.database import async_session_factory, dispose_engine
from voxnotes.exceptions import DatabaseError, InternalError, VoxNotesError
from voxnotes.middleware.logging import RequestLoggingMiddleware
from voxnotes.middleware.request_id import RequestIDLogFilter, RequestIDMiddleware, request_id_var
from voxnotes.routes import health, notes, process
from voxnotes.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once, before anything else logs.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("VoxNotes processing backend %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: /health still reports, triggers fail with clear errors
        logger.error("Configuration error: %s", str(e))

    storage = Path(settings.audio_storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Audio storage root: %s", storage.resolve())

    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = Orchestrator.build(async_session_factory)

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("VoxNotes processing backend shutting down...")
    app.state.orchestrator.shutdown()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _retry_after(exc: VoxNotesError) -> Optional[int]:
    value = getattr(exc, "retry_after", None) or getattr(exc, "recovery_time", None)
    return int(value) if value else None


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception taxonomy onto JSON error responses.

    Every VoxNotesError carries its own status_code and error_code, so one
    handler covers the hierarchy:
        {"error": code, "message": safe message, "details": context, "request_id": id}
    Server-side failures (DatabaseError, InternalError) never expose their
    context; it is logged instead. Retry-After is set when the error knows it.
    """

    @app.exception_handler(VoxNotesError)
    async def handle_voxnotes_error(request: Request, exc: VoxNotesError):
        rid = request_id_var.get("")
        headers = {}
        retry_after = _retry_after(exc)
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        if isinstance(exc, (DatabaseError, InternalError)):
            logger.error("[%s] %s: %s | Context: %s", rid, type(exc).__name__,
                         exc.message, exc.context)
            content = {"error": exc.error_code, "message": exc.message, "request_id": rid}
        else:
            if exc.status_code >= 500:
                logger.error("[%s] %s: %s", rid, type(exc).__name__, exc.message)
            else:
                logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)
            content = {
                "error": exc.error_code,
                "message": exc.message,
                "details": exc.context or None,
                "request_id": rid,
            }
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all; the traceback stays server-side."""
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests). When omitted, the
                      lifespan builds one from settings.
    """
    app = FastAPI(
        title="VoxNotes Processing API",
        description=(
            "Transcribes and analyzes recorded voice notes with quota-gated, "
            "retrying, circuit-broken calls to Google Gemini."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    # Starlette runs middleware in reverse order of registration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(process.router)
    app.include_router(notes.router)
    app.include_router(health.router)

    return app


app = create_app()
