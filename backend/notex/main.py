"""
NoteX Backend — FastAPI Application Factory
=============================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes configuration, external clients, middleware, exception
       handling and route mounting in one place.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn (uvicorn notex.main:app) and by the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────────────┐
    │                         FastAPI App                          │
    │                                                              │
    │  app.state:  llm (GeminiService) · payments (StripeGateway)  │
    │              files (FileService)                             │
    │                                                              │
    │  Middleware:  RequestID → RateLimit → Logging → GZip → CORS  │
    │                                                              │
    │  Routes:  /api/auth · /api/ai · /api/notes · /api/purchases  │
    │           /api/users · /api/referrals · /webhooks · /health  │
    │           /internal (operator, X-Admin-Key)                  │
    │                                                              │
    │  Exception Handlers:                                         │
    │    NoteXError → its status_code · request validation → 400   │
    │    anything else → 500                                       │
    └──────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check, files directory
    Shutdown: dispose database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from notex import __version__
from notex.config import settings
from notex.database import dispose_engine
from notex.exceptions import NoteXError
from notex.middleware.logging import RequestLoggingMiddleware
from notex.middleware.rate_limit import RateLimitMiddleware
from notex.middleware.request_id import RequestIDMiddleware, request_id_var
from notex.routes import admin, ai, auth, health, notes, purchases, referrals, users, webhooks
from notex.services.file_service import FileService
from notex.services.gemini_service import GeminiService
from notex.services.payment_gateway import StripeGateway

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Called once during startup, before any other initialization.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every request at INFO/DEBUG
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("NoteX Backend %s starting up...", __version__)

    # Missing secrets are reported but do not stop the server: health checks
    # and catalog reads still work without Stripe, Gemini or Telegram.
    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    files_dir = Path(settings.files_dir)
    files_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Files directory: %s", files_dir.resolve())
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("NoteX Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exceptions to the standard error envelope.

    Every NoteXError subclass carries its own status_code, error_code and
    expose_details flag, so a single handler covers the whole hierarchy.
    Server-side failures (5xx) return a generic message; their context is
    only logged.
    """

    @app.exception_handler(NoteXError)
    async def handle_notex_error(request: Request, exc: NoteXError):
        rid = request_id_var.get("")
        if exc.status_code >= 500:
            logger.error("[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context)
        else:
            logger.warning("[%s] %s: %s", rid, type(exc).__name__, exc.message)

        if exc.status_code >= 500 and not exc.expose_details:
            message = "An internal error occurred. Please try again later."
        else:
            message = exc.message

        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            headers["Retry-After"] = str(retry_after)

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": message,
                "details": exc.context if exc.expose_details else None,
                "request_id": rid,
            },
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        """Malformed bodies/params share the 400 envelope with service validation."""
        rid = request_id_var.get("")
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": "validation_error",
                "message": errors[0]["message"] if errors else "Invalid request",
                "details": {"errors": errors},
                "request_id": rid,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all: stack trace is logged server-side only."""
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

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    External clients are constructed here from settings and stored on
    app.state; routes reach them through notex.dependencies.
    """
    app = FastAPI(
        title="NoteX API",
        description=(
            "Study-notes marketplace and AI study tools for the NoteX Telegram mini-app. "
            "Telegram login, Stripe checkout and subscriptions, Gemini-powered summaries, "
            "flashcards, quizzes and explanations."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── External Clients ──────────────────────────────────────────────────
    app.state.llm = GeminiService(
        api_key=settings.gemini_api_key,
        model_name=settings.gemini_model,
        max_attempts=settings.retry_max_attempts,
        min_wait=settings.retry_min_wait,
        max_wait=settings.retry_max_wait,
        failure_threshold=settings.cb_failure_threshold,
        recovery_timeout=settings.cb_recovery_timeout,
    )
    app.state.payments = StripeGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        frontend_url=settings.frontend_url,
    )
    app.state.files = FileService(
        files_dir=settings.files_dir,
        max_file_size=settings.max_file_size,
    )

    # ── Middleware ────────────────────────────────────────────────────────
    # Executes in REVERSE order of addition:
    # RequestID → RateLimit → Logging → GZip → CORS
    # (the ID comes first so a 429 envelope carries it too)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # ── Routes ────────────────────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(ai.router)
    app.include_router(notes.router)
    app.include_router(purchases.router)
    app.include_router(users.router)
    app.include_router(referrals.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)
    app.include_router(admin.router)

    return app


app = create_app()
