"""
api/main.py -- FastAPI application entry point for the admin auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests      -- one log line per request with latency
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, token issuer, mail transport, code service,
expired-code purge task) and shutdown (cancel purge task, close DB
connection) symmetrically. A store that cannot be opened at startup is the
one fatal condition: the error is logged and re-raised, and the server exits.

Every error -- ours, FastAPI's, slowapi's or unexpected -- is rendered in the
same {code, data, error, message} envelope as successful responses.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import error_envelope
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.codes import CodeService
from auth.mailer import build_mail_dispatcher
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.errors import AppError, RateLimitError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("adminauth.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired one-time codes every interval_seconds.

    Expired codes are already ignored by every query; this only keeps the
    table from growing without bound. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = app.state.user_store.purge_expired_codes()
        except SQLAlchemyError:
            logger.exception("Expired code purge failed")
            continue
        if removed:
            logger.info("Purged %d expired codes", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the code service needs the store and the mail
    transport; the purge task needs the store.
    """
    settings = get_settings()
    logger.info("Admin auth API starting up (debug=%s)", settings.debug)
    try:
        app.state.user_store = UserStore(settings.database_url)
    except SQLAlchemyError:
        logger.exception("Could not open the user store")
        raise
    if not settings.secret_key:
        logger.warning("SECRET_KEY is not set -- token issuing will fail until it is configured")
    app.state.token_issuer = TokenIssuer.from_settings(settings)
    app.state.mailer = build_mail_dispatcher(settings)
    app.state.code_service = CodeService.from_settings(app.state.user_store, app.state.mailer, settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.code_purge_interval_seconds))
    logger.info("Auth initialized")

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Admin auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Admin Auth API",
    description="Password and email one-time-code login for the admin backend.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any core.errors exception in the envelope with its own status."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.status_code, exc.code, exc.message),
    )
    if isinstance(exc, RateLimitError):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the per-IP slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=error_envelope(429, "rate_limited", "Too many requests."),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are a plain 400 validation error."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Request validation failed."
    return JSONResponse(status_code=400, content=error_envelope(400, "validation_error", message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and any other framework HTTP errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail)),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures during a request are an InternalError, not a crash."""
    logger.exception("Storage error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_envelope(500, "internal_error", "An unexpected error occurred."),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_envelope(500, "internal_error", "An unexpected error occurred."),
    )
