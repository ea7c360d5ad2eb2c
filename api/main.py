"""
api/main.py -- FastAPI application entry point for AccountGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the AuthService (stores, token issuer, notifier) and the
recovery purge task on startup, and tears both down on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.recovery import router as recovery_router
from api.routes.v1.two_factor import router as two_factor_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError, StoreUnavailable
from auth.service import build_auth_service
from core.config import get_settings

API_VERSION = "1.0.0"

# Seconds clients are told to wait after a 503 from the store.
_STORE_RETRY_AFTER = 5

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accountgate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired reset/recovery records every PURGE_INTERVAL_SECONDS.

    Lookups already filter on expires_at, so this only reclaims space.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep, and the lifespan awaits the task so no sweep outlives the
    engine. A failed sweep is logged and retried next interval.
    """
    while True:
        await asyncio.sleep(settings.purge_interval_seconds)
        try:
            await asyncio.to_thread(app.state.auth.recovery.purge_expired)
        except StoreUnavailable:
            logger.warning("Recovery purge skipped: store unavailable")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the auth service (and its schema) must exist
    before the purge task references app.state.auth.
    """
    logger.info("AccountGate API starting up")
    app.state.auth = build_auth_service(settings)
    logger.info(
        "Auth initialized (owner_exists=%s, token_lifetime=%ss)",
        app.state.auth.users.owner_exists(),
        settings.token_expire_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.auth.close()
    logger.info("AccountGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AccountGate API",
    description="Authentication, second factor, credential recovery and account administration.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler; wall-clock time around call_next is the reported latency.
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
app.include_router(two_factor_router, prefix="/api/v1", tags=["Two-Factor"])
app.include_router(recovery_router, prefix="/api/v1", tags=["Recovery"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, code: str, detail=None, payload: dict | None = None) -> JSONResponse:
    content = ErrorResponse(message=message, error=ErrorDetail(code=code, detail=detail)).model_dump(
        exclude_none=True
    )
    content.update(payload or {})
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto the envelope.

    exc.detail is operator diagnostics: logged here, never sent to the client.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    elif exc.detail:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
    response = _error(exc.status_code, exc.message, exc.code, payload=exc.payload)
    if isinstance(exc, StoreUnavailable):
        response.headers["Retry-After"] = str(_STORE_RETRY_AFTER)
    return response


@app.exception_handler(OperationalError)
@app.exception_handler(PoolTimeoutError)
async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Store failures that escaped open_connection() are still retryable 503s."""
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc.__class__.__name__)
    return await auth_error_handler(request, StoreUnavailable())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests. Please try again later.", "rate_limited")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or params fail validation."""
    fields = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return _error(422, "Request validation failed.", "validation_error", detail=fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405, ...)."""
    return _error(exc.status_code, str(exc.detail), f"http_{exc.status_code}")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "An unexpected error occurred.", "internal_error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and database reachability."""
    try:
        database = "ok" if request.app.state.auth.users.ping() else "error"
    except StoreUnavailable:
        database = "unavailable"
    body = HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
    return JSONResponse(status_code=200 if database == "ok" else 503, content=body.model_dump())
