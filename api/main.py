"""
api/main.py -- FastAPI application entry point for the GSO auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Routes with an explicit @limiter.limit are checked by that decorator; every
other route gets the default limit from SlowAPIMiddleware.

Lifespan handles startup (engine, stores, revocation registry, mail and geo
adapters, maintenance task) and shutdown (cancel the task, release clients)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import SECURITY_SENSITIVE_MESSAGES, limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.sessions import router as sessions_router
from auth.audit import AuditLog
from auth.email import EmailService
from auth.errors import AuthError
from auth.origin import GeoLocator
from auth.revocation import create_registry
from auth.schema import make_engine
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings

_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gsoauth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


def run_maintenance(app: FastAPI) -> None:
    """Delete expired sessions, revocation entries and one-time tokens."""
    sessions = app.state.session_store.reap_expired()
    revoked = app.state.revocation.prune()
    one_time = app.state.user_store.purge_expired_tokens()
    if sessions or revoked or one_time:
        logger.info(
            "Maintenance: reaped %d session(s), %d revocation(s), %d one-time token(s)",
            sessions,
            revoked,
            one_time,
        )


async def _maintenance_loop(app: FastAPI) -> None:
    """Run maintenance every SESSION_REAP_INTERVAL_SECONDS.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A failed pass is logged and the
    loop keeps going.
    """
    while True:
        await asyncio.sleep(_settings.session_reap_interval_seconds)
        try:
            await asyncio.to_thread(run_maintenance, app)
        except Exception:
            logger.exception("Maintenance pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build shared resources on startup and release them on shutdown.

    Stores share one engine. The maintenance task starts last because it
    references every store.
    """
    logger.info("GSO auth API starting up")
    engine = make_engine(_settings.database_url)
    app.state.engine = engine
    app.state.user_store = UserStore(engine)
    app.state.session_store = SessionStore(engine, ttl_seconds=_settings.session_ttl_seconds)
    app.state.audit_log = AuditLog(engine)
    app.state.revocation = create_registry(_settings.revocation_redis_url, _settings.token_expire_seconds)
    app.state.email = EmailService(
        smtp_host=_settings.smtp_host,
        smtp_port=_settings.smtp_port,
        smtp_user=_settings.smtp_user,
        smtp_password=_settings.smtp_password,
        smtp_use_tls=_settings.smtp_use_tls,
        from_email=_settings.email_from,
        base_url=_settings.frontend_base_url,
    )
    if not app.state.email.is_configured:
        logger.warning("SMTP not configured -- reset and verification links will only be logged")
    app.state.geo = GeoLocator(token=_settings.ipinfo_token)
    logger.info("Auth initialized (users present=%s)", app.state.user_store.has_users())
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    app.state.geo.close()
    close = getattr(app.state.revocation, "close", None)
    if close is not None:
        close()
    engine.dispose()
    logger.info("GSO auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GSO Auth API",
    description="Sessions, tokens and account recovery for the GSO inventory system.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with the limit's own message.

    Must stay a plain function: SlowAPIMiddleware calls the registered handler
    synchronously. No Retry-After header is sent. Rejections on login,
    password-reset and registration routes also carry defensive headers.
    """
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message=exc.detail,
            )
        ).model_dump(),
    )
    if exc.detail in SECURITY_SENSITIVE_MESSAGES:
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
    logger.warning("Rate limit hit on %s %s: %s", request.method, request.url.path, exc.detail)
    return response


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto its HTTP status and the shared envelope."""
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Persistence failures surface as a generic 500; details go to the log only."""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Exempt from rate limiting -- load balancers and
# monitoring must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
@limiter.exempt
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database probe."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database probe failed", exc_info=True)
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=_VERSION, components=components)
