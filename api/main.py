"""
api/main.py -- FastAPI application entry point for OrgTree.

Exposes the authentication, session and authorization core over HTTP.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (engine, stores, security components, cleanup task)
and shutdown (cancel cleanup task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.csrf import router as csrf_router
from api.routes.v1.members import router as members_router
from audit.store import AuditLog
from auth.csrf import CSRFGuard
from auth.dependencies import client_ip, try_get_current_user
from auth.errors import AuthError
from auth.permissions import OrgAccessResolver
from auth.sessions import RefreshTokenManager
from auth.store import MembershipStore, UserStore
from auth.tokens import AccessTokenCodec
from core.config import get_settings
from core.database import create_db_engine

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("orgtree.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


def run_cleanup(app: FastAPI) -> tuple[int, int]:
    """Run both retention sweeps once. Returns (refresh rows, audit rows) removed."""
    refreshed = app.state.refresh_manager.cleanup()
    audited = app.state.audit_log.cleanup()
    return refreshed, audited


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Sweep expired/revoked refresh tokens and aged audit entries.

    Runs once at startup, then every interval_seconds, each sweep in a worker
    thread so the blocking deletes stay off the event loop. Both cleanup() calls
    log and swallow their own errors, so one failed sweep never kills the
    loop. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.to_thread(run_cleanup, app)
        await asyncio.sleep(interval_seconds)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine first -- every store shares it.
      2. AuditLog second -- the CSRF guard and access resolver write to it.
      3. Stores and security components.
      4. Cleanup task last -- references refresh_manager and audit_log.
    """
    logger.info("OrgTree API starting up")
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    app.state.engine = engine
    app.state.audit_log = AuditLog(engine, retention_days=settings.audit_retention_days)
    app.state.user_store = UserStore(engine)
    app.state.membership_store = MembershipStore(engine)
    app.state.codec = AccessTokenCodec(settings.secret_key, expire_seconds=settings.access_token_expire_seconds)
    app.state.refresh_manager = RefreshTokenManager(
        engine,
        app.state.codec,
        expire_days=settings.refresh_token_expire_days,
        revoked_retention_days=settings.revoked_token_retention_days,
    )
    app.state.csrf_guard = CSRFGuard(settings.effective_csrf_secret, app.state.audit_log)
    app.state.access_resolver = OrgAccessResolver(
        app.state.user_store, app.state.membership_store, app.state.audit_log
    )
    logger.info("Security components initialized (signing_configured=%s)", app.state.codec.configured)
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    engine.dispose()
    logger.info("OrgTree API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="OrgTree API",
    description="Authentication, session and authorization core for the OrgTree directory.",
    version=API_VERSION,
    lifespan=lifespan,
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
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware looks for app.state.limiter by convention.
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
app.include_router(csrf_router, prefix="/api/v1", tags=["CSRF"])
app.include_router(members_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render domain security errors.

    Only the public message is returned. exc.reason and exc.detail stay in
    the audit log -- they distinguish expired from forged tokens, missing
    from mismatched CSRF tokens, and that is information for defenders only.
    """
    response = _error(exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 and record a rate_limit_exceeded audit entry.

    Synchronous: SlowAPIMiddleware calls this handler directly for sync routes.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    audit_log = getattr(request.app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.append(
            None,
            try_get_current_user(request),
            "rate_limit_exceeded",
            "security",
            "rate_limiter",
            {
                "limit": str(exc.detail),
                "path": request.url.path,
                "method": request.method,
                "ipAddress": client_ip(request),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database ping."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check database ping failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
