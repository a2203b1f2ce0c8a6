"""
api/main.py -- FastAPI application entry point for Inkwell Auth.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- latency logging
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  5. resolve_session       -- SessionResolver; sets request.state.user

Lifespan builds the auth services once (TokenCodec, stores,
TokenLifecycleManager, SessionResolver), stores them on app.state, and runs
the refresh-token cleanup task. Shutdown is symmetric.

Error boundary: AuthError carries only an AuthErrorKind. This module is the
single place where kinds become HTTP status codes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user
from auth.errors import AuthError, AuthErrorKind
from auth.lifecycle import TokenLifecycleManager
from auth.models import Principal
from auth.session import SessionResolver
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import Clock, TokenCodec, epoch_seconds
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("inkwell.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_auth(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    refresh_store: RefreshTokenStore,
    clock: Clock = epoch_seconds,
) -> None:
    """Build the auth services and attach them to app.state.

    One TokenCodec is shared by the lifecycle manager and the session
    resolver so both agree on secret and clock.
    """
    codec = TokenCodec(settings.secret_key, clock=clock)
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.refresh_store = refresh_store
    app.state.tokens = TokenLifecycleManager(
        codec,
        refresh_store,
        access_ttl=settings.access_token_ttl,
        refresh_ttl=settings.refresh_token_ttl,
        rotate=settings.rotate_refresh_tokens,
    )
    app.state.session_resolver = SessionResolver(codec, user_store)


# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Sweep expired refresh-token records every ``interval_seconds``.

    A failed sweep is logged and the loop carries on; the next sweep (or lazy
    eviction on redemption) picks up what it missed. CancelledError from
    task.cancel() during shutdown is not an Exception, so it propagates out
    and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(app.state.tokens.cleanup_expired)
        except Exception:
            logger.exception("Refresh token cleanup sweep crashed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime."""
    settings = get_settings()
    logger.info("Inkwell Auth starting up")
    user_store = UserStore(settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    refresh_store = RefreshTokenStore(settings.auth_db_url, timeout_seconds=settings.store_timeout_seconds)
    configure_auth(app, settings, user_store, refresh_store)
    if not user_store.has_users():
        logger.warning("No users exist yet -- create an admin with: python main.py create-admin")
    logger.info(
        "Auth initialized (access_ttl=%ds, refresh_ttl=%ds, rotate=%s)",
        settings.access_token_ttl,
        settings.refresh_token_ttl,
        settings.rotate_refresh_tokens,
    )
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    user_store.close()
    refresh_store.close()
    logger.info("Inkwell Auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Inkwell Auth API",
    description="Token authentication and role-based authorization for the Inkwell blog.",
    version=API_VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc; auth-protected equivalents are below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Session resolution middleware
#
# Runs SessionResolver for every request that got past the host check and the
# rate limiter. Directory lookups are blocking SQLAlchemy calls, so they go to
# the thread pool. An unresolved request is not rejected here -- the Depends()
# gates decide.
# ---------------------------------------------------------------------------


async def resolve_session(request: Request, call_next):
    request.state.user = None
    request.state.auth_failure = None
    resolver: SessionResolver | None = getattr(request.app.state, "session_resolver", None)
    if resolver is not None:
        resolution = await run_in_threadpool(
            resolver.resolve,
            request.headers.get("Authorization"),
            request.cookies.get(request.app.state.settings.session_cookie_name),
        )
        request.state.user = resolution.user
        request.state.auth_failure = resolution.failure
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the last call is outermost.
# Request order: TrustedHost -> CORS -> SlowAPI -> resolve_session, so
# rejected hosts and rate-limited requests never reach the user directory.
# ---------------------------------------------------------------------------

app.add_middleware(BaseHTTPMiddleware, dispatch=resolve_session)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

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


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: Principal = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Inkwell Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: Principal = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Inkwell Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------

_STATUS_BY_KIND: dict[AuthErrorKind, int] = {
    AuthErrorKind.INVALID_FORMAT: 401,
    AuthErrorKind.INVALID_SIGNATURE: 401,
    AuthErrorKind.EXPIRED: 401,
    AuthErrorKind.WRONG_TOKEN_TYPE: 401,
    AuthErrorKind.INVALID_TOKEN: 401,
    AuthErrorKind.NOT_FOUND: 401,
    AuthErrorKind.UNAUTHENTICATED: 401,
    AuthErrorKind.INSUFFICIENT_PERMISSION: 403,
    AuthErrorKind.STORE_UNAVAILABLE: 503,
}


def status_for(kind: AuthErrorKind) -> int:
    return _STATUS_BY_KIND[kind]


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate an AuthError kind into its HTTP status and error envelope."""
    status_code = status_for(exc.kind)
    if exc.kind is AuthErrorKind.STORE_UNAVAILABLE:
        logger.error("Auth store unavailable on %s %s -- failing closed", request.method, request.url.path)
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.kind.value, message=exc.message)).model_dump(),
    )
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field.
    """
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

    The raw exception goes to the log only, never to the response body.
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
# registration. No rate limit and no auth -- load balancers must reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok" if request.app.state.user_store.ping() else "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})
