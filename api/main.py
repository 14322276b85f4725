"""
api/main.py -- FastAPI application entry point for SessionGate.

Exposes the session core (auth/) over HTTP: login, refresh, logout, account
verification, password reset and admin user management.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. log_requests          -- one latency line per request

Lifespan handles startup (stores, codec, mailer, orchestrator, purge task)
and shutdown (cancel purge task, dispose engine) symmetrically.
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
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, PingResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.actions import ActionTokenService
from auth.credentials import BasicCredentialVerifier, CredentialVerifier
from auth.dependencies import require_basic_auth
from auth.errors import (
    AlreadyExists,
    AlreadyUsed,
    AlreadyVerified,
    AuthError,
    Forbidden,
    NotFound,
    StoreUnavailable,
)
from auth.models import ActionKind
from auth.orchestrator import SessionOrchestrator
from auth.sessions import RefreshSessionStore
from auth.store import UserStore
from auth.tokens import AccessTokenCodec
from core.config import get_settings
from mail.sender import EmailSender

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh sessions and action tokens every 6 hours.

    Expired rows already fail validation; purging only keeps the tables small.
    The store calls are synchronous, so they run in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        try:
            sessions = await asyncio.to_thread(app.state.sessions.purge_expired)
            actions = await asyncio.to_thread(app.state.actions.purge_expired)
        except StoreUnavailable:
            # Already logged by the store; try again next cycle
            continue
        logger.info("Purged %d expired refresh sessions, %d action tokens", sessions, actions)


def build_services(app: FastAPI, user_store: UserStore) -> None:
    """Wire the stores, codec, mailer and orchestrator into app.state.

    Split out of lifespan so tests can build the same graph around their own
    in-memory UserStore.
    """
    settings = get_settings()
    app.state.user_store = user_store
    app.state.codec = AccessTokenCodec(settings.secret_key, settings.access_token_expire_seconds)
    app.state.sessions = RefreshSessionStore(
        user_store.engine, settings.secret_key, settings.refresh_token_expire_seconds
    )
    app.state.actions = ActionTokenService(
        user_store.engine,
        settings.secret_key,
        {
            ActionKind.verify_account: settings.verify_account_token_expire_seconds,
            ActionKind.reset_password: settings.reset_password_token_expire_seconds,
        },
    )
    app.state.mailer = EmailSender(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        base_url=settings.frontend_url,
    )
    app.state.basic_verifier = BasicCredentialVerifier(settings.auth_basic_username, settings.auth_basic_password)
    app.state.orchestrator = SessionOrchestrator(
        users=user_store,
        verifier=CredentialVerifier(user_store),
        codec=app.state.codec,
        sessions=app.state.sessions,
        actions=app.state.actions,
        mailer=app.state.mailer,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The user store comes first: the token stores share its engine.
    """
    settings = get_settings()
    logger.info("SessionGate API starting up")
    user_store = UserStore(db_url=settings.database_url)
    build_services(app, user_store)
    if not app.state.mailer.is_configured:
        logger.warning("SMTP not configured -- emails will be logged, not sent")
    if not settings.auth_basic_username:
        logger.warning("AUTH_BASIC_USERNAME not set -- /api/v1/ping rejects every request")
    logger.info("Stores initialized (rotate_refresh_tokens=%s)", settings.rotate_refresh_tokens)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="Password login, refresh sessions, single-use action tokens and role-based access.",
    version=_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    # The refresh cookie must travel on cross-origin fetches from the frontend
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Anything not listed (InvalidCredential, Expired, Revoked, Malformed,
# SignatureInvalid, Mismatch) is an authentication failure: 401.
_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    NotFound: 404,
    AlreadyUsed: 410,
    Forbidden: 403,
    AlreadyExists: 409,
    AlreadyVerified: 409,
}


def auth_error_status(exc: AuthError) -> int:
    for cls in type(exc).__mro__:
        if cls in _AUTH_ERROR_STATUS:
            return _AUTH_ERROR_STATUS[cls]
    return 401


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status = auth_error_status(exc)
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if status == 401:
        response.headers["WWW-Authenticate"] = "Basic" if request.url.path == "/api/v1/ping" else "Bearer"
    return response


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Return 503. The driver error was logged by the store; never echo it."""
    response = JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(code=StoreUnavailable.code, message="Service temporarily unavailable.")
        ).model_dump(),
    )
    response.headers["Retry-After"] = "5"
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

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a structured dict, use it directly as the error field
    rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
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
# Health and ping endpoints
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=_VERSION)


@app.get("/api/v1/ping", tags=["Health"])
async def ping(username: str = Depends(require_basic_auth)) -> PingResponse:
    """Fixed-credential check for operators and health checkers that hold no user account."""
    return PingResponse(username=username)
