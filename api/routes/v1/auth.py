"""
api/routes/v1/auth.py -- Session and account-lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register          -- create account, mail verification link
  POST /api/v1/auth/login             -- password login; access token + refresh cookie
  POST /api/v1/auth/refresh           -- new access token from the refresh cookie
  POST /api/v1/auth/logout            -- revoke refresh session, clear cookie (requires auth)
  POST /api/v1/auth/verify            -- consume a verify-account token
  POST /api/v1/auth/verify/resend     -- issue a new verify-account token (requires auth)
  POST /api/v1/auth/forgot-password   -- mail a reset-password token; always 202
  POST /api/v1/auth/reset-password    -- consume a reset-password token, set new password

Security:
  register, login and forgot-password are rate-limited per IP (LOGIN_RATE_LIMIT).
  Login and refresh report an unknown account as 401, never 404, so account
  existence does not leak. forgot-password answers 202 whether or not the
  email exists, for the same reason.
  Cache-Control: no-store on every response that carries a token.

Refresh cookie: "refresh_token" = "<user_id>:<raw token>", httpOnly,
samesite=lax, scoped to /api/v1/auth so it is only sent to these routes.
"""

import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import require
from auth.errors import InvalidCredential, Malformed, NotFound
from auth.guard import Operation
from auth.models import ActionKind, Claims, TokenPair
from auth.orchestrator import SessionOrchestrator
from core.config import get_settings

logger = logging.getLogger("sessiongate.api")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /api/v1/auth/register:         public, rate-limited
# - POST /api/v1/auth/login:            public, rate-limited
# - POST /api/v1/auth/refresh:          refresh cookie
# - POST /api/v1/auth/logout:           Bearer (session:logout)
# - POST /api/v1/auth/verify:           public -- the token is the credential
# - POST /api/v1/auth/verify/resend:    Bearer (verification:resend)
# - POST /api/v1/auth/forgot-password:  public, rate-limited
# - POST /api/v1/auth/reset-password:   public -- the token is the credential
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def _token_response(pair: TokenPair) -> JSONResponse:
    """Access token in the body, refresh token in the httpOnly cookie."""
    settings = get_settings()
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            expires_in=pair.expires_in,
            user_id=pair.user_id,
            role=pair.role,
        ).model_dump(mode="json"),
    )
    resp.set_cookie(
        key=REFRESH_COOKIE,
        value=f"{pair.user_id}:{pair.refresh_token}",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=REFRESH_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _parse_refresh_cookie(value: str | None) -> tuple[uuid.UUID, str]:
    if not value:
        raise Malformed("Refresh token cookie is missing.")
    user_part, sep, raw = value.partition(":")
    if not sep or not raw:
        raise Malformed("Refresh token cookie is malformed.")
    try:
        return uuid.UUID(user_part), raw
    except ValueError as exc:
        raise Malformed("Refresh token cookie is malformed.") from exc


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(LOGIN_RATE_LIMIT)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a regular, unverified account and mail the verification link."""
    user = _orchestrator(request).register(body.name, body.email, body.password)
    return UserResponse.from_user(user)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 body.
    """
    try:
        pair = _orchestrator(request).login(body.email, body.password)
    except NotFound as exc:
        raise InvalidCredential() from exc
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token.

    With rotation enabled the cookie is replaced too; the old value is dead
    after this call.
    """
    user_id, raw = _parse_refresh_cookie(request.cookies.get(REFRESH_COOKIE))
    try:
        pair = _orchestrator(request).refresh_access(user_id, raw)
    except NotFound as exc:
        raise InvalidCredential("Refresh token is invalid.") from exc
    return _token_response(pair)


@router.post("/auth/verify", response_model=MessageResponse)
def verify(request: Request, body: TokenRequest) -> MessageResponse:
    """Consume a verify-account token and mark the account verified."""
    _orchestrator(request).complete_action(body.token, ActionKind.verify_account)
    return MessageResponse(message="Account verified.")


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
@limiter.limit(LOGIN_RATE_LIMIT)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    """Mail a reset link if the email is registered. Always answers 202.

    The SMTP send runs after the response, so a known and an unknown email
    take the same time to answer.
    """
    orchestrator = _orchestrator(request)
    user = orchestrator.users.get_by_email(body.email)
    if user is not None:
        user, token = orchestrator.prepare_action(user.id, ActionKind.reset_password)
        background_tasks.add_task(orchestrator.deliver_action, user, ActionKind.reset_password, token)
    else:
        logger.info("Password reset requested for unknown email")
    return MessageResponse(message="If the email is registered, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Consume a reset-password token and set the new password.

    The account's refresh session is revoked, so the cookie is cleared.
    """
    _orchestrator(request).complete_action(body.token, ActionKind.reset_password, new_secret=body.password)
    resp = JSONResponse(content=MessageResponse(message="Password has been reset.").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    claims: Claims = Depends(require(Operation.session_logout)),
) -> JSONResponse:
    """Revoke the refresh session and clear the cookie.

    The access token presented here stays valid until it expires.
    """
    _orchestrator(request).logout(claims.user_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return resp


@router.post("/auth/verify/resend", response_model=MessageResponse, status_code=202)
def resend_verification(
    request: Request,
    claims: Claims = Depends(require(Operation.verification_resend)),
) -> MessageResponse:
    """Issue a fresh verify-account token. The previous one stops working."""
    _orchestrator(request).request_action(claims.user_id, ActionKind.verify_account)
    return MessageResponse(message="Verification email sent.")