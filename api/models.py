"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Role, User

# bcrypt only looks at the first 72 bytes; cap well below that so a long
# passphrase is never silently truncated.
_PASSWORD_MIN = 8
_PASSWORD_MAX = 64


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class TokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify."""

    token: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class ChangePasswordRequest(BaseModel):
    """Request body for PUT /api/v1/users/me/password."""

    current_password: str = Field(min_length=1, max_length=_PASSWORD_MAX)
    new_password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/users/me."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class RolePatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}/role."""

    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response body for login and refresh.

    The refresh token is never in the body -- it travels in an httpOnly cookie.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: uuid.UUID
    role: Role


class UserResponse(BaseModel):
    """Public view of a user. hashed_password is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    name: str
    email: str
    role: Role
    is_verified: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from an auth.models.User."""
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class MessageResponse(BaseModel):
    """Plain acknowledgement for endpoints with nothing else to return."""

    model_config = ConfigDict(frozen=True)

    message: str


class PingResponse(BaseModel):
    """Response for GET /api/v1/ping."""

    model_config = ConfigDict(frozen=True)

    message: str = "pong"
    username: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
