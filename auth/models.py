"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
orchestrator do the work; these types only carry shape between them.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Coarse authorization tier embedded in access-token claims."""

    admin = "admin"
    regular = "regular"


class ActionKind(str, Enum):
    """Purpose of a single-use action token. Values match the stored enum."""

    verify_account = "verify-account"
    reset_password = "reset-password"


@dataclass
class User:
    """An account known to the user store.

    email is the login identifier and is stored lower-cased.
    id is None before the record is written to the database.
    """

    name: str
    email: str
    role: Role = Role.regular
    id: uuid.UUID | None = None
    hashed_password: str | None = None
    is_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RefreshToken:
    """The single refresh-session row of a user.

    token holds the HMAC digest of the raw value handed to the client.
    """

    user_id: uuid.UUID
    token: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ActionToken:
    """A single-use, purpose-scoped token row. used_at None = unconsumed."""

    id: uuid.UUID
    user_id: uuid.UUID
    token: str  # HMAC digest
    action_type: ActionKind
    expires_at: datetime
    used_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Claims:
    """Verified access-token claims."""

    user_id: uuid.UUID
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    """Result of login and refresh: what the HTTP layer hands to the client."""

    access_token: str
    refresh_token: str
    expires_in: int
    user_id: uuid.UUID
    role: Role
