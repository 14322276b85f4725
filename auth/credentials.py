"""
auth/credentials.py -- Password hashing and credential verification.

Passwords: bcrypt used directly (no passlib wrapper). passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects. The API layer caps password length well below bcrypt's 72-byte
truncation threshold.

Timing: CredentialVerifier.verify() always runs bcrypt, against _DUMMY_HASH
when the identifier is unknown, so response time does not reveal whether an
account exists. The two failures are still distinct exception types (NotFound
vs InvalidCredential) for the caller's logs; the HTTP layer reports both as
the same 401.

Fixed credentials: BasicCredentialVerifier checks an
`Authorization: Basic <base64(id:secret)>` header against one configured
pair. It never touches the user store.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging

import bcrypt

from auth.errors import InvalidCredential, Malformed, NotFound
from auth.models import User
from auth.store import UserStore

logger = logging.getLogger("sessiongate.auth")


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


class CredentialVerifier:
    """Checks an (email, password) pair against the user store."""

    def __init__(self, users: UserStore) -> None:
        self._users = users

    def verify(self, identifier: str, secret: str) -> User:
        user = self._users.get_by_email(identifier)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt
            verify_password(secret, _DUMMY_HASH)
            raise NotFound("Unknown account.")
        if not verify_password(secret, user.hashed_password):
            raise InvalidCredential()
        return user


class BasicCredentialVerifier:
    """Validates HTTP Basic credentials against a single configured pair.

    An empty configured username disables the check: every header fails.
    """

    def __init__(self, username: str, password: str) -> None:
        self._username = username
        self._password = password

    def verify_header(self, authorization: str | None) -> str:
        """Return the authenticated username or raise Malformed / InvalidCredential."""
        if not authorization or not authorization.strip():
            raise Malformed("Basic credentials were not provided.")
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "basic":
            raise Malformed("Authorization header is not Basic.")
        try:
            decoded = base64.b64decode(parts[1], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise Malformed("Basic credentials are not valid base64.") from exc
        username, sep, password = decoded.partition(":")
        if not sep:
            raise Malformed("Basic credentials must be id:secret.")

        # Evaluate both comparisons so timing does not reveal which part was wrong
        user_ok = hmac.compare_digest(username.encode(), self._username.encode())
        pass_ok = hmac.compare_digest(password.encode(), self._password.encode())
        if not self._username or not (user_ok and pass_ok):
            logger.warning("Basic auth rejected")
            raise InvalidCredential()
        return username
