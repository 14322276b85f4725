"""
auth/errors.py -- Exception hierarchy for the session and action-token core.

Every semantic failure is an AuthError subclass with a stable machine-readable
code. None of them is fatal: the HTTP layer maps each class to a status code
(see api/main.py) and the core never retries.

StoreUnavailable deliberately sits outside the AuthError tree. A database that
cannot be reached is not the caller's fault and must never be reported as a
bad token or a bad password.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidCredential(AuthError):
    code = "invalid_credential"
    message = "Email or password is wrong."


class NotFound(AuthError):
    code = "not_found"
    message = "Data is not found."


class Expired(AuthError):
    code = "expired"
    message = "Token has expired."


class Revoked(AuthError):
    code = "revoked"
    message = "Session has been revoked."


class AlreadyUsed(AuthError):
    code = "already_used"
    message = "Token has already been used."


class Malformed(AuthError):
    code = "malformed"
    message = "Token is malformed."


class SignatureInvalid(AuthError):
    code = "signature_invalid"
    message = "Token signature is invalid."


class Mismatch(AuthError):
    code = "mismatch"
    message = "Token does not match the active session."


class Forbidden(AuthError):
    code = "forbidden"
    message = "You are not allowed to perform this action."


class AlreadyExists(AuthError):
    code = "already_exists"
    message = "A user with this email already exists."


class AlreadyVerified(AuthError):
    code = "already_verified"
    message = "Account is already verified."


class StoreUnavailable(Exception):
    """The backing store could not be reached. Retry the whole request."""

    code = "store_unavailable"
