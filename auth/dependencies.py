"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two auth methods exist, each for its own set of routes:
  1. Authorization: Bearer <access token> -- every user-facing route.
  2. Authorization: Basic <base64(id:secret)> -- the fixed-credential /ping
     check, validated against AUTH_BASIC_USERNAME / AUTH_BASIC_PASSWORD.

Bearer validation is stateless: the codec checks signature and expiry and the
route gets Claims, not a User row. Routes that need the row load it
themselves. A token therefore keeps working until exp even if its user was
deleted; the refresh that would follow fails.

Failures raise the core AuthError subclasses (Malformed, Expired, ...).
api/main.py maps them to status codes, so this module never builds an HTTP
error itself.

get_current_claims() requires a Bearer token.
require(operation) wraps it and also runs the authorization guard.
require_basic_auth() validates the fixed Basic credentials.

Layer rule: no imports from api/ or mail/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.credentials import BasicCredentialVerifier
from auth.errors import Malformed
from auth.guard import Operation, authorize
from auth.models import Claims
from auth.tokens import AccessTokenCodec


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Malformed("Bearer token is required.")
    return token.strip()


def get_current_claims(request: Request) -> Claims:
    """Require a valid access token and return its claims.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: Claims = Depends(get_current_claims)): ...
    """
    codec: AccessTokenCodec = request.app.state.codec
    return codec.validate(_bearer_token(request))


def require(operation: Operation) -> Callable[..., Claims]:
    """Dependency factory: valid access token AND the role may perform `operation`.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(claims: Claims = Depends(require(Operation.users_list))): ...
    """

    def dependency(claims: Claims = Depends(get_current_claims)) -> Claims:
        authorize(claims, operation)
        return claims

    return dependency


def require_basic_auth(request: Request) -> str:
    """Validate fixed Basic credentials and return the authenticated username."""
    verifier: BasicCredentialVerifier = request.app.state.basic_verifier
    return verifier.verify_header(request.headers.get("Authorization"))
