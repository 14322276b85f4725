"""
auth/tokens.py -- Access token codec and opaque token utilities.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry only the user id (sub), role, iat and exp. Validation is a pure
       function of the token, the key and the clock -- no store lookup -- so
       an access token cannot be revoked before it expires. Revocation happens
       one level up, at the refresh session that gates new access tokens.

       The exp check is done here against an injectable clock instead of by
       jose, so the validity boundary is exact and testable.

  Opaque tokens (refresh + action): secrets.token_urlsafe(24) gives 192 bits
       of entropy in 32 URL-safe characters. The stores persist only
       HMAC-SHA256(SECRET_KEY, raw) so a leaked table cannot be replayed. The
       digest is deterministic, so action tokens can still be looked up by it.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import Expired, Malformed, SignatureInvalid
from auth.models import Claims, Role

_ALGORITHM = "HS256"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a fresh 32-character URL-safe random token."""
    return secrets.token_urlsafe(24)


def hash_opaque_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string."""
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


def digests_match(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())


# ---------------------------------------------------------------------------
# Access token codec
# ---------------------------------------------------------------------------


class AccessTokenCodec:
    """Mints and validates stateless access tokens.

    Usage:
        codec = AccessTokenCodec(settings.secret_key, settings.access_token_expire_seconds)
        token = codec.mint(user.id, user.role)
        claims = codec.validate(token)   # raises Malformed / SignatureInvalid / Expired
    """

    def __init__(self, secret_key: str, ttl_seconds: int = 3600, clock: Clock = utcnow) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._secret_key = secret_key
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def mint(self, user_id: uuid.UUID, role: Role) -> str:
        now = self._clock()
        issued_at = int(now.timestamp())
        payload = {
            "sub": str(user_id),
            "role": Role(role).value,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def validate(self, token: str) -> Claims:
        """Verify signature and expiry and return the typed claims.

        Structural problems are checked before the signature so a garbage
        string is reported as Malformed rather than SignatureInvalid.
        """
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise Malformed() from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTClaimsError as exc:
            # Signature checked out; a registered claim (sub, aud, iat) has the wrong shape
            raise Malformed() from exc
        except JWTError as exc:
            raise SignatureInvalid() from exc

        claims = _parse_claims(payload)
        if self._clock() >= claims.expires_at:
            raise Expired()
        return claims


def _parse_claims(payload: dict) -> Claims:
    try:
        issued_at = payload["iat"]
        expires_at = payload["exp"]
        if not isinstance(issued_at, int) or not isinstance(expires_at, int):
            raise TypeError("iat/exp must be integers")
        return Claims(
            user_id=uuid.UUID(payload["sub"]),
            role=Role(payload["role"]),
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise Malformed("Token claims are missing or invalid.") from exc
