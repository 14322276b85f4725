"""
auth/sessions.py -- Refresh session store: one active refresh token per user.

The refresh_tokens table is keyed by user id, so "issue" is an upsert on the
primary key: a second login overwrites the first session's token and clears
its revoked flag. Two concurrent logins for the same user race at the
database; exactly one token ends up stored and the loser's token simply fails
validation later with Mismatch. Logging in from a new client therefore
silently ends the previous client's ability to refresh.

Only HMAC digests are stored. validate() compares digests in constant time.

Rotation (rotate()) swaps the token with a compare-and-swap UPDATE guarded by
the old digest, so two refreshes racing with the same token cannot both win.
The row's expires_at is left alone: rotation does not extend the session.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from sqlalchemy import false
from sqlalchemy.engine import Connection, Engine

from auth.errors import Expired, Mismatch, NotFound, Revoked
from auth.models import RefreshToken
from auth.store import as_utc, refresh_tokens, store_errors, upsert
from auth.tokens import Clock, digests_match, generate_opaque_token, hash_opaque_token, utcnow

logger = logging.getLogger("sessiongate.auth")

_DEFAULT_TTL = 7 * 24 * 3600  # 7 days


class RefreshSessionStore:
    """Persistence and validation for refresh sessions.

    Usage:
        sessions = RefreshSessionStore(user_store.engine, settings.secret_key)
        raw = sessions.issue(user_id)
        sessions.validate(user_id, raw)     # raises NotFound / Revoked / Expired / Mismatch
        sessions.revoke(user_id)
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        ttl_seconds: int = _DEFAULT_TTL,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self._secret_key = secret_key
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def _digest(self, raw: str) -> str:
        return hash_opaque_token(raw, self._secret_key)

    def issue(self, user_id: uuid.UUID) -> str:
        """Create or replace the user's refresh session and return the raw token."""
        raw = generate_opaque_token()
        now = self._clock()
        stmt = upsert(self.engine, refresh_tokens).values(
            user_id=user_id,
            token=self._digest(raw),
            revoked=False,
            expires_at=now + self._ttl,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[refresh_tokens.c.user_id],
            set_={
                "token": stmt.excluded.token,
                "revoked": False,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with store_errors(), self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        logger.info("Refresh session issued for user %s", user_id)
        return raw

    def get(self, user_id: uuid.UUID) -> RefreshToken | None:
        with store_errors(), self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.user_id == user_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def validate(self, user_id: uuid.UUID, presented: str) -> RefreshToken:
        """Return the stored session if `presented` is its current, live token."""
        session = self.get(user_id)
        if session is None:
            raise NotFound("No refresh session for this user.")
        if session.revoked:
            raise Revoked()
        if self._clock() >= session.expires_at:
            raise Expired("Refresh token has expired.")
        if not digests_match(session.token, self._digest(presented)):
            raise Mismatch()
        return session

    def rotate(self, user_id: uuid.UUID, presented: str) -> str:
        """Validate `presented` and atomically replace it with a new token."""
        current = self.validate(user_id, presented)
        raw = generate_opaque_token()
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(
                    (refresh_tokens.c.user_id == user_id)
                    & (refresh_tokens.c.token == current.token)
                    & (refresh_tokens.c.revoked == false())
                )
                .values(token=self._digest(raw), updated_at=self._clock())
            )
            conn.commit()
        if result.rowcount == 0:
            logger.warning("Refresh rotation lost a race for user %s", user_id)
            raise Mismatch()
        return raw

    def revoke(self, user_id: uuid.UUID, conn: Connection | None = None) -> bool:
        """Mark the user's session revoked. Idempotent; False if none exists.

        With `conn` the UPDATE joins the caller's transaction.
        """
        stmt = (
            refresh_tokens.update()
            .where(refresh_tokens.c.user_id == user_id)
            .values(revoked=True, updated_at=self._clock())
        )
        if conn is not None:
            result = conn.execute(stmt)
        else:
            with store_errors(), self.engine.connect() as own:
                result = own.execute(stmt)
                own.commit()
        if result.rowcount:
            logger.info("Refresh session revoked for user %s", user_id)
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete sessions past their expiry. Returns number of rows removed."""
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at < self._clock()))
            conn.commit()
        return result.rowcount


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        user_id=row.user_id,
        token=row.token,
        revoked=bool(row.revoked),
        expires_at=as_utc(row.expires_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )
