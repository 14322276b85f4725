"""
auth/actions.py -- Single-use, purpose-scoped action tokens.

Two kinds exist: verify-account and reset-password. The table has
UNIQUE(user_id, action_type), and issue() is an INSERT ... ON CONFLICT DO
UPDATE on that pair. Requesting a new reset link therefore replaces the old
row in one statement -- the old token stops existing, no delete step needed.
The replacement gets a fresh surrogate id and created_at: a consumed row is
never brought back to life, it is superseded.

The kinds are independent. A user may hold one outstanding token of each.

consume() is a single conditional UPDATE:

    UPDATE ... SET used_at = now
    WHERE token = :t AND action_type = :k AND used_at IS NULL AND expires_at > now

Exactly one concurrent caller can flip used_at. Losers re-read the row only to
pick the right error (NotFound / AlreadyUsed / Expired); the read never
decides success.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.errors import AlreadyUsed, Expired, NotFound
from auth.models import ActionKind, ActionToken
from auth.store import as_utc, store_errors, upsert, user_action_tokens
from auth.tokens import Clock, generate_opaque_token, hash_opaque_token, utcnow

logger = logging.getLogger("sessiongate.auth")

DEFAULT_TTLS: dict[ActionKind, int] = {
    ActionKind.verify_account: 24 * 3600,
    ActionKind.reset_password: 3600,
}


class ActionTokenService:
    """Issue and consume action tokens.

    Usage:
        actions = ActionTokenService(user_store.engine, settings.secret_key)
        raw = actions.issue(user_id, ActionKind.reset_password)
        user_id = actions.consume(raw, ActionKind.reset_password)   # exactly once
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        ttl_seconds: dict[ActionKind, int] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self._secret_key = secret_key
        self._ttls = {**DEFAULT_TTLS, **(ttl_seconds or {})}
        self._clock = clock

    def _digest(self, raw: str) -> str:
        return hash_opaque_token(raw, self._secret_key)

    def issue(self, user_id: uuid.UUID, kind: ActionKind) -> str:
        """Create or replace the (user, kind) token and return the raw value."""
        kind = ActionKind(kind)
        raw = generate_opaque_token()
        now = self._clock()
        c = user_action_tokens.c
        stmt = upsert(self.engine, user_action_tokens).values(
            id=uuid.uuid4(),
            user_id=user_id,
            token=self._digest(raw),
            action_type=kind.value,
            used_at=None,
            expires_at=now + timedelta(seconds=self._ttls[kind]),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[c.user_id, c.action_type],
            set_={
                "id": stmt.excluded.id,
                "token": stmt.excluded.token,
                "used_at": None,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with store_errors(), self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        logger.info("Action token issued (kind=%s, user=%s)", kind.value, user_id)
        return raw

    def consume(
        self,
        token: str,
        kind: ActionKind,
        effect: Callable[[Connection, uuid.UUID], None] | None = None,
    ) -> uuid.UUID:
        """Mark the token used and return its user id. Succeeds at most once.

        `effect(conn, user_id)` runs on the same connection before the commit,
        so the token flip and the effect's writes land together or not at all.
        If the effect raises, the token stays unused and the request can be
        retried.
        """
        kind = ActionKind(kind)
        digest = self._digest(token)
        now = self._clock()
        c = user_action_tokens.c
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                user_action_tokens.update()
                .where(
                    (c.token == digest)
                    & (c.action_type == kind.value)
                    & c.used_at.is_(None)
                    & (c.expires_at > now)
                )
                .values(used_at=now, updated_at=now)
            )
            if result.rowcount == 1:
                user_id = conn.execute(select(c.user_id).where(c.token == digest)).scalar_one()
                if effect is not None:
                    effect(conn, user_id)
                conn.commit()
                logger.info("Action token consumed (kind=%s, user=%s)", kind.value, user_id)
                return user_id
            row = conn.execute(select(c.action_type, c.used_at).where(c.token == digest)).fetchone()
            conn.commit()

        if row is None or row.action_type != kind.value:
            raise NotFound("Token is invalid.")
        if row.used_at is not None:
            raise AlreadyUsed()
        raise Expired()

    def get(self, user_id: uuid.UUID, kind: ActionKind) -> ActionToken | None:
        c = user_action_tokens.c
        with store_errors(), self.engine.connect() as conn:
            row = conn.execute(
                user_action_tokens.select().where((c.user_id == user_id) & (c.action_type == ActionKind(kind).value))
            ).fetchone()
        return _row_to_action_token(row) if row is not None else None

    def purge_expired(self) -> int:
        """Delete tokens past their expiry (used or not). Returns rows removed."""
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(user_action_tokens.delete().where(user_action_tokens.c.expires_at < self._clock()))
            conn.commit()
        return result.rowcount


def _row_to_action_token(row) -> ActionToken:
    return ActionToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        action_type=ActionKind(row.action_type),
        used_at=as_utc(row.used_at),
        expires_at=as_utc(row.expires_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )
