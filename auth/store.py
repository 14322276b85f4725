"""
auth/store.py -- SQLAlchemy Core schema, engine and user repository.

Pattern: Repository + Data Mapper. UserStore is the repository for users;
_row_to_user is the mapper. RefreshSessionStore (auth/sessions.py) and
ActionTokenService (auth/actions.py) share the engine created here and the
table objects defined here. Route code never touches SQL directly.

Concurrency: the two token tables are only ever written with single
statements -- an upsert on their uniqueness key or a conditional UPDATE. The
database's constraint is the lock; there is no application-level mutex.
upsert() picks the dialect-specific INSERT ... ON CONFLICT construct so the
same code runs on SQLite and PostgreSQL.

Failure mapping: OperationalError / InterfaceError from the driver (database
down, file unreadable, lock timeout) are re-raised as StoreUnavailable via
store_errors(). IntegrityError is left alone -- it is a semantic signal the
caller interprets (e.g. duplicate email).

Timestamps are timezone-aware UTC in Python. SQLite drops the offset on
storage, so as_utc() re-attaches it on the way out.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    Uuid,
    create_engine,
    event,
    false,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError

from auth.errors import StoreUnavailable
from auth.models import Role, User
from auth.tokens import utcnow

logger = logging.getLogger("sessiongate.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", String(100), nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.regular.value),
    Column("is_verified", Boolean, nullable=False, server_default=false()),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# One row per user: the primary key IS the user id.
refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("token", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("revoked", Boolean, nullable=False, server_default=false()),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# One row per (user, action kind).
user_action_tokens = Table(
    "user_action_tokens",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("action_type", String(20), nullable=False),  # "verify-account" | "reset-password"
    Column("used_at", DateTime(timezone=True)),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "action_type", name="unique_user_action_type"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes deleting a user
    cascade to its token rows.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_store_engine(db_url: str) -> Engine:
    """Create the engine and make sure every table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync handlers in a threadpool, so one pooled connection
        # may be used from several threads over its lifetime.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    with store_errors():
        metadata.create_all(engine)
    return engine


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate driver connectivity failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error("Backing store unavailable: %s", exc.orig if exc.orig is not None else exc)
        raise StoreUnavailable(str(exc.orig if exc.orig is not None else exc)) from exc


def upsert(engine: Engine, table: Table):
    """Return a dialect INSERT that supports on_conflict_do_update()."""
    dialect = engine.dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table)
    raise NotImplementedError(f"upsert is not supported on {dialect!r}")


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities. Owns the engine shared by the token stores.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(User(name="Ada", email="ada@example.com", hashed_password=...))
        user = store.get_by_email("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)

    def has_users(self) -> bool:
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> uuid.UUID:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        user_id = user.id or uuid.uuid4()
        now = utcnow()
        with store_errors(), self.engine.connect() as conn:
            conn.execute(
                users.insert().values(
                    id=user_id,
                    name=user.name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_verified=user.is_verified,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: uuid.UUID) -> User | None:
        with store_errors(), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with store_errors(), self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with store_errors(), self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: uuid.UUID, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields: name, role, hashed_password, is_verified.

        Returns True if a row was updated, False if user_id was not found.
        With `conn` the UPDATE joins the caller's transaction and is not
        committed here.
        """
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = utcnow()
        stmt = users.update().where(users.c.id == user_id).values(**fields)
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with store_errors(), self.engine.connect() as own:
            result = own.execute(stmt)
            own.commit()
        return result.rowcount > 0

    def mark_verified(self, user_id: uuid.UUID, conn: Connection | None = None) -> bool:
        return self.update_user(user_id, conn=conn, is_verified=True)

    def count_admins(self) -> int:
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(users).where(users.c.role == Role.admin.value)
            ).scalar()
        return result or 0

    def delete_user(self, user_id: uuid.UUID) -> bool:
        """Permanently delete a user. Token rows go with it (ON DELETE CASCADE)."""
        with store_errors(), self.engine.connect() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        role=Role(row.role),
        hashed_password=row.hashed_password,
        is_verified=bool(row.is_verified),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )
