"""
tests/conftest.py -- Shared test fixtures for SessionGate unit and integration tests.

This module provides:
  - FixedClock: a settable clock injected into the codec and token stores
  - RecordingMailer: stands in for EmailSender and keeps every token it is handed
  - user_store / codec / sessions / actions / orchestrator: unit-test fixtures
    over a private in-memory SQLite database
  - make_user(): create a user with a bcrypt-hashed password
  - api_client: TestClient with a patched lifespan and an admin access token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because it runs route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and the Basic-auth pair must be set before any api/core import so
get_settings() auto-generates SECRET_KEY and picks up the ping credentials.
"""

from __future__ import annotations

import asyncio
import base64
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("AUTH_BASIC_USERNAME", "monitor")
os.environ.setdefault("AUTH_BASIC_PASSWORD", "monitor:secret")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services
from auth.actions import ActionTokenService
from auth.credentials import CredentialVerifier, hash_password
from auth.models import Role, User
from auth.orchestrator import SessionOrchestrator
from auth.sessions import RefreshSessionStore
from auth.store import UserStore
from auth.tokens import AccessTokenCodec

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 7, 22, 8, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingMailer:
    """Mailer fake. Set `fail = True` to simulate an SMTP outage."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []
        self.fail = False

    def _record(self, kind: str, user: User, token: str | None) -> bool:
        if self.fail:
            return False
        self.sent.append((kind, user.email, token))
        return True

    def send_verification(self, user: User, token: str) -> bool:
        return self._record("verify-account", user, token)

    def send_password_reset(self, user: User, token: str) -> bool:
        return self._record("reset-password", user, token)

    def send_welcome(self, user: User) -> bool:
        return self._record("welcome", user, None)

    def last_token(self, kind: str, email: str | None = None) -> str:
        for sent_kind, to, token in reversed(self.sent):
            if sent_kind == kind and (email is None or to == email):
                return token
        raise AssertionError(f"no {kind} email recorded")


def make_user(
    store: UserStore,
    email: str = "ada@example.com",
    password: str = "correct-horse",
    role: Role = Role.regular,
    is_verified: bool = False,
    name: str = "Ada",
) -> User:
    """Insert a user and return the stored record."""
    user_id = store.create_user(
        User(name=name, email=email, role=role, hashed_password=hash_password(password), is_verified=is_verified)
    )
    return store.get_by_id(user_id)


def basic_header(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def secret_key() -> str:
    return TEST_SECRET


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def codec(clock: FixedClock) -> AccessTokenCodec:
    return AccessTokenCodec(TEST_SECRET, ttl_seconds=3600, clock=clock)


@pytest.fixture
def sessions(user_store: UserStore, clock: FixedClock) -> RefreshSessionStore:
    return RefreshSessionStore(user_store.engine, TEST_SECRET, ttl_seconds=7 * 24 * 3600, clock=clock)


@pytest.fixture
def actions(user_store: UserStore, clock: FixedClock) -> ActionTokenService:
    return ActionTokenService(user_store.engine, TEST_SECRET, clock=clock)


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def orchestrator(user_store, codec, sessions, actions, mailer) -> SessionOrchestrator:
    return SessionOrchestrator(
        users=user_store,
        verifier=CredentialVerifier(user_store),
        codec=codec,
        sessions=sessions,
        actions=actions,
        mailer=mailer,
    )


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Each test starts with empty slowapi counters (the store is process-wide)."""
    limiter.reset()


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Builds the real service graph around the test store, then swaps in the
    recording mailer so tests can read the tokens that would have been emailed.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, user_store)
        app.state.mailer = mailer
        app.state.orchestrator.mailer = mailer
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, uuid.UUID], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    Each test module gets its own named in-memory database. The admin user
    (admin@example.com / adminpass123) is created before the client starts.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    user_store = UserStore(db_url=f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    admin = make_user(
        user_store, email="admin@example.com", password="adminpass123", role=Role.admin, is_verified=True, name="Admin"
    )
    mailer = RecordingMailer()

    app.router.lifespan_context = _patch_lifespan(user_store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        token = client.app.state.codec.mint(admin.id, Role.admin)
        yield client, token, admin.id

    user_store.close()
