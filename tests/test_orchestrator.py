"""Unit tests for auth/orchestrator.py -- the session and account flows.

Covers:
- login: token pair, wrong password, unknown account
- refresh: rotation on (old token dies) and off (token echoed); deleted user
- logout then refresh -> Revoked
- request_action / complete_action for both kinds, including AlreadyVerified
  and the mail-failure path
- reset-password without a new secret is rejected before consumption
- a store failure while applying an action rolls the consume back, so a retry works
- prepare_action / deliver_action split the issue from the mail send
- register, change_password and set_role, each revoking where required
"""

from __future__ import annotations

import uuid

import pytest

from auth.credentials import CredentialVerifier, verify_password
from auth.errors import (
    AlreadyExists,
    AlreadyUsed,
    AlreadyVerified,
    InvalidCredential,
    Mismatch,
    NotFound,
    Revoked,
    StoreUnavailable,
)
from auth.models import ActionKind, Role
from auth.orchestrator import SessionOrchestrator
from conftest import make_user

VERIFY = ActionKind.verify_account
RESET = ActionKind.reset_password


@pytest.fixture
def user(user_store):
    return make_user(user_store)


class TestLogin:
    def test_login_returns_pair(self, orchestrator, codec, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        assert pair.user_id == user.id
        assert pair.role is Role.regular
        assert pair.expires_in == 3600
        assert codec.validate(pair.access_token).user_id == user.id
        orchestrator.sessions.validate(user.id, pair.refresh_token)

    def test_wrong_password(self, orchestrator, user) -> None:
        with pytest.raises(InvalidCredential):
            orchestrator.login("ada@example.com", "nope")
        assert orchestrator.sessions.get(user.id) is None

    def test_unknown_account(self, orchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.login("ghost@example.com", "whatever")

    def test_second_login_ends_first_session(self, orchestrator, user) -> None:
        first = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.login("ada@example.com", "correct-horse")
        with pytest.raises(Mismatch):
            orchestrator.refresh_access(user.id, first.refresh_token)


class TestRefresh:
    def test_rotation_on(self, orchestrator, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        refreshed = orchestrator.refresh_access(user.id, pair.refresh_token)
        assert refreshed.refresh_token != pair.refresh_token
        with pytest.raises(Mismatch):
            orchestrator.refresh_access(user.id, pair.refresh_token)
        orchestrator.refresh_access(user.id, refreshed.refresh_token)

    def test_rotation_off(self, user_store, codec, sessions, actions, mailer, user) -> None:
        orchestrator = SessionOrchestrator(
            user_store, CredentialVerifier(user_store), codec, sessions, actions, mailer, rotate_refresh_tokens=False
        )
        pair = orchestrator.login("ada@example.com", "correct-horse")
        first = orchestrator.refresh_access(user.id, pair.refresh_token)
        second = orchestrator.refresh_access(user.id, pair.refresh_token)
        assert first.refresh_token == pair.refresh_token
        assert second.refresh_token == pair.refresh_token

    def test_refresh_picks_up_new_role(self, orchestrator, codec, user, user_store) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        # Role changed directly in the store, without the revoking set_role() flow
        user_store.update_user(user.id, role=Role.admin)
        refreshed = orchestrator.refresh_access(user.id, pair.refresh_token)
        assert codec.validate(refreshed.access_token).role is Role.admin

    def test_logout_then_refresh(self, orchestrator, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.logout(user.id)
        with pytest.raises(Revoked):
            orchestrator.refresh_access(user.id, pair.refresh_token)

    def test_logout_keeps_access_token_valid(self, orchestrator, codec, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.logout(user.id)
        assert codec.validate(pair.access_token).user_id == user.id

    def test_deleted_user(self, orchestrator, user, monkeypatch) -> None:
        """User removed after the session check but before minting."""
        pair = orchestrator.login("ada@example.com", "correct-horse")
        monkeypatch.setattr(orchestrator.users, "get_by_id", lambda user_id: None)
        with pytest.raises(NotFound):
            orchestrator.refresh_access(user.id, pair.refresh_token)

    def test_refresh_after_account_deleted(self, orchestrator, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.delete_user(user.id)
        with pytest.raises(NotFound):
            orchestrator.refresh_access(user.id, pair.refresh_token)


class TestActions:
    def test_verify_account_flow(self, orchestrator, mailer, user, user_store) -> None:
        token = orchestrator.request_action(user.id, VERIFY)
        assert mailer.last_token("verify-account", user.email) == token
        assert orchestrator.complete_action(token, VERIFY) == user.id
        assert user_store.get_by_id(user.id).is_verified is True
        assert mailer.sent[-1][0] == "welcome"

    def test_verify_already_verified(self, orchestrator, user_store) -> None:
        verified = make_user(user_store, email="v@example.com", is_verified=True)
        with pytest.raises(AlreadyVerified):
            orchestrator.request_action(verified.id, VERIFY)

    def test_request_for_unknown_user(self, orchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.request_action(uuid.uuid4(), RESET)

    def test_reset_password_flow(self, orchestrator, mailer, user, user_store) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.request_action(user.id, RESET)
        token = mailer.last_token("reset-password")
        orchestrator.complete_action(token, RESET, new_secret="brand-new-pass")

        assert verify_password("brand-new-pass", user_store.get_by_id(user.id).hashed_password)
        with pytest.raises(Revoked):
            orchestrator.refresh_access(user.id, pair.refresh_token)
        with pytest.raises(AlreadyUsed):
            orchestrator.complete_action(token, RESET, new_secret="another-pass")

    def test_reset_without_secret_does_not_consume(self, orchestrator, user) -> None:
        token = orchestrator.request_action(user.id, RESET)
        with pytest.raises(ValueError):
            orchestrator.complete_action(token, RESET)
        assert orchestrator.complete_action(token, RESET, new_secret="brand-new-pass") == user.id

    def test_mail_failure_is_not_raised(self, orchestrator, mailer, user) -> None:
        mailer.fail = True
        token = orchestrator.request_action(user.id, RESET)
        assert orchestrator.complete_action(token, RESET, new_secret="brand-new-pass") == user.id

    def test_failed_reset_write_leaves_token_usable(self, orchestrator, user, user_store, monkeypatch) -> None:
        """A store outage while applying the reset rolls back the consume too."""
        pair = orchestrator.login("ada@example.com", "correct-horse")
        token = orchestrator.request_action(user.id, RESET)

        def outage(*args, **kwargs):
            raise StoreUnavailable("database is down")

        monkeypatch.setattr(orchestrator.users, "update_user", outage)
        with pytest.raises(StoreUnavailable):
            orchestrator.complete_action(token, RESET, new_secret="brand-new-pass")
        monkeypatch.undo()

        assert orchestrator.actions.get(user.id, RESET).used_at is None
        assert verify_password("correct-horse", user_store.get_by_id(user.id).hashed_password)
        orchestrator.refresh_access(user.id, pair.refresh_token)

        assert orchestrator.complete_action(token, RESET, new_secret="brand-new-pass") == user.id
        assert verify_password("brand-new-pass", user_store.get_by_id(user.id).hashed_password)

    def test_failed_session_revoke_rolls_back_password(self, orchestrator, user, user_store, monkeypatch) -> None:
        token = orchestrator.request_action(user.id, RESET)

        def outage(*args, **kwargs):
            raise StoreUnavailable("database is down")

        monkeypatch.setattr(orchestrator.sessions, "revoke", outage)
        with pytest.raises(StoreUnavailable):
            orchestrator.complete_action(token, RESET, new_secret="brand-new-pass")

        assert verify_password("correct-horse", user_store.get_by_id(user.id).hashed_password)
        assert orchestrator.actions.get(user.id, RESET).used_at is None

    def test_failed_verify_write_leaves_token_usable(self, orchestrator, user, user_store, monkeypatch) -> None:
        token = orchestrator.request_action(user.id, VERIFY)

        def outage(*args, **kwargs):
            raise StoreUnavailable("database is down")

        monkeypatch.setattr(orchestrator.users, "mark_verified", outage)
        with pytest.raises(StoreUnavailable):
            orchestrator.complete_action(token, VERIFY)
        monkeypatch.undo()

        assert user_store.get_by_id(user.id).is_verified is False
        assert orchestrator.complete_action(token, VERIFY) == user.id
        assert user_store.get_by_id(user.id).is_verified is True

    def test_prepare_then_deliver(self, orchestrator, mailer, user) -> None:
        prepared_user, token = orchestrator.prepare_action(user.id, RESET)
        assert prepared_user.id == user.id
        assert mailer.sent == []
        assert orchestrator.deliver_action(prepared_user, RESET, token) is True
        assert mailer.last_token("reset-password", user.email) == token

    def test_deliver_reports_mail_failure(self, orchestrator, mailer, user) -> None:
        _, token = orchestrator.prepare_action(user.id, VERIFY)
        mailer.fail = True
        assert orchestrator.deliver_action(user, VERIFY, token) is False


class TestAccounts:
    def test_register(self, orchestrator, mailer) -> None:
        user = orchestrator.register("Grace", "Grace@Example.com", "hopper-pass")
        assert user.email == "grace@example.com"
        assert user.role is Role.regular
        assert user.is_verified is False
        token = mailer.last_token("verify-account", "grace@example.com")
        orchestrator.complete_action(token, VERIFY)
        orchestrator.login("grace@example.com", "hopper-pass")

    def test_register_duplicate(self, orchestrator, user) -> None:
        with pytest.raises(AlreadyExists):
            orchestrator.register("Ada again", "ADA@example.com", "whatever-pass")

    def test_change_password(self, orchestrator, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.change_password(user.id, "correct-horse", "battery-staple")
        with pytest.raises(Revoked):
            orchestrator.refresh_access(user.id, pair.refresh_token)
        with pytest.raises(InvalidCredential):
            orchestrator.login("ada@example.com", "correct-horse")
        orchestrator.login("ada@example.com", "battery-staple")

    def test_change_password_wrong_current(self, orchestrator, user) -> None:
        with pytest.raises(InvalidCredential):
            orchestrator.change_password(user.id, "wrong", "battery-staple")

    def test_set_role_revokes(self, orchestrator, user) -> None:
        pair = orchestrator.login("ada@example.com", "correct-horse")
        updated = orchestrator.set_role(user.id, Role.admin)
        assert updated.role is Role.admin
        with pytest.raises(Revoked):
            orchestrator.refresh_access(user.id, pair.refresh_token)
        assert orchestrator.login("ada@example.com", "correct-horse").role is Role.admin

    def test_set_role_unknown_user(self, orchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.set_role(uuid.uuid4(), Role.admin)

    def test_delete_unknown_user(self, orchestrator) -> None:
        with pytest.raises(NotFound):
            orchestrator.delete_user(uuid.uuid4())
