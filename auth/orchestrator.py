"""
auth/orchestrator.py -- Session Orchestrator: the flows that tie the stores together.

login          verify credential -> issue refresh session -> mint access token
refresh        validate (or rotate) refresh token -> reload user -> mint
logout         revoke the refresh session
request_action issue a single-use token -> hand it to the mailer
               (prepare_action + deliver_action when the send runs elsewhere)
complete_action consume the token and apply its effect in one transaction

The orchestrator holds no state of its own. It never catches AuthError: every
failure propagates to the HTTP layer, which maps it to a status code.

Any flow that changes what a user is allowed to do (password reset, password
change, role change) revokes the refresh session. Access tokens already handed
out stay valid until they expire; the next refresh fails.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.actions import ActionTokenService
from auth.credentials import CredentialVerifier, hash_password, verify_password
from auth.errors import AlreadyExists, AlreadyVerified, InvalidCredential, NotFound
from auth.models import ActionKind, Role, TokenPair, User
from auth.sessions import RefreshSessionStore
from auth.store import UserStore
from auth.tokens import AccessTokenCodec

logger = logging.getLogger("sessiongate.auth")


class SessionOrchestrator:
    """Composes the credential verifier, codec, and the two token stores.

    `mailer` is any object with send_verification(user, token) and
    send_password_reset(user, token) returning bool (see mail/sender.py).
    """

    def __init__(
        self,
        users: UserStore,
        verifier: CredentialVerifier,
        codec: AccessTokenCodec,
        sessions: RefreshSessionStore,
        actions: ActionTokenService,
        mailer,
        rotate_refresh_tokens: bool = True,
    ) -> None:
        self.users = users
        self.verifier = verifier
        self.codec = codec
        self.sessions = sessions
        self.actions = actions
        self.mailer = mailer
        self.rotate_refresh_tokens = rotate_refresh_tokens

    def _pair(self, user: User, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self.codec.mint(user.id, user.role),
            refresh_token=refresh_token,
            expires_in=self.codec.ttl_seconds,
            user_id=user.id,
            role=user.role,
        )

    def _require_user(self, user_id: uuid.UUID) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    # ---------------------------------------------------------------------------
    # Sessions
    # ---------------------------------------------------------------------------

    def login(self, identifier: str, secret: str) -> TokenPair:
        try:
            user = self.verifier.verify(identifier, secret)
        except (NotFound, InvalidCredential):
            logger.warning("Failed login attempt")
            raise
        refresh_token = self.sessions.issue(user.id)
        logger.info("Login succeeded for user %s", user.id)
        return self._pair(user, refresh_token)

    def refresh_access(self, user_id: uuid.UUID, refresh_token: str) -> TokenPair:
        """Mint a new access token from a live refresh session.

        With rotation on the presented token is replaced and the pair carries
        the new one; off, the pair echoes the presented token back.
        """
        if self.rotate_refresh_tokens:
            refresh_token = self.sessions.rotate(user_id, refresh_token)
        else:
            self.sessions.validate(user_id, refresh_token)
        # Role is re-read so a role change shows up on the next access token
        user = self._require_user(user_id)
        return self._pair(user, refresh_token)

    def logout(self, user_id: uuid.UUID) -> None:
        self.sessions.revoke(user_id)

    # ---------------------------------------------------------------------------
    # Action tokens
    # ---------------------------------------------------------------------------

    def prepare_action(self, user_id: uuid.UUID, kind: ActionKind) -> tuple[User, str]:
        """Issue a (user, kind) token without mailing it. Returns the user and raw token."""
        kind = ActionKind(kind)
        user = self._require_user(user_id)
        if kind is ActionKind.verify_account and user.is_verified:
            raise AlreadyVerified()
        return user, self.actions.issue(user.id, kind)

    def deliver_action(self, user: User, kind: ActionKind, token: str) -> bool:
        """Hand an issued token to the mailer. A failed send is logged, not raised."""
        kind = ActionKind(kind)
        if kind is ActionKind.verify_account:
            sent = self.mailer.send_verification(user, token)
        else:
            sent = self.mailer.send_password_reset(user, token)
        if not sent:
            logger.error("Could not deliver %s email for user %s", kind.value, user.id)
        return sent

    def request_action(self, user_id: uuid.UUID, kind: ActionKind) -> str:
        """Issue a (user, kind) token and mail it. Returns the raw token."""
        user, token = self.prepare_action(user_id, kind)
        self.deliver_action(user, kind, token)
        return token

    def complete_action(self, token: str, kind: ActionKind, new_secret: str | None = None) -> uuid.UUID:
        """Consume `token` and apply its effect. Returns the user id.

        The effect's writes share the consume transaction. If one fails the
        token is not spent and the whole request can be retried.
        """
        kind = ActionKind(kind)
        if kind is ActionKind.reset_password and not new_secret:
            raise ValueError("reset-password requires a new password")
        hashed = hash_password(new_secret) if kind is ActionKind.reset_password else None

        def apply(conn: Connection, user_id: uuid.UUID) -> None:
            if kind is ActionKind.verify_account:
                self.users.mark_verified(user_id, conn=conn)
            else:
                self.users.update_user(user_id, conn=conn, hashed_password=hashed)
                self.sessions.revoke(user_id, conn=conn)

        user_id = self.actions.consume(token, kind, effect=apply)
        if kind is ActionKind.verify_account:
            logger.info("Account verified for user %s", user_id)
            user = self.users.get_by_id(user_id)
            if user is not None and hasattr(self.mailer, "send_welcome"):
                self.mailer.send_welcome(user)
        else:
            logger.info("Password reset for user %s", user_id)
        return user_id

    # ---------------------------------------------------------------------------
    # Accounts
    # ---------------------------------------------------------------------------

    def register(self, name: str, email: str, password: str) -> User:
        """Create a regular, unverified user and send the verification email.

        The user insert and the token issue are separate writes. If the token
        write fails the account still exists and the user can ask for a resend.
        """
        user = User(name=name, email=email, hashed_password=hash_password(password))
        try:
            user_id = self.users.create_user(user)
        except IntegrityError as exc:
            raise AlreadyExists() from exc
        created = self._require_user(user_id)
        logger.info("Registered user %s", created.id)
        self.request_action(created.id, ActionKind.verify_account)
        return created

    def change_password(self, user_id: uuid.UUID, current: str, new: str) -> None:
        user = self._require_user(user_id)
        if user.hashed_password is None or not verify_password(current, user.hashed_password):
            raise InvalidCredential("Current password is wrong.")
        self.users.update_user(user_id, hashed_password=hash_password(new))
        self.sessions.revoke(user_id)
        logger.info("Password changed for user %s", user_id)

    def set_role(self, user_id: uuid.UUID, role: Role) -> User:
        role = Role(role)
        if not self.users.update_user(user_id, role=role):
            raise NotFound("User not found.")
        self.sessions.revoke(user_id)
        logger.info("Role of user %s set to %s", user_id, role.value)
        return self._require_user(user_id)

    def delete_user(self, user_id: uuid.UUID) -> None:
        if not self.users.delete_user(user_id):
            raise NotFound("User not found.")
        logger.info("Deleted user %s", user_id)
