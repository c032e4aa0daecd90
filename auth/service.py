"""
auth/service.py -- Authentication use cases.

AuthService is the one entry point the HTTP layer talks to. Each public
method is a complete flow (register, login, refresh, password reset, ...)
composed from the smaller components:

    CredentialStore + PasswordHasher   primary credential check
    FederatedIdentityBroker            external identity sign-in / linking
    ensure_session_allowed             status gate (auth/status.py)
    TwoFactorChallenge                 optional second step
    TokenService                       session issuance and revocation

Security notes:
  Uniform failures: an unknown email and a wrong password both raise
       InvalidCredentials after the same amount of hashing work
       (PasswordHasher.equalize). Federated-only accounts get the distinct
       NoPasswordCredential so the client can offer the right sign-in button.

  Global revocation: password change, password reset, logout-everywhere and
       every status change away from active bump token_version and revoke all
       refresh tokens. Access tokens issued before that point are rejected by
       TokenService.verify() from then on.

  Reset codes: 256-bit random, stored as SHA-256, single use, expiring.
       forgot_password() returns silently for unknown emails so it cannot be
       used to enumerate accounts.

Layer rule: no imports from api/. Import from core/ is allowed for the
Settings type only.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.contracts import CodeSender, CredentialStore, FederatedIdentityVerifier
from auth.delivery import LoggingCodeSender
from auth.errors import (
    AccountInactive,
    EmailInUse,
    InvalidCredentials,
    NoPasswordCredential,
    ResetCodeInvalid,
    UserNotFound,
)
from auth.federated import FederatedIdentityBroker, OidcIdentityVerifier
from auth.models import LoginResult, TokenPair, TwoFactorSetup, User, UserStatus
from auth.passwords import PasswordHasher
from auth.session import TokenService
from auth.status import AccountStateMachine, ensure_session_allowed
from auth.tokens import TokenCodec, digest_secret, utcnow
from auth.twofactor import TwoFactorChallenge

if TYPE_CHECKING:
    from auth.store import AuthStore
    from core.config import Settings

logger = logging.getLogger("sessiontrust.auth.service")

PURPOSE_PASSWORD_RESET = "password_reset"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Orchestrates every authentication flow.

    Usage:
        service = AuthService.build(get_settings(), AuthStore(url))
        pair = service.register("a@example.com", "correct horse")
        result = service.login("a@example.com", "correct horse")
    """

    def __init__(
        self,
        *,
        users: CredentialStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        accounts: AccountStateMachine,
        two_factor: TwoFactorChallenge,
        sender: CodeSender,
        broker: FederatedIdentityBroker | None = None,
        reset_ttl_seconds: int = 3600,
        reactivate_on_login: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.tokens = tokens
        self.accounts = accounts
        self.two_factor = two_factor
        self.broker = broker
        self._sender = sender
        self._reset_ttl = timedelta(seconds=reset_ttl_seconds)
        self._reactivate_on_login = reactivate_on_login
        self._clock = clock

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: AuthStore,
        *,
        sender: CodeSender | None = None,
        verifier: FederatedIdentityVerifier | None = None,
        hasher: PasswordHasher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        """Wire every component on top of one AuthStore."""
        sender = sender or LoggingCodeSender()
        if verifier is None and settings.federated_audience:
            verifier = OidcIdentityVerifier.from_settings(settings, clock=clock)
        tokens = TokenService(
            TokenCodec.from_settings(settings, clock=clock),
            store,
            store,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )
        return cls(
            users=store,
            hasher=hasher or PasswordHasher.from_settings(settings),
            tokens=tokens,
            accounts=AccountStateMachine(store, store),
            two_factor=TwoFactorChallenge.from_settings(settings, store, store, sender, clock=clock),
            sender=sender,
            broker=FederatedIdentityBroker(store, verifier) if verifier is not None else None,
            reset_ttl_seconds=settings.password_reset_ttl_seconds,
            reactivate_on_login=settings.reactivate_on_login,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Registration and primary sign-in
    # ------------------------------------------------------------------

    def register(self, email: str, password: str) -> TokenPair:
        email = normalize_email(email)
        if self.users.find_by_email(email) is not None:
            raise EmailInUse()
        password_hash = self.hasher.hash(password)
        try:
            user = self.users.create(User(email=email, password_hash=password_hash))
        except IntegrityError:
            # Concurrent registration with the same email won the insert.
            raise EmailInUse() from None
        logger.info("Registered user %s", user.id)
        self.users.touch_last_login(user.id)
        return self.tokens.issue_session(user)

    def login(self, email: str, password: str) -> LoginResult:
        """Password sign-in. Returns tokens, or a 2FA challenge to complete."""
        user = self._check_password(normalize_email(email), password)
        if user.status is UserStatus.INACTIVE and self._reactivate_on_login:
            user = self.accounts.reactivate(user.id)
        ensure_session_allowed(user)
        return self._begin_session(user)

    def reactivate(self, email: str, password: str) -> LoginResult:
        """Self-service return of a deactivated account.

        Blocked and deleted accounts get the same AccountInactive answer login
        gives them; only inactive ones are moved back to active.
        """
        user = self._check_password(normalize_email(email), password)
        if user.status is UserStatus.INACTIVE:
            user = self.accounts.reactivate(user.id)
        ensure_session_allowed(user)
        return self._begin_session(user)

    def complete_two_factor_login(self, challenge_token: str, code: str) -> TokenPair:
        user = self.tokens.verify_challenge(challenge_token)
        ensure_session_allowed(user)
        self.two_factor.verify(user, code)
        self.users.touch_last_login(user.id)
        return self.tokens.issue_session(user)

    def resend_two_factor_code(self, challenge_token: str) -> None:
        user = self.tokens.verify_challenge(challenge_token)
        ensure_session_allowed(user)
        self.two_factor.resend(user)

    # ------------------------------------------------------------------
    # Federated identity
    # ------------------------------------------------------------------

    def federated_login(self, id_token: str) -> LoginResult:
        if self.broker is None:
            raise InvalidCredentials()
        user = self.broker.resolve(id_token)
        if user.status is UserStatus.INACTIVE and self._reactivate_on_login:
            user = self.accounts.reactivate(user.id)
        ensure_session_allowed(user)
        return self._begin_session(user)

    def link_federated_identity(self, user_id: str, password: str, id_token: str) -> User:
        """Attach an external identity after re-checking the account password."""
        if self.broker is None:
            raise InvalidCredentials()
        user = self._require_user(user_id)
        if not user.has_password:
            raise NoPasswordCredential()
        if not self.hasher.verify(password, user.password_hash):
            raise InvalidCredentials()
        return self.broker.link(user, id_token)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.refresh(refresh_token)

    def logout(self, refresh_token: str) -> bool:
        return self.tokens.revoke(refresh_token)

    def logout_everywhere(self, user_id: str) -> int:
        """Kill every session: refresh tokens revoked, access tokens outdated."""
        if self.users.increment_token_version(user_id) is None:
            raise UserNotFound()
        return self.tokens.revoke_all(user_id)

    def authenticate(self, access_token: str) -> User:
        """Resolve a bearer token to its live user record."""
        return self.tokens.current_user(access_token)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, user_id: str, current_password: str, new_password: str) -> TokenPair:
        """Replace the password, end every session, and start a fresh one."""
        user = self._require_user(user_id)
        if not user.has_password:
            raise NoPasswordCredential()
        if not self.hasher.verify(current_password, user.password_hash):
            raise InvalidCredentials()
        self.users.update_fields(user.id, password_hash=self.hasher.hash(new_password))
        self.users.increment_token_version(user.id)
        self.tokens.revoke_all(user.id)
        logger.info("Password changed for user %s", user.id)
        return self.tokens.issue_session(self._require_user(user.id))

    def forgot_password(self, email: str) -> None:
        """Issue and deliver a reset code. Silent for unknown, blocked and deleted accounts."""
        user = self.users.find_by_email(normalize_email(email))
        if user is None:
            logger.debug("Password reset requested for unknown email")
            return
        if user.status not in (UserStatus.ACTIVE, UserStatus.INACTIVE):
            logger.info("Password reset refused for %s user %s", user.status.value, user.id)
            return
        code = secrets.token_urlsafe(32)
        self.users.update_fields(
            user.id,
            password_reset_code=digest_secret(code),
            password_reset_expires_at=self._clock() + self._reset_ttl,
        )
        self._sender.send_code(user, code, PURPOSE_PASSWORD_RESET)
        logger.info("Password reset code issued for user %s", user.id)

    def reset_password(self, code: str, new_password: str) -> LoginResult:
        """Redeem a reset code. Also gives federated-only accounts a password.

        The code proves control of the mailbox only, so an account with 2FA
        enabled still has to pass the second factor before it gets a session.
        Blocked and deleted accounts are refused before the code is consumed.
        An inactive account gets its new password but no session; it comes
        back through reactivate() like after any other deactivation, unless
        reactivate_on_login is set.
        """
        if not code:
            raise ResetCodeInvalid()
        code_hash = digest_secret(code)
        user = self.users.find_by_reset_code(code_hash)
        if user is None:
            raise ResetCodeInvalid()
        if user.status not in (UserStatus.ACTIVE, UserStatus.INACTIVE):
            raise AccountInactive(reactivatable=False)
        if not self.users.consume_reset_code(user.id, code_hash, self._clock(), self.hasher.hash(new_password)):
            raise ResetCodeInvalid()
        self.tokens.revoke_all(user.id)
        logger.info("Password reset completed for user %s", user.id)
        updated = self._require_user(user.id)
        if updated.status is UserStatus.INACTIVE and self._reactivate_on_login:
            updated = self.accounts.reactivate(updated.id)
        ensure_session_allowed(updated)
        return self._begin_session(updated)

    # ------------------------------------------------------------------
    # Two-factor enrollment
    # ------------------------------------------------------------------

    def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.setup(self._require_user(user_id))

    def confirm_two_factor(self, user_id: str, code: str) -> bool:
        return self.two_factor.verify_enrollment(self._require_user(user_id), code)

    # ------------------------------------------------------------------
    # Account status
    # ------------------------------------------------------------------

    def ban(self, user_id: str) -> User:
        return self.accounts.ban(user_id)

    def deactivate(self, user_id: str) -> User:
        return self.accounts.deactivate(user_id)

    def delete(self, user_id: str) -> User:
        return self.accounts.delete(user_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_password(self, email: str, password: str) -> User:
        user = self.users.find_by_email(email)
        if user is None:
            self.hasher.equalize(password)
            raise InvalidCredentials()
        if not user.has_password:
            self.hasher.equalize(password)
            raise NoPasswordCredential()
        if not self.hasher.verify(password, user.password_hash):
            raise InvalidCredentials()
        return user

    def _begin_session(self, user: User) -> LoginResult:
        if user.two_factor_enabled:
            self.two_factor.challenge(user)
            return LoginResult(requires_two_factor=True, challenge_token=self.tokens.issue_challenge_token(user))
        self.users.touch_last_login(user.id)
        return LoginResult(tokens=self.tokens.issue_session(user))

    def _require_user(self, user_id: str) -> User:
        user = self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user

