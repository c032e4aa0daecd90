"""Scenario tests for auth/service.py -- end-to-end authentication flows.

Each test drives AuthService the way an HTTP handler would and asserts on the
observable outcome: tokens issued or refused, codes delivered, sessions
revoked.
"""

import pyotp
import pytest

from auth.errors import (
    AccountInactive,
    EmailInUse,
    FederatedAccountConflict,
    InvalidCredentials,
    NoPasswordCredential,
    OtpInvalid,
    ResetCodeInvalid,
    TokenRevoked,
    TokenVersionMismatch,
    UserNotFound,
)
from auth.federated import FederatedIdentityBroker
from auth.models import FederatedProfile, UserStatus
from auth.service import PURPOSE_PASSWORD_RESET, AuthService
from auth.twofactor import PURPOSE_LOGIN

EMAIL = "alice@example.com"
PASSWORD = "correct horse battery"


class StubVerifier:
    def __init__(self) -> None:
        self.profiles: dict[str, FederatedProfile] = {}

    def verify(self, id_token: str) -> FederatedProfile:
        if id_token not in self.profiles:
            raise InvalidCredentials()
        return self.profiles[id_token]


@pytest.fixture
def stub(service, store) -> StubVerifier:
    verifier = StubVerifier()
    service.broker = FederatedIdentityBroker(store, verifier)
    return verifier


def _profile(subject: str = "g-1", email: str = "fed@example.com", verified: bool = True) -> FederatedProfile:
    return FederatedProfile(provider="google", subject=subject, email=email, email_verified=verified)


def _enable_two_factor(service, store, clock, email: str = EMAIL):
    user = store.find_by_email(email)
    setup = service.setup_two_factor(user.id)
    assert service.confirm_two_factor(user.id, pyotp.TOTP(setup.secret).at(clock()))
    return store.find_by_email(email)


# ---------------------------------------------------------------------------
# Registration and password login
# ---------------------------------------------------------------------------


def test_register_then_login(service):
    pair = service.register(EMAIL, PASSWORD)
    assert service.authenticate(pair.access_token).email == EMAIL

    result = service.login(EMAIL, PASSWORD)
    assert result.requires_two_factor is False
    assert result.tokens is not None
    assert result.tokens.session_id != pair.session_id


def test_email_is_normalised(service, store):
    service.register("  Alice@Example.COM ", PASSWORD)
    assert store.find_by_email(EMAIL) is not None
    assert service.login("ALICE@example.com", PASSWORD).tokens


def test_duplicate_registration(service):
    service.register(EMAIL, PASSWORD)
    with pytest.raises(EmailInUse):
        service.register(EMAIL.upper(), "another password")


def test_password_is_not_stored_in_clear(service, store):
    service.register(EMAIL, PASSWORD)
    stored = store.find_by_email(EMAIL).password_hash
    assert PASSWORD not in stored
    assert "." in stored


def test_wrong_password_and_unknown_email_look_the_same(service):
    service.register(EMAIL, PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        service.login(EMAIL, "wrong password")
    with pytest.raises(InvalidCredentials) as unknown:
        service.login("nobody@example.com", PASSWORD)
    assert wrong.value.code == unknown.value.code
    assert wrong.value.message == unknown.value.message


def test_corrupt_stored_hash_is_invalid_credentials(service, store):
    service.register(EMAIL, PASSWORD)
    store.update_fields(store.find_by_email(EMAIL).id, password_hash="not-a-hash")
    with pytest.raises(InvalidCredentials):
        service.login(EMAIL, PASSWORD)


def test_login_records_last_login(service, store):
    service.register(EMAIL, PASSWORD)
    service.login(EMAIL, PASSWORD)
    assert store.find_by_email(EMAIL).last_login is not None


# ---------------------------------------------------------------------------
# Two-factor login
# ---------------------------------------------------------------------------


def test_two_factor_login_flow(service, store, sender, clock):
    service.register(EMAIL, PASSWORD)
    _enable_two_factor(service, store, clock)

    result = service.login(EMAIL, PASSWORD)
    assert result.requires_two_factor is True
    assert result.tokens is None
    assert result.challenge_token

    # The challenge token is not a session.
    with pytest.raises(InvalidCredentials):
        service.authenticate(result.challenge_token)

    code = sender.last(PURPOSE_LOGIN)
    pair = service.complete_two_factor_login(result.challenge_token, code)
    assert service.authenticate(pair.access_token).email == EMAIL

    with pytest.raises(OtpInvalid):
        service.complete_two_factor_login(result.challenge_token, code)


def test_two_factor_wrong_code(service, store, sender, clock):
    service.register(EMAIL, PASSWORD)
    _enable_two_factor(service, store, clock)
    result = service.login(EMAIL, PASSWORD)
    wrong = "111111" if sender.last(PURPOSE_LOGIN) == "000000" else "000000"
    with pytest.raises(OtpInvalid):
        service.complete_two_factor_login(result.challenge_token, wrong)


def test_two_factor_challenge_dies_with_ban(service, store, sender, clock):
    service.register(EMAIL, PASSWORD)
    user = _enable_two_factor(service, store, clock)
    result = service.login(EMAIL, PASSWORD)
    service.ban(user.id)
    with pytest.raises(InvalidCredentials):
        service.complete_two_factor_login(result.challenge_token, sender.last(PURPOSE_LOGIN))


def test_two_factor_resend(service, store, sender, clock):
    service.register(EMAIL, PASSWORD)
    _enable_two_factor(service, store, clock)
    result = service.login(EMAIL, PASSWORD)
    first = sender.last(PURPOSE_LOGIN)
    clock.advance(60)
    service.resend_two_factor_code(result.challenge_token)
    second = sender.last(PURPOSE_LOGIN)
    assert second != first
    assert service.complete_two_factor_login(result.challenge_token, second).access_token


def test_authenticator_app_completes_login_without_delivery(settings, store, hasher, clock):
    # LoggingCodeSender never shows the delivered code to anyone.
    service = AuthService.build(settings, store, hasher=hasher, clock=clock)
    service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)
    setup = service.setup_two_factor(user.id)
    totp = pyotp.TOTP(setup.secret)
    assert service.confirm_two_factor(user.id, totp.at(clock()))

    clock.advance(30)
    result = service.login(EMAIL, PASSWORD)
    assert result.requires_two_factor is True
    pair = service.complete_two_factor_login(result.challenge_token, totp.at(clock()))
    assert service.authenticate(pair.access_token).email == EMAIL

    # The same authenticator code cannot open a second session.
    again = service.login(EMAIL, PASSWORD)
    with pytest.raises(OtpInvalid):
        service.complete_two_factor_login(again.challenge_token, totp.at(clock()))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_refresh_and_logout(service):
    pair = service.register(EMAIL, PASSWORD)
    renewed = service.refresh(pair.refresh_token)
    assert service.logout(renewed.refresh_token) is True
    with pytest.raises(TokenRevoked):
        service.refresh(renewed.refresh_token)


def test_logout_everywhere(service, store):
    first = service.register(EMAIL, PASSWORD)
    second = service.login(EMAIL, PASSWORD).tokens
    user = store.find_by_email(EMAIL)

    assert service.logout_everywhere(user.id) == 2
    for pair in (first, second):
        with pytest.raises(TokenVersionMismatch):
            service.authenticate(pair.access_token)
        with pytest.raises(TokenRevoked):
            service.refresh(pair.refresh_token)
    # Fresh sign-in still works.
    assert service.login(EMAIL, PASSWORD).tokens


def test_logout_everywhere_unknown_user(service):
    with pytest.raises(UserNotFound):
        service.logout_everywhere("missing")


# ---------------------------------------------------------------------------
# Password change and reset
# ---------------------------------------------------------------------------


def test_change_password_invalidates_old_sessions(service, store):
    old = service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)

    fresh = service.change_password(user.id, PASSWORD, "a brand new password")

    with pytest.raises(TokenVersionMismatch):
        service.authenticate(old.access_token)
    with pytest.raises(TokenRevoked):
        service.refresh(old.refresh_token)
    assert service.authenticate(fresh.access_token).id == user.id
    with pytest.raises(InvalidCredentials):
        service.login(EMAIL, PASSWORD)
    assert service.login(EMAIL, "a brand new password").tokens


def test_change_password_requires_current_password(service, store):
    pair = service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)
    with pytest.raises(InvalidCredentials):
        service.change_password(user.id, "wrong", "a brand new password")
    service.authenticate(pair.access_token)


def test_forgot_and_reset_password(service, store, sender):
    old = service.register(EMAIL, PASSWORD)
    service.forgot_password(EMAIL)
    code = sender.last(PURPOSE_PASSWORD_RESET)
    assert store.find_by_email(EMAIL).password_reset_code != code

    result = service.reset_password(code, "reset password 123")
    assert result.requires_two_factor is False
    assert service.authenticate(result.tokens.access_token).email == EMAIL
    with pytest.raises(TokenVersionMismatch):
        service.authenticate(old.access_token)
    with pytest.raises(TokenRevoked):
        service.refresh(old.refresh_token)

    with pytest.raises(ResetCodeInvalid):
        service.reset_password(code, "another password 456")
    assert service.login(EMAIL, "reset password 123").tokens


def test_reset_code_expires(service, sender, clock):
    service.register(EMAIL, PASSWORD)
    service.forgot_password(EMAIL)
    code = sender.last(PURPOSE_PASSWORD_RESET)
    clock.advance(3600)
    with pytest.raises(ResetCodeInvalid):
        service.reset_password(code, "reset password 123")


def test_newer_reset_code_replaces_older(service, sender):
    service.register(EMAIL, PASSWORD)
    service.forgot_password(EMAIL)
    first = sender.last(PURPOSE_PASSWORD_RESET)
    service.forgot_password(EMAIL)
    with pytest.raises(ResetCodeInvalid):
        service.reset_password(first, "reset password 123")
    service.reset_password(sender.last(PURPOSE_PASSWORD_RESET), "reset password 123")


def test_forgot_password_unknown_email_is_silent(service, sender):
    service.forgot_password("nobody@example.com")
    assert sender.sent == []


@pytest.mark.parametrize("code", ["", "not-a-real-code"])
def test_reset_with_bad_code(service, code):
    with pytest.raises(ResetCodeInvalid):
        service.reset_password(code, "reset password 123")


def test_reset_refused_for_banned_account(service, store, sender):
    service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)
    service.forgot_password(EMAIL)
    code = sender.last(PURPOSE_PASSWORD_RESET)
    service.ban(user.id)
    with pytest.raises(AccountInactive):
        service.reset_password(code, "reset password 123")
    # The gate runs before the code is consumed.
    assert store.find_by_email(EMAIL).password_reset_code is not None


def test_reset_still_requires_second_factor(service, store, sender, clock):
    service.register(EMAIL, PASSWORD)
    _enable_two_factor(service, store, clock)
    service.forgot_password(EMAIL)

    result = service.reset_password(sender.last(PURPOSE_PASSWORD_RESET), "reset password 123")
    assert result.requires_two_factor is True
    assert result.tokens is None
    with pytest.raises(InvalidCredentials):
        service.authenticate(result.challenge_token)

    pair = service.complete_two_factor_login(result.challenge_token, sender.last(PURPOSE_LOGIN))
    assert service.authenticate(pair.access_token).email == EMAIL


def test_reset_for_inactive_account_needs_reactivation(service, store, sender):
    service.register(EMAIL, PASSWORD)
    service.deactivate(store.find_by_email(EMAIL).id)
    service.forgot_password(EMAIL)

    with pytest.raises(AccountInactive) as excinfo:
        service.reset_password(sender.last(PURPOSE_PASSWORD_RESET), "reset password 123")
    assert excinfo.value.reactivatable is True
    assert store.find_by_email(EMAIL).status is UserStatus.INACTIVE
    # The new password is in place; reactivation takes it.
    assert service.reactivate(EMAIL, "reset password 123").tokens is not None


@pytest.mark.parametrize("action", ["ban", "delete"])
def test_forgot_password_silent_for_closed_accounts(service, store, sender, action):
    service.register(EMAIL, PASSWORD)
    getattr(service, action)(store.find_by_email(EMAIL).id)

    service.forgot_password(EMAIL)
    assert [s for s in sender.sent if s.purpose == PURPOSE_PASSWORD_RESET] == []
    assert store.find_by_email(EMAIL).password_reset_code is None


# ---------------------------------------------------------------------------
# Account status
# ---------------------------------------------------------------------------


def test_ban_ends_every_session(service, store):
    pair = service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)
    service.ban(user.id)

    with pytest.raises(TokenVersionMismatch):
        service.authenticate(pair.access_token)
    with pytest.raises(TokenRevoked):
        service.refresh(pair.refresh_token)
    with pytest.raises(AccountInactive) as excinfo:
        service.login(EMAIL, PASSWORD)
    assert excinfo.value.reactivatable is False


def test_deactivate_and_reactivate(service, store):
    pair = service.register(EMAIL, PASSWORD)
    user = store.find_by_email(EMAIL)
    service.deactivate(user.id)

    with pytest.raises(TokenVersionMismatch):
        service.authenticate(pair.access_token)
    with pytest.raises(AccountInactive) as excinfo:
        service.login(EMAIL, PASSWORD)
    assert excinfo.value.reactivatable is True

    with pytest.raises(InvalidCredentials):
        service.reactivate(EMAIL, "wrong")
    result = service.reactivate(EMAIL, PASSWORD)
    assert result.tokens is not None
    assert store.find_by_email(EMAIL).status is UserStatus.ACTIVE


def test_reactivate_does_not_unban(service, store):
    service.register(EMAIL, PASSWORD)
    service.ban(store.find_by_email(EMAIL).id)
    with pytest.raises(AccountInactive):
        service.reactivate(EMAIL, PASSWORD)
    assert store.find_by_email(EMAIL).status is UserStatus.BLOCKED


def test_reactivate_on_login_policy(settings, store, sender, hasher, clock):
    lenient = AuthService.build(
        settings.model_copy(update={"reactivate_on_login": True}),
        store,
        sender=sender,
        hasher=hasher,
        clock=clock,
    )
    lenient.register(EMAIL, PASSWORD)
    lenient.deactivate(store.find_by_email(EMAIL).id)
    assert lenient.login(EMAIL, PASSWORD).tokens is not None
    assert store.find_by_email(EMAIL).status is UserStatus.ACTIVE


def test_deleted_account_cannot_sign_in(service, store):
    service.register(EMAIL, PASSWORD)
    service.delete(store.find_by_email(EMAIL).id)
    with pytest.raises(AccountInactive):
        service.login(EMAIL, PASSWORD)


# ---------------------------------------------------------------------------
# Federated identity
# ---------------------------------------------------------------------------


def test_federated_login_disabled_by_default(service):
    assert service.broker is None
    with pytest.raises(InvalidCredentials):
        service.federated_login("any-token")


def test_federated_login_creates_user(service, store, stub):
    stub.profiles["t1"] = _profile()
    result = service.federated_login("t1")
    assert result.tokens is not None
    user = service.authenticate(result.tokens.access_token)
    assert user.email == "fed@example.com"
    assert user.is_federated_only


def test_federated_only_user_cannot_use_password(service, stub):
    stub.profiles["t1"] = _profile()
    service.federated_login("t1")
    with pytest.raises(NoPasswordCredential):
        service.login("fed@example.com", "whatever password")


def test_federated_collision_requires_explicit_link(service, store, stub):
    service.register("fed@example.com", PASSWORD)
    stub.profiles["t1"] = _profile()
    with pytest.raises(FederatedAccountConflict):
        service.federated_login("t1")

    user = store.find_by_email("fed@example.com")
    with pytest.raises(InvalidCredentials):
        service.link_federated_identity(user.id, "wrong", "t1")
    linked = service.link_federated_identity(user.id, PASSWORD, "t1")
    assert linked.federated_id == "g-1"
    assert service.federated_login("t1").tokens is not None
    # Password login keeps working for a linked account.
    assert service.login("fed@example.com", PASSWORD).tokens is not None


def test_federated_login_of_banned_user(service, store, stub):
    stub.profiles["t1"] = _profile()
    service.federated_login("t1")
    service.ban(store.find_by_federated_id("g-1").id)
    with pytest.raises(AccountInactive):
        service.federated_login("t1")


def test_reset_gives_federated_user_a_password(service, store, sender, stub):
    stub.profiles["t1"] = _profile()
    service.federated_login("t1")
    service.forgot_password("fed@example.com")
    service.reset_password(sender.last(PURPOSE_PASSWORD_RESET), "now with a password")
    assert service.login("fed@example.com", "now with a password").tokens is not None
