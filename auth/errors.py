"""
auth/errors.py -- Exception taxonomy surfaced by the authentication core.

Every failure that crosses the auth/ boundary is one of these classes. Each
carries a stable machine-readable code and the HTTP status the api/ layer
answers with, so route handlers never have to pattern-match on messages.

Uniformity rule: wrong password, unknown email, corrupt stored hash and a
failed external ID token all raise InvalidCredentials with the same message.
TokenVersionMismatch subclasses InvalidCredentials and shares its public code
so a stale token is indistinguishable from a forged one on the wire.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error the authentication core raises."""

    code: str = "auth_error"
    status_code: int = 400
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, detail: dict | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials."


class TokenVersionMismatch(InvalidCredentials):
    """The token predates a ban, password change or other global revocation."""


class ResetCodeInvalid(InvalidCredentials):
    default_message = "Reset code is invalid or has expired."


class NoPasswordCredential(AuthError):
    """The account only authenticates through an external identity provider."""

    code = "password_login_unavailable"
    status_code = 403
    default_message = "This account signs in with an external identity provider."


class AccountInactive(AuthError):
    """The status gate refused to start a session.

    reactivatable separates "you deactivated this account, sign in again to
    reactivate" from "contact support" without naming the exact status.
    """

    code = "account_inactive"
    status_code = 403
    default_message = "Account is not active."

    def __init__(self, message: str | None = None, *, reactivatable: bool = False) -> None:
        super().__init__(message, detail={"reactivatable": reactivatable})
        self.reactivatable = reactivatable


class TokenExpired(AuthError):
    code = "token_expired"
    status_code = 401
    default_message = "Token has expired."


class TokenRevoked(AuthError):
    code = "token_revoked"
    status_code = 401
    default_message = "Token has been revoked."


class OtpInvalid(AuthError):
    code = "otp_invalid"
    status_code = 401
    default_message = "Invalid verification code."


class OtpExpired(AuthError):
    code = "otp_expired"
    status_code = 401
    default_message = "Verification code has expired."


class OtpThrottled(AuthError):
    code = "otp_throttled"
    status_code = 429
    default_message = "A code was sent recently. Try again later."

    def __init__(self, message: str | None = None, *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class FederatedAccountConflict(AuthError):
    code = "federated_account_conflict"
    status_code = 409
    default_message = "An account with this email already exists. Sign in and link the identity explicitly."


class UserNotFound(AuthError):
    code = "user_not_found"
    status_code = 404
    default_message = "User not found."


class EmailInUse(AuthError):
    code = "email_in_use"
    status_code = 409
    default_message = "Email is already registered."


class InvalidTransition(AuthError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Account status change is not allowed."
