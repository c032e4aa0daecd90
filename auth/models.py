"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and services do the work. The only behaviour here are
read-only properties that name an invariant (e.g. "federated-only").

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"  # soft-deactivated, can come back
    BLOCKED = "blocked"  # administrative ban
    DELETED = "deleted"  # terminal


@dataclass
class User:
    """An identity known to SessionTrust.

    email is always stored lower-cased and stripped; the stores never do
    case-insensitive matching, so normalisation happens before every lookup.

    password_hash is None for federated-only users (they have no local
    password). federated_id / provider are None until the account is created
    from, or explicitly linked to, an external identity provider.

    token_version is the global revocation lever: every access token carries a
    snapshot and is rejected once the live value moves on.

    two_factor_pending_secret holds a freshly generated secret until the user
    proves possession of it; only then is it promoted to two_factor_secret.
    password_reset_code holds the SHA-256 digest of the emailed code, never
    the code itself.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None  # None = federated-only user
    status: UserStatus = UserStatus.ACTIVE
    role: str = "user"
    federated_id: str | None = None  # provider's stable subject id
    provider: str | None = None  # "google", "oidc"
    token_version: int = 0
    two_factor_secret: str | None = None
    two_factor_enabled: bool = False
    two_factor_pending_secret: str | None = None
    two_factor_enroll_attempts: int = 0
    password_reset_code: str | None = None
    password_reset_expires_at: datetime | None = None
    display_name: str | None = None
    picture: str | None = None
    email_verified: bool = False
    created_at: str | None = None
    last_login: str | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_federated_only(self) -> bool:
        return self.federated_id is not None and not self.has_password


@dataclass
class RefreshToken:
    """A persisted refresh credential.

    token_hash is SHA-256(raw_token). The raw value is handed to the client
    once and is unrecoverable afterwards. session_id is shared by every token
    in one rotation chain, so a device keeps a stable identity while its
    secret changes on every refresh.
    """

    user_id: str
    token_hash: str
    session_id: str
    issued_at: datetime
    expires_at: datetime
    id: str | None = None
    revoked: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access (or 2FA challenge) token."""

    subject: str
    email: str
    token_version: int
    issued_at: datetime
    expires_at: datetime
    token_id: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    token_type: str = "bearer"


@dataclass
class OtpChallenge:
    """Outstanding second-factor challenge for one user.

    The code itself is never stored: it is HOTP(two_factor_secret, counter),
    so bumping the counter invalidates whatever code was sent before.
    """

    user_id: str
    counter: int
    expires_at: datetime
    resend_after: datetime
    consumed: bool = False


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class FederatedProfile:
    """Identity claims extracted from a verified external ID token."""

    provider: str
    subject: str
    email: str
    email_verified: bool
    display_name: str | None = None
    given_name: str | None = None
    picture: str | None = None


@dataclass
class LoginResult:
    """Outcome of a primary credential check.

    Either tokens is set (session issued) or requires_two_factor is True and
    challenge_token must be presented together with the OTP to finish login.
    """

    tokens: TokenPair | None = None
    requires_two_factor: bool = False
    challenge_token: str | None = None
