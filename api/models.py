"""
API request and response models for SessionTrust REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import TokenPair, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: deliverability is proven by the reset / OTP flows, not
# by a regex. Normalisation to lower case happens in the auth service.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 256  # caps hashing work per request


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(_Request):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class LoginRequest(_Request):
    """Request body for POST /api/v1/auth/login and /auth/reactivate.

    No length policy on the password: a login must be able to fail with
    invalid_credentials rather than a validation error that hints at policy.
    """

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class TwoFactorLoginRequest(_Request):
    challenge_token: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=16)


class ChallengeRequest(_Request):
    challenge_token: str = Field(min_length=1)


class FederatedLoginRequest(_Request):
    id_token: str = Field(min_length=1, max_length=8192)


class FederatedLinkRequest(_Request):
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    id_token: str = Field(min_length=1, max_length=8192)


class RefreshRequest(_Request):
    refresh_token: str = Field(min_length=1, max_length=512)


class ChangePasswordRequest(_Request):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class ForgotPasswordRequest(_Request):
    email: str = Field(min_length=1, max_length=320)


class ResetPasswordRequest(_Request):
    code: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class TwoFactorCodeRequest(_Request):
    code: str = Field(min_length=1, max_length=16)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """A freshly issued session. refresh_token is shown once and never again."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            session_id=pair.session_id,
        )


class LoginResponse(BaseModel):
    """Either tokens, or requires_two_factor with a challenge_token."""

    model_config = ConfigDict(frozen=True)

    requires_two_factor: bool = False
    challenge_token: Optional[str] = None
    tokens: Optional[TokenResponse] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    role: str
    status: str
    provider: Optional[str] = None
    has_password: bool
    two_factor_enabled: bool
    display_name: Optional[str] = None
    picture: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            status=user.status.value,
            provider=user.provider,
            has_password=user.has_password,
            two_factor_enabled=user.two_factor_enabled,
            display_name=user.display_name,
            picture=user.picture,
            last_login=user.last_login,
        )


class UserStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: str


class TwoFactorSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class TwoFactorConfirmResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool


class RevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
