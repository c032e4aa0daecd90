"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register               -- create password account; returns tokens
  POST /api/v1/auth/login                  -- password login; tokens or 2FA challenge
  POST /api/v1/auth/login/2fa              -- finish login with challenge token + code
  POST /api/v1/auth/login/2fa/resend       -- resend the second-factor code
  POST /api/v1/auth/federated              -- sign in with an external ID token
  POST /api/v1/auth/federated/link         -- link an external identity (requires auth)
  POST /api/v1/auth/refresh                -- rotate a refresh token
  POST /api/v1/auth/logout                 -- revoke one refresh token
  POST /api/v1/auth/logout-all             -- revoke every session (requires auth)
  GET  /api/v1/auth/me                     -- current user info (requires auth)
  POST /api/v1/auth/change-password        -- requires auth; returns fresh tokens
  POST /api/v1/auth/forgot-password        -- always 202
  POST /api/v1/auth/reset-password         -- redeem reset code; tokens or 2FA challenge
  POST /api/v1/auth/reactivate             -- credentials in, account back to active
  POST /api/v1/auth/deactivate             -- user deactivates own account (requires auth)
  POST /api/v1/auth/2fa/setup              -- start TOTP enrollment (requires auth)
  POST /api/v1/auth/2fa/verify             -- confirm TOTP enrollment (requires auth)

Security:
  [H2] Credential-accepting endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a token.
  Handlers are plain `def`: password hashing blocks, so FastAPI runs them on
  its worker thread pool instead of the event loop.
  Domain failures propagate as AuthError and are rendered by api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    ChallengeRequest,
    ChangePasswordRequest,
    FederatedLinkRequest,
    FederatedLoginRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokedResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorConfirmResponse,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    UserStatusResponse,
)
from auth.dependencies import get_current_user
from auth.models import LoginResult, User
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - register, login, login/2fa, login/2fa/resend, federated, refresh, logout,
#   forgot-password, reset-password, reactivate: public
# - everything else: requires a valid access token (get_current_user)
router = APIRouter()


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _login_response(result: LoginResult) -> LoginResponse:
    if result.requires_two_factor:
        return LoginResponse(requires_two_factor=True, challenge_token=result.challenge_token)
    return LoginResponse(tokens=TokenResponse.from_pair(result.tokens))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
@limiter.limit(_login_limit)  # [H2] must sit BELOW @router so the limited wrapper is what gets registered
def register(request: Request, response: Response, body: RegisterRequest) -> TokenResponse:
    _no_store(response)
    pair = _service(request).register(body.email, body.password)
    return TokenResponse.from_pair(pair)


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_login_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email and password.

    Wrong password and unknown email produce the same invalid_credentials
    error after the same hashing work. A federated-only account answers
    password_login_unavailable instead.
    """
    _no_store(response)
    return _login_response(_service(request).login(body.email, body.password))


@router.post("/auth/login/2fa", response_model=TokenResponse)
@limiter.limit(_login_limit)  # [H2]
def login_two_factor(request: Request, response: Response, body: TwoFactorLoginRequest) -> TokenResponse:
    _no_store(response)
    pair = _service(request).complete_two_factor_login(body.challenge_token, body.code)
    return TokenResponse.from_pair(pair)


@router.post("/auth/login/2fa/resend", response_model=MessageResponse, status_code=202)
def resend_two_factor_code(request: Request, body: ChallengeRequest) -> MessageResponse:
    """Resend the login code. 429 with Retry-After inside the cooldown."""
    _service(request).resend_two_factor_code(body.challenge_token)
    return MessageResponse(message="Verification code sent.")


@router.post("/auth/federated", response_model=LoginResponse)
@limiter.limit(_login_limit)  # [H2]
def federated_login(request: Request, response: Response, body: FederatedLoginRequest) -> LoginResponse:
    """Sign in with a provider ID token.

    A new identity whose email already belongs to a local account is
    refused with federated_account_conflict; the owner links it through
    /auth/federated/link after signing in.
    """
    _no_store(response)
    return _login_response(_service(request).federated_login(body.id_token))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    _no_store(response)
    return TokenResponse.from_pair(_service(request).refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> MessageResponse:
    """Revoke the presented refresh token. Idempotent."""
    _service(request).logout(body.refresh_token)
    return MessageResponse(message="Logged out.")


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
@limiter.limit(_login_limit)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 202, whether or not the email is registered."""
    _service(request).forgot_password(body.email)
    return MessageResponse(message="If the account exists, a reset code has been sent.")


@router.post("/auth/reset-password", response_model=LoginResponse)
@limiter.limit(_login_limit)  # [H2]
def reset_password(request: Request, response: Response, body: ResetPasswordRequest) -> LoginResponse:
    """Redeem a reset code. Accounts with 2FA get a challenge, not tokens."""
    _no_store(response)
    return _login_response(_service(request).reset_password(body.code, body.new_password))


@router.post("/auth/reactivate", response_model=LoginResponse)
@limiter.limit(_login_limit)  # [H2]
def reactivate(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    _no_store(response)
    return _login_response(_service(request).reactivate(body.email, body.password))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_user(current_user)


@router.post("/auth/logout-all", response_model=RevokedResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> RevokedResponse:
    """End every session of the caller, including the one making this request."""
    return RevokedResponse(revoked=_service(request).logout_everywhere(current_user.id))


@router.post("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> TokenResponse:
    """Replace the password; all other sessions end, a fresh one is returned."""
    _no_store(response)
    pair = _service(request).change_password(current_user.id, body.current_password, body.new_password)
    return TokenResponse.from_pair(pair)


@router.post("/auth/federated/link", response_model=MeResponse)
def link_federated_identity(
    request: Request,
    body: FederatedLinkRequest,
    current_user: User = Depends(get_current_user),
) -> MeResponse:
    user = _service(request).link_federated_identity(current_user.id, body.password, body.id_token)
    return MeResponse.from_user(user)


@router.post("/auth/deactivate", response_model=UserStatusResponse)
def deactivate_self(request: Request, current_user: User = Depends(get_current_user)) -> UserStatusResponse:
    """Deactivate the caller's own account. Sign in via /auth/reactivate to return."""
    user = _service(request).deactivate(current_user.id)
    return UserStatusResponse(user_id=user.id, status=user.status.value)


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def setup_two_factor(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> TwoFactorSetupResponse:
    _no_store(response)
    setup = _service(request).setup_two_factor(current_user.id)
    return TwoFactorSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post("/auth/2fa/verify", response_model=TwoFactorConfirmResponse)
def confirm_two_factor(
    request: Request,
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
) -> TwoFactorConfirmResponse:
    """Confirm enrollment. enabled=false means the code did not match."""
    return TwoFactorConfirmResponse(enabled=_service(request).confirm_two_factor(current_user.id, body.code))
