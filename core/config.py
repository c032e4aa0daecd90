"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionTrust happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing relies
  on key entropy -- a short key makes access tokens forgeable.

  PREVIOUS_SECRET_KEYS are accepted for verification only. Rotating the
  signing key therefore never logs anyone out before their access token would
  have expired anyway, and refresh tokens (opaque, SHA-256 digested) are not
  tied to the signing key at all.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiontrust.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessiontrust.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    previous_secret_keys: list[str] = []
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    # Lifetime of the token that bridges a password check and its 2FA step.
    challenge_token_ttl_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Password hashing (argon2id raw derivation)
    # ------------------------------------------------------------------

    password_time_cost: int = 3
    password_memory_cost: int = 64 * 1024  # KiB
    password_parallelism: int = 4
    password_hash_len: int = 32
    password_reset_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    otp_code_length: int = 6
    otp_ttl_seconds: int = 5 * 60
    otp_resend_cooldown_seconds: int = 60
    otp_enroll_max_attempts: int = 5
    totp_valid_window: int = 1
    totp_issuer: str = "SessionTrust"

    # ------------------------------------------------------------------
    # Federated identity (empty audience means federated login is disabled)
    # ------------------------------------------------------------------

    federated_provider: str = "google"
    federated_audience: str = ""
    federated_issuers: list[str] = ["https://accounts.google.com", "accounts.google.com"]
    federated_jwks_url: str = "https://www.googleapis.com/oauth2/v3/certs"
    federated_fetch_attempts: int = 3
    # Minimum gap between JWKS fetches triggered by unknown key ids
    federated_jwks_refetch_seconds: int = 60

    # ------------------------------------------------------------------
    # Account policy
    # ------------------------------------------------------------------

    reactivate_on_login: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing. A random key in production would silently
            invalidate every access token on each restart.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.otp_code_length < 6 or self.otp_code_length > 10:
            raise ValueError("OTP_CODE_LENGTH must be between 6 and 10.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
