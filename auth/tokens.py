"""
auth/tokens.py -- Access-token codec and opaque-secret helpers.

Security design decisions:
  JWT: python-jose with HS256 (configurable). Access tokens are signed with
       SECRET_KEY and carry sub, email, ver (token_version snapshot), iat,
       exp, jti and typ. Decoding returns a failure value instead of raising
       -- TokenService turns that into the right domain error.

  Key rotation: tokens are always signed with the current key; verification
       also accepts PREVIOUS_SECRET_KEYS so a rotation does not log anyone out
       early.

  Expiry: python-jose's own exp check reads the wall clock. It is disabled
       and exp is compared against the injected clock instead, so expiry is
       deterministic under test and consistent with the rest of the services.

  Token types: "access" tokens authorise requests; "2fa" challenge tokens
       only prove that a password check succeeded moments ago. decode() refuses
       a token of the wrong type, so a challenge token can never be replayed
       as an access token or vice versa.

  Opaque secrets: refresh tokens and password reset codes are
       secrets.token_urlsafe() values (>= 256 bits of entropy) stored as plain
       SHA-256 digests. No key is mixed in on purpose: the digest must survive
       a signing-key rotation, and the entropy of the input already makes
       brute force infeasible.

Layer rule: no imports from api/. Import from core/ is allowed for the
Settings type only.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, NamedTuple

from jose import JWTError, jwt

from auth.models import AccessClaims, User

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessiontrust.auth.tokens")

ACCESS = "access"
CHALLENGE = "2fa"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DecodedToken(NamedTuple):
    """Result of TokenCodec.decode: claims on success, otherwise a reason."""

    claims: AccessClaims | None
    expired: bool = False

    @property
    def ok(self) -> bool:
        return self.claims is not None


_INVALID = DecodedToken(None)


class TokenCodec:
    """Create and verify signed, stateless tokens.

    The codec only answers "is this a well-formed, correctly signed, unexpired
    token of the expected type?". The live token_version comparison needs the
    credential store and lives in TokenService.verify().
    """

    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        access_ttl_seconds: int = 900,
        challenge_ttl_seconds: int = 300,
        previous_keys: Sequence[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenCodec requires a signing key")
        self._secret_key = secret_key
        self._verification_keys = [secret_key, *previous_keys]
        self._algorithm = algorithm
        self.access_ttl_seconds = access_ttl_seconds
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utcnow) -> TokenCodec:
        return cls(
            settings.secret_key,
            algorithm=settings.jwt_algorithm,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            challenge_ttl_seconds=settings.challenge_token_ttl_seconds,
            previous_keys=settings.previous_secret_keys,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def encode_access(self, user: User) -> str:
        return self._encode(user, ACCESS, self.access_ttl_seconds)

    def encode_challenge(self, user: User) -> str:
        return self._encode(user, CHALLENGE, self.challenge_ttl_seconds)

    def _encode(self, user: User, token_type: str, ttl_seconds: int) -> str:
        now = self._clock()
        payload = {
            "sub": user.id,
            "email": user.email,
            "ver": user.token_version,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
            "jti": uuid.uuid4().hex,
            "typ": token_type,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode_access(self, token: str) -> DecodedToken:
        return self._decode(token, ACCESS)

    def decode_challenge(self, token: str) -> DecodedToken:
        return self._decode(token, CHALLENGE)

    def _decode(self, token: str, expected_type: str) -> DecodedToken:
        """Verify signature, type and expiry. Never raises on bad input."""
        if not token or not isinstance(token, str):
            return _INVALID
        payload = None
        for key in self._verification_keys:
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self._algorithm],
                    options={"verify_exp": False, "verify_aud": False},
                )
                break
            except JWTError:
                continue
        if payload is None:
            return _INVALID
        try:
            if payload["typ"] != expected_type:
                return _INVALID
            claims = AccessClaims(
                subject=str(payload["sub"]),
                email=str(payload["email"]),
                token_version=int(payload["ver"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                token_id=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Signed token with malformed claims rejected")
            return _INVALID
        if claims.expires_at <= self._clock():
            return DecodedToken(None, expired=True)
        return DecodedToken(claims)


# ---------------------------------------------------------------------------
# Opaque secrets (refresh tokens, reset codes)
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    """Return a URL-safe random secret with 384 bits of entropy."""
    return secrets.token_urlsafe(48)


def digest_secret(raw: str) -> str:
    """Return the SHA-256 hex digest under which an opaque secret is stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
