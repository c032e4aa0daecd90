"""
auth/session.py -- Session issuance, refresh rotation and token verification.

A session is an access token (short-lived JWT, never stored) plus a refresh
token (opaque secret, stored only as its SHA-256 digest). TokenService is the
only component that mints either.

Rotation: every refresh consumes the presented token and returns a new one
in the same session chain. The consume step is a conditional UPDATE inside the
store, so when two requests present the same refresh token concurrently
exactly one receives a new pair and the other gets TokenRevoked.

Revocation: there is no access-token denylist. Access tokens carry a
token_version snapshot; bumping the user's live token_version (ban, password
change, reset) invalidates every outstanding access token at its next
verification. Refresh tokens are revoked row by row.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.contracts import CredentialStore, RefreshTokenStore
from auth.errors import InvalidCredentials, TokenExpired, TokenRevoked, TokenVersionMismatch
from auth.models import AccessClaims, RefreshToken, TokenPair, User
from auth.status import ensure_session_allowed
from auth.tokens import DecodedToken, TokenCodec, digest_secret, generate_secret, utcnow

logger = logging.getLogger("sessiontrust.auth.session")


class TokenService:
    """Issue, rotate, revoke and verify session tokens.

    Usage:
        tokens = TokenService(codec, store, store, refresh_ttl_seconds=86400)
        pair = tokens.issue_session(user)
        claims = tokens.verify(pair.access_token)
        pair = tokens.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        codec: TokenCodec,
        users: CredentialStore,
        refresh_tokens: RefreshTokenStore,
        *,
        refresh_ttl_seconds: int = 30 * 24 * 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._codec = codec
        self._users = users
        self._refresh_tokens = refresh_tokens
        self._refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue / rotate / revoke
    # ------------------------------------------------------------------

    def issue_session(self, user: User, session_id: str | None = None) -> TokenPair:
        """Mint a new token pair for user after passing the status gate.

        The raw refresh token is returned exactly once; only its digest is
        persisted.
        """
        ensure_session_allowed(user)
        raw, record = self._new_refresh_token(user.id, session_id or uuid.uuid4().hex)
        self._refresh_tokens.add_refresh_token(record)
        return self._pair(user, raw, record.session_id)

    def refresh(self, raw_token: str) -> TokenPair:
        """Redeem raw_token for a new pair. Single use.

        Raises TokenRevoked for unknown, revoked or concurrently redeemed
        tokens, TokenExpired past expiry and AccountInactive when the owner
        may no longer hold a session.
        """
        if not raw_token:
            raise TokenRevoked()
        token_hash = digest_secret(raw_token)
        stored = self._refresh_tokens.find_refresh_token(token_hash)
        if stored is None or stored.revoked:
            logger.warning("Refresh attempted with unknown or revoked token")
            raise TokenRevoked()
        now = self._clock()
        if stored.is_expired(now):
            raise TokenExpired()

        user = self._users.find_by_id(stored.user_id)
        if user is None:
            raise TokenRevoked()
        ensure_session_allowed(user)

        raw, replacement = self._new_refresh_token(user.id, stored.session_id)
        if not self._refresh_tokens.rotate_refresh_token(token_hash, replacement, now):
            logger.warning("Refresh token for session %s redeemed concurrently", stored.session_id)
            raise TokenRevoked()
        return self._pair(user, raw, stored.session_id)

    def revoke(self, raw_token: str) -> bool:
        """Log out one session. Returns False if the token was not live."""
        if not raw_token:
            return False
        return self._refresh_tokens.revoke_refresh_token(digest_secret(raw_token))

    def revoke_all(self, user_id: str) -> int:
        count = self._refresh_tokens.revoke_user_refresh_tokens(user_id)
        logger.info("Revoked %d refresh tokens for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, access_token: str) -> AccessClaims:
        """Return the claims of a valid access token or raise.

        InvalidCredentials: bad signature, wrong token type or malformed.
        TokenExpired: past exp.
        TokenVersionMismatch: user gone or token_version moved on.
        """
        claims, _ = self._check(self._codec.decode_access(access_token))
        return claims

    def current_user(self, access_token: str) -> User:
        """Like verify(), but return the live user record the token belongs to."""
        _, user = self._check(self._codec.decode_access(access_token))
        return user

    def issue_challenge_token(self, user: User) -> str:
        return self._codec.encode_challenge(user)

    def verify_challenge(self, challenge_token: str) -> User:
        """Resolve a 2FA challenge token to its user, with the same checks as verify()."""
        _, user = self._check(self._codec.decode_challenge(challenge_token))
        return user

    def _check(self, decoded: DecodedToken) -> tuple[AccessClaims, User]:
        if decoded.expired:
            raise TokenExpired()
        if decoded.claims is None:
            raise InvalidCredentials()
        claims = decoded.claims
        user = self._users.find_by_id(claims.subject)
        if user is None or user.token_version != claims.token_version:
            raise TokenVersionMismatch()
        return claims, user

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_refresh_token(self, user_id: str, session_id: str) -> tuple[str, RefreshToken]:
        raw = generate_secret()
        now = self._clock()
        record = RefreshToken(
            user_id=user_id,
            token_hash=digest_secret(raw),
            session_id=session_id,
            issued_at=now,
            expires_at=now + self._refresh_ttl,
        )
        return raw, record

    def _pair(self, user: User, raw_refresh: str, session_id: str) -> TokenPair:
        return TokenPair(
            access_token=self._codec.encode_access(user),
            refresh_token=raw_refresh,
            expires_in=self._codec.access_ttl_seconds,
            session_id=session_id,
        )
