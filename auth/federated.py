"""
auth/federated.py -- External identity verification and account resolution.

OidcIdentityVerifier checks an ID token issued by an external provider
(Google by default) without any redirect flow: the client obtains the token,
the server verifies it.

  Signature: Authlib's JsonWebToken restricted to RS256, keys from the
       provider's JWKS document. The document is fetched with requests and
       cached; an unknown "kid" triggers a refetch (providers rotate keys), at
       most once per refetch_interval so unsigned junk tokens with random
       kids cannot hammer the provider.

  Transport: the JWKS fetch is retried by tenacity on connection errors and
       timeouts only, with exponential backoff and a bounded attempt count.
       HTTP errors and bad JSON are not retried. If the keys cannot be
       obtained the verification fails with InvalidCredentials; an IdP outage
       never turns into a 500.

  Claims: iss must be one of FEDERATED_ISSUERS, aud must equal
       FEDERATED_AUDIENCE, sub and exp are required, exp is checked against
       the injected clock with a small leeway.

  [H1] Email verification is mandatory before an account is created from an
       external identity. An unverified address could belong to someone who
       merely typed a victim's email into the provider.

FederatedIdentityBroker maps a verified identity to a local user:
  - known federated id -> that user
  - new identity whose email already belongs to a local account ->
    FederatedAccountConflict. Accounts are never merged silently; the owner
    has to sign in and call link() explicitly.
  - otherwise a federated-only user (no password) is created with the
    provider's profile claims.

Layer rule: no imports from api/. Import from core/ is allowed for the
Settings type only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import requests
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError
from sqlalchemy.exc import IntegrityError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth.contracts import CredentialStore, FederatedIdentityVerifier
from auth.errors import FederatedAccountConflict, InvalidCredentials
from auth.models import FederatedProfile, User
from auth.tokens import utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessiontrust.auth.federated")

_JWKS_TIMEOUT = 5  # seconds

# Shared across verifiers for connection pooling. JWKS endpoints are known
# provider URLs, so a short redirect budget is plenty.
_session = requests.Session()
_session.max_redirects = 3


def _fetch_jwks(url: str) -> Mapping[str, Any]:
    resp = _session.get(url, timeout=_JWKS_TIMEOUT)
    resp.raise_for_status()
    return resp.json()


def _token_kid(id_token: str) -> str | None:
    """Read "kid" from the unverified JOSE header, or None if unreadable."""
    try:
        header = json_loads(urlsafe_b64decode(to_bytes(id_token.split(".", 1)[0])))
    except (ValueError, TypeError, UnicodeDecodeError):
        return None
    kid = header.get("kid") if isinstance(header, dict) else None
    return kid if isinstance(kid, str) else None


def _jwks_kids(jwks: Mapping[str, Any]) -> set[str]:
    return {key.get("kid") for key in jwks.get("keys", []) if isinstance(key, dict) and key.get("kid")}


class OidcIdentityVerifier:
    """Verify provider ID tokens into FederatedProfile values.

    jwks_fetcher is injectable so tests can serve a locally generated key set.
    """

    def __init__(
        self,
        *,
        audience: str,
        issuers: Sequence[str],
        jwks_url: str,
        provider: str = "google",
        fetch_attempts: int = 3,
        refetch_interval: int = 60,
        leeway: int = 60,
        jwks_fetcher: Callable[[str], Mapping[str, Any]] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self._audience = audience
        self._issuers = list(issuers)
        self._jwks_url = jwks_url
        self._leeway = leeway
        self._fetcher = jwks_fetcher or _fetch_jwks
        self._clock = clock
        self._jwt = JsonWebToken(["RS256"])
        self._jwks: Mapping[str, Any] | None = None
        self._refetch_interval = timedelta(seconds=refetch_interval)
        self._last_fetch_attempt: datetime | None = None
        self._retrying = Retrying(
            stop=stop_after_attempt(max(1, fetch_attempts)),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            reraise=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utcnow) -> OidcIdentityVerifier:
        return cls(
            audience=settings.federated_audience,
            issuers=settings.federated_issuers,
            jwks_url=settings.federated_jwks_url,
            provider=settings.federated_provider,
            fetch_attempts=settings.federated_fetch_attempts,
            refetch_interval=settings.federated_jwks_refetch_seconds,
            clock=clock,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._audience)

    def verify(self, id_token: str) -> FederatedProfile:
        """Return the verified profile or raise InvalidCredentials."""
        if not self.enabled:
            logger.warning("Federated login attempted but FEDERATED_AUDIENCE is not configured")
            raise InvalidCredentials()
        if not id_token or not isinstance(id_token, str):
            raise InvalidCredentials()
        try:
            claims = self._decode(id_token)
            claims.validate(now=int(self._clock().timestamp()), leeway=self._leeway)
        except requests.RequestException as exc:
            logger.warning("JWKS fetch from %s failed: %s", self._jwks_url, exc)
            raise InvalidCredentials() from exc
        except (JoseError, ValueError, TypeError, KeyError) as exc:
            logger.info("Rejected %s ID token: %s", self.provider, exc)
            raise InvalidCredentials() from exc

        email = claims.get("email")
        if not isinstance(email, str) or not email.strip():
            raise InvalidCredentials()
        return FederatedProfile(
            provider=self.provider,
            subject=str(claims["sub"]),
            email=email.strip().lower(),
            email_verified=claims.get("email_verified") in (True, "true"),
            display_name=claims.get("name"),
            given_name=claims.get("given_name"),
            picture=claims.get("picture"),
        )

    def _decode(self, id_token: str):
        kid = _token_kid(id_token)
        jwks = self._jwks
        if jwks is None or (kid is not None and kid not in _jwks_kids(jwks)):
            if self._may_refetch():
                jwks = self._refresh_jwks()
            elif jwks is None:
                raise ValueError("JWKS unavailable")
        claims_options = {
            "iss": {"essential": True, "values": self._issuers},
            "aud": {"essential": True, "value": self._audience},
            "sub": {"essential": True},
            "exp": {"essential": True},
        }
        return self._jwt.decode(id_token, JsonWebKey.import_key_set(jwks), claims_options=claims_options)

    def _may_refetch(self) -> bool:
        if self._last_fetch_attempt is None:
            return True
        return self._clock() - self._last_fetch_attempt >= self._refetch_interval

    def _refresh_jwks(self) -> Mapping[str, Any]:
        self._last_fetch_attempt = self._clock()
        jwks = self._retrying(self._fetcher, self._jwks_url)
        if not isinstance(jwks, Mapping) or not isinstance(jwks.get("keys"), list):
            raise ValueError("JWKS document has no key list")
        self._jwks = jwks
        logger.info("Loaded %d signing keys from %s", len(jwks["keys"]), self._jwks_url)
        return jwks


class FederatedIdentityBroker:
    def __init__(self, users: CredentialStore, verifier: FederatedIdentityVerifier) -> None:
        self._users = users
        self._verifier = verifier

    def resolve(self, id_token: str) -> User:
        """Find or create the local user for a verified external identity.

        Does not consult the status gate; the caller does that before issuing
        a session.
        """
        profile = self._verifier.verify(id_token)
        existing = self._users.find_by_federated_id(profile.subject)
        if existing is not None:
            return existing

        if not profile.email_verified:
            logger.warning("Refused %s identity with unverified email", profile.provider)
            raise InvalidCredentials()
        if self._users.find_by_email(profile.email) is not None:
            logger.info("Federated sign-in collided with an existing %s account", profile.provider)
            raise FederatedAccountConflict()

        try:
            user = self._users.create(
                User(
                    email=profile.email,
                    federated_id=profile.subject,
                    provider=profile.provider,
                    display_name=profile.display_name or profile.given_name,
                    picture=profile.picture,
                    email_verified=True,
                )
            )
        except IntegrityError:
            # A concurrent first sign-in with the same identity won the insert.
            raced = self._users.find_by_federated_id(profile.subject)
            if raced is not None:
                return raced
            raise FederatedAccountConflict() from None
        logger.info("Created federated-only user %s via %s", user.id, profile.provider)
        return user

    def link(self, user: User, id_token: str) -> User:
        """Attach a verified external identity to an authenticated account."""
        profile = self._verifier.verify(id_token)
        owner = self._users.find_by_federated_id(profile.subject)
        if owner is not None:
            if owner.id == user.id:
                return owner
            raise FederatedAccountConflict("This external identity is linked to another account.")
        if user.federated_id is not None:
            raise FederatedAccountConflict("Account is already linked to an external identity.")
        if not profile.email_verified:
            raise InvalidCredentials()

        try:
            self._users.update_fields(
                user.id,
                federated_id=profile.subject,
                provider=profile.provider,
                display_name=user.display_name or profile.display_name,
                picture=user.picture or profile.picture,
            )
        except IntegrityError:
            raise FederatedAccountConflict("This external identity is linked to another account.") from None
        logger.info("Linked %s identity to user %s", profile.provider, user.id)
        linked = self._users.find_by_id(user.id)
        return linked if linked is not None else user
