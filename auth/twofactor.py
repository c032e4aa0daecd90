"""
auth/twofactor.py -- Second-factor enrollment and login challenges.

Two distinct mechanisms share the user's two_factor_secret:

  Enrollment (TOTP): setup() generates a base32 secret with pyotp and keeps
       it pending; the user proves possession by entering a code from their
       authenticator app (verify_enrollment). Only then is the secret promoted
       and 2FA enabled. Failed attempts are bounded: after
       otp_enroll_max_attempts misses the pending secret is thrown away and
       setup() must be run again.

  Login challenge: challenge() bumps a per-user counter in the
       ChallengeStore and delivers HOTP(secret, counter) through the
       CodeSender as an out-of-band fallback. The code itself is never
       stored. verify() accepts either the current code from the
       authenticator app (TOTP, each time step usable once per user) or the
       delivered HOTP code. The challenge is consumed BEFORE the compare, so
       one challenge allows exactly one attempt; a replay, a second guess or
       a concurrent duplicate all see OtpInvalid.

Resend cooldown is enforced inside the store's issue_challenge() transaction,
so two resend requests racing each other cannot both send a code.

Layer rule: no imports from api/. Import from core/ is allowed for the
Settings type only.
"""

from __future__ import annotations

import hmac
import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pyotp

from auth.contracts import ChallengeStore, CodeSender, CredentialStore
from auth.errors import OtpExpired, OtpInvalid, OtpThrottled
from auth.models import OtpChallenge, TwoFactorSetup, User
from auth.tokens import utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessiontrust.auth.twofactor")

PURPOSE_LOGIN = "two_factor_login"


def _normalize_code(code: str) -> str:
    return "".join(str(code).split())


class TwoFactorChallenge:
    def __init__(
        self,
        users: CredentialStore,
        challenges: ChallengeStore,
        sender: CodeSender,
        *,
        code_length: int = 6,
        ttl_seconds: int = 300,
        resend_cooldown_seconds: int = 60,
        enroll_max_attempts: int = 5,
        totp_valid_window: int = 1,
        issuer: str = "SessionTrust",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._users = users
        self._challenges = challenges
        self._sender = sender
        self.code_length = code_length
        self._ttl = timedelta(seconds=ttl_seconds)
        self._cooldown = timedelta(seconds=resend_cooldown_seconds)
        self._enroll_max_attempts = enroll_max_attempts
        self._totp_valid_window = totp_valid_window
        self._issuer = issuer
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        users: CredentialStore,
        challenges: ChallengeStore,
        sender: CodeSender,
        clock: Callable[[], datetime] = utcnow,
    ) -> TwoFactorChallenge:
        return cls(
            users,
            challenges,
            sender,
            code_length=settings.otp_code_length,
            ttl_seconds=settings.otp_ttl_seconds,
            resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
            enroll_max_attempts=settings.otp_enroll_max_attempts,
            totp_valid_window=settings.totp_valid_window,
            issuer=settings.totp_issuer,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def setup(self, user: User) -> TwoFactorSetup:
        """Generate a pending TOTP secret. two_factor_enabled is not touched."""
        secret = pyotp.random_base32()
        self._users.update_fields(user.id, two_factor_pending_secret=secret, two_factor_enroll_attempts=0)
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self._issuer)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri)

    def verify_enrollment(self, user: User, code: str) -> bool:
        """Check code against the pending secret; on success enable 2FA.

        Raises OtpInvalid when there is nothing pending (never set up, or
        discarded after too many misses).
        """
        pending = user.two_factor_pending_secret
        if not pending:
            raise OtpInvalid("No two-factor enrollment is pending.")

        if pyotp.TOTP(pending).verify(_normalize_code(code), for_time=self._clock(), valid_window=self._totp_valid_window):
            self._users.update_fields(
                user.id,
                two_factor_secret=pending,
                two_factor_enabled=True,
                two_factor_pending_secret=None,
                two_factor_enroll_attempts=0,
            )
            logger.info("Two-factor enabled for user %s", user.id)
            return True

        attempts = user.two_factor_enroll_attempts + 1
        if attempts >= self._enroll_max_attempts:
            self._users.update_fields(user.id, two_factor_pending_secret=None, two_factor_enroll_attempts=0)
            logger.warning("Two-factor enrollment for user %s discarded after %d failed attempts", user.id, attempts)
        else:
            self._users.update_fields(user.id, two_factor_enroll_attempts=attempts)
        return False

    # ------------------------------------------------------------------
    # Login challenge
    # ------------------------------------------------------------------

    def challenge(self, user: User) -> OtpChallenge:
        """Issue and deliver a fresh code, superseding any outstanding one."""
        now = self._clock()
        issued = self._challenges.issue_challenge(user.id, now + self._ttl, now + self._cooldown, now)
        if issued is None:  # only possible with enforce_cooldown
            raise OtpThrottled()
        self._deliver(user, issued)
        return issued

    def resend(self, user: User) -> OtpChallenge:
        """Reissue the code unless the cooldown is still running."""
        now = self._clock()
        issued = self._challenges.issue_challenge(
            user.id, now + self._ttl, now + self._cooldown, now, enforce_cooldown=True
        )
        if issued is None:
            current = self._challenges.get_challenge(user.id)
            wait = (current.resend_after - now).total_seconds() if current is not None else 1
            raise OtpThrottled(retry_after=max(1, math.ceil(wait)))
        self._deliver(user, issued)
        return issued

    def verify(self, user: User, code: str) -> bool:
        """Accept code at most once. Raises OtpInvalid or OtpExpired on failure.

        A current code from the authenticator app is tried first; its time
        step must be newer than the last one accepted for this user. The
        delivered HOTP code is the fallback.
        """
        current = self._challenges.get_challenge(user.id)
        if current is None or current.consumed:
            raise OtpInvalid()
        if not self._challenges.consume_challenge(user.id, current.counter):
            # Consumed or superseded between the read and the update.
            raise OtpInvalid()
        now = self._clock()
        if current.expires_at <= now:
            raise OtpExpired()
        if not user.two_factor_secret:
            raise OtpInvalid()
        code = _normalize_code(code)
        step = self._match_totp(user.two_factor_secret, code, now)
        if step is not None:
            if not self._challenges.record_totp_step(user.id, step):
                logger.info("Replayed authenticator code for user %s", user.id)
                raise OtpInvalid()
            return True
        hotp = pyotp.HOTP(user.two_factor_secret, digits=self.code_length)
        if not hotp.verify(code, current.counter):
            logger.info("Wrong second-factor code for user %s", user.id)
            raise OtpInvalid()
        return True

    def _match_totp(self, secret: str, code: str, now: datetime) -> int | None:
        """Return the time step code belongs to, or None."""
        totp = pyotp.TOTP(secret)
        base = totp.timecode(now)
        for offset in range(-self._totp_valid_window, self._totp_valid_window + 1):
            if hmac.compare_digest(code.encode(), totp.at(now, offset).encode()):
                return base + offset
        return None

    def _deliver(self, user: User, issued: OtpChallenge) -> None:
        if not user.two_factor_secret:
            raise OtpInvalid("Two-factor authentication is not enabled.")
        code = pyotp.HOTP(user.two_factor_secret, digits=self.code_length).at(issued.counter)
        self._sender.send_code(user, code, PURPOSE_LOGIN)
