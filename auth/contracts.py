"""
auth/contracts.py -- Collaborator interfaces consumed by the auth services.

The services depend on these Protocols, never on a concrete store, so the
persistence technology stays swappable. auth/store.py::AuthStore implements
CredentialStore, RefreshTokenStore and ChallengeStore on one SQLAlchemy
engine; auth/federated.py::OidcIdentityVerifier implements
FederatedIdentityVerifier; auth/delivery.py::LoggingCodeSender implements
CodeSender.

Atomicity contract: every method that mutates shared state in a way two
concurrent requests could race on (rotate_refresh_token, compare_and_set_status,
consume_reset_code, consume_challenge, issue_challenge, record_totp_step,
increment_token_version) must be a single atomic read-modify-write against the
store. The services rely on the boolean / None results to detect a lost race.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from auth.models import FederatedProfile, OtpChallenge, RefreshToken, User, UserStatus


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> User | None: ...

    def find_by_id(self, user_id: str) -> User | None: ...

    def find_by_federated_id(self, federated_id: str) -> User | None: ...

    def find_by_reset_code(self, code_hash: str) -> User | None: ...

    def create(self, user: User) -> User: ...

    def update_fields(self, user_id: str, **fields) -> bool: ...

    def increment_token_version(self, user_id: str) -> int | None: ...

    def compare_and_set_status(
        self, user_id: str, expected: UserStatus, target: UserStatus, *, bump_token_version: bool = False
    ) -> bool: ...

    def consume_reset_code(self, user_id: str, code_hash: str, now: datetime, new_password_hash: str) -> bool: ...

    def touch_last_login(self, user_id: str) -> None: ...


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    def rotate_refresh_token(self, token_hash: str, replacement: RefreshToken, now: datetime) -> bool: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class ChallengeStore(Protocol):
    def get_challenge(self, user_id: str) -> OtpChallenge | None: ...

    def issue_challenge(
        self,
        user_id: str,
        expires_at: datetime,
        resend_after: datetime,
        now: datetime,
        enforce_cooldown: bool = False,
    ) -> OtpChallenge | None: ...

    def consume_challenge(self, user_id: str, counter: int) -> bool: ...

    def record_totp_step(self, user_id: str, step: int) -> bool: ...


class FederatedIdentityVerifier(Protocol):
    provider: str

    def verify(self, id_token: str) -> FederatedProfile: ...


class CodeSender(Protocol):
    def send_code(self, user: User, code: str, purpose: str) -> None: ...
