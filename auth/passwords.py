"""
auth/passwords.py -- Salted, memory-hard password hashing.

Security design decisions:
  Derivation: argon2id through argon2-cffi's low-level API
       (hash_secret_raw). Argon2id is memory-hard, so GPU/ASIC offline
       cracking of a leaked table stays expensive. The raw API is used instead
       of argon2.PasswordHasher because the stored format is fixed by the
       schema: "<salt hex>.<derived key hex>". Cost parameters are process-wide
       configuration and are NOT encoded in the record -- changing them
       requires a rehash-on-login migration.

  Salt: 16 random bytes from secrets.token_bytes() per hash, so two hashes
       of the same password never match.

  Comparison: hmac.compare_digest on the derived bytes -- constant time with
       respect to where the first differing byte sits.

  Failure values: verify() returns False for a wrong password AND for a
       malformed stored value. Callers raise InvalidCredentials either way, so
       a corrupt record can never be told apart from a typo.

  Timing equalization: equalize() burns one derivation against a dummy
       record. Login calls it when the email is unknown or the account has no
       password, so response time does not reveal which case occurred.

  Blocking: hash() and verify() are ordinary blocking calls. argon2-cffi
       releases the GIL while deriving, and the api/ layer declares hashing
       routes as plain `def` so FastAPI runs them on its worker thread pool.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import secrets
from typing import TYPE_CHECKING

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

if TYPE_CHECKING:
    from core.config import Settings

_SEPARATOR = "."


class PasswordHasher:
    """Derive and verify "<salt>.<key>" password records.

    Usage:
        hasher = PasswordHasher.from_settings(get_settings())
        stored = hasher.hash("correct horse")
        hasher.verify("correct horse", stored)  # True
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        if salt_len < 8:
            raise ValueError("salt_len must be at least 8 bytes")
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism
        self.hash_len = hash_len
        self.salt_len = salt_len
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones.
        self._dummy_record = self.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> PasswordHasher:
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            hash_len=settings.password_hash_len,
        )

    def hash(self, password: str) -> str:
        """Return "<salt hex>.<derived key hex>" for password."""
        salt = secrets.token_bytes(self.salt_len)
        key = self._derive(password, salt)
        return f"{salt.hex()}{_SEPARATOR}{key.hex()}"

    def verify(self, password: str, stored: str | None) -> bool:
        """Return True only if password re-derives to the stored key."""
        if not stored:
            return False
        parts = stored.split(_SEPARATOR)
        if len(parts) != 2:
            return False
        try:
            salt = bytes.fromhex(parts[0])
            expected = bytes.fromhex(parts[1])
        except ValueError:
            return False
        if len(salt) < 8 or len(expected) != self.hash_len:
            return False
        try:
            derived = self._derive(password, salt)
        except HashingError:
            return False
        return hmac.compare_digest(derived, expected)

    def equalize(self, password: str) -> None:
        """Spend the same work as a real verification and discard the result."""
        self.verify(password, self._dummy_record)

    def _derive(self, password: str, salt: bytes) -> bytes:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=self.hash_len,
            type=Type.ID,
        )
