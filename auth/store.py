"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository behind the
CredentialStore, RefreshTokenStore and ChallengeStore protocols;
_row_to_user / _row_to_refresh_token / _row_to_challenge are the mappers.
Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Every operation two requests could race on is one conditional UPDATE whose
  rowcount decides the winner (refresh rotation, status CAS, reset-code and
  OTP consumption). Nothing reads a row, decides in Python, then writes.

SQLite specifics:
  pysqlite's own transaction handling is switched off (isolation_level=None)
  and every SQLAlchemy transaction opens with BEGIN IMMEDIATE. Competing
  writers therefore queue on the database lock (bounded by the driver
  timeout) instead of failing mid-transaction with "database is locked".
  PRAGMA foreign_keys=ON is required for the refresh_tokens cascade.

Timestamps that are compared in SQL (expiries, cooldowns) are stored as REAL
epoch seconds; display-only timestamps (created_at, last_login) are ISO 8601.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from auth.models import OtpChallenge, RefreshToken, User, UserStatus

logger = logging.getLogger("sessiontrust.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessiontrust.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for federated-only users
    Column("status", String(16), nullable=False, server_default=UserStatus.ACTIVE.value),
    Column("role", String(30), nullable=False, server_default="user"),
    # Multiple NULLs are allowed by UNIQUE, which is what unlinked accounts need.
    Column("federated_id", Text, unique=True),
    Column("provider", String(30)),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_pending_secret", Text),
    Column("two_factor_enroll_attempts", Integer, nullable=False, server_default="0"),
    Column("password_reset_code", String(64), unique=True),  # SHA-256 hex
    Column("password_reset_expires_at", Float),
    Column("display_name", Text),
    Column("picture", Text),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("session_id", String(32), nullable=False, index=True),
    Column("issued_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
)

_otp_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("counter", Integer, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("resend_after", Float, nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("last_totp_step", Integer, nullable=False, server_default="0"),
)

# Columns update_fields() may write. Anything else is a programming error.
_UPDATABLE = frozenset(
    {
        "password_hash",
        "role",
        "federated_id",
        "provider",
        "two_factor_secret",
        "two_factor_enabled",
        "two_factor_pending_secret",
        "two_factor_enroll_attempts",
        "password_reset_code",
        "password_reset_expires_at",
        "display_name",
        "picture",
        "email_verified",
    }
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_connect(dbapi_conn, connection_record) -> None:
    """Per-connection PRAGMAs; they are not inherited across pooled connections."""
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in db_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _to_column(value):
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, UserStatus):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, refresh tokens and OTP challenges.

    Usage:
        store = AuthStore("sqlite:///auth.db")
        user = store.create(User(email="a@example.com", password_hash=stored))
        store.find_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, *, busy_timeout: float = 30.0) -> None:
        kwargs: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": busy_timeout}
            if _is_memory_url(db_url):
                # One shared connection, otherwise every pool checkout sees an empty DB.
                kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _on_connect)
            event.listen(self.engine, "begin", _on_begin)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Round-trip a trivial query. Used by the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users (CredentialStore)
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        """Exact match; callers pass the normalised email."""
        return self._find_user(_users.c.email == email)

    def find_by_id(self, user_id: str) -> User | None:
        return self._find_user(_users.c.id == user_id)

    def find_by_federated_id(self, federated_id: str) -> User | None:
        return self._find_user(_users.c.federated_id == federated_id)

    def find_by_reset_code(self, code_hash: str) -> User | None:
        return self._find_user(_users.c.password_reset_code == code_hash)

    def _find_user(self, condition) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(condition)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create(self, user: User) -> User:
        """Insert user and return it with id and created_at assigned.

        Raises sqlalchemy.exc.IntegrityError if the email or federated id is
        already taken. Callers translate that into a domain error; it is also
        how a concurrent duplicate registration is detected.
        """
        created = replace(
            user,
            id=user.id or uuid.uuid4().hex,
            created_at=user.created_at or _now_iso(),
        )
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=created.id,
                    email=created.email,
                    password_hash=created.password_hash,
                    status=created.status.value,
                    role=created.role,
                    federated_id=created.federated_id,
                    provider=created.provider,
                    token_version=created.token_version,
                    two_factor_secret=created.two_factor_secret,
                    two_factor_enabled=1 if created.two_factor_enabled else 0,
                    two_factor_pending_secret=created.two_factor_pending_secret,
                    two_factor_enroll_attempts=created.two_factor_enroll_attempts,
                    password_reset_code=created.password_reset_code,
                    password_reset_expires_at=_ts(created.password_reset_expires_at),
                    display_name=created.display_name,
                    picture=created.picture,
                    email_verified=1 if created.email_verified else 0,
                    created_at=created.created_at,
                    last_login=created.last_login,
                )
            )
        return created

    def update_fields(self, user_id: str, **fields) -> bool:
        """Update mutable columns on an existing user.

        status and token_version are deliberately not accepted here; they only
        move through compare_and_set_status() and increment_token_version().
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)!r}")
        if not fields:
            return self.find_by_id(user_id) is not None
        values = {name: _to_column(value) for name, value in fields.items()}
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def increment_token_version(self, user_id: str) -> int | None:
        """Atomically add one to token_version. Returns the new value, or None."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(token_version=_users.c.token_version + 1)
            )
            if result.rowcount == 0:
                return None
            return conn.execute(select(_users.c.token_version).where(_users.c.id == user_id)).scalar()

    def compare_and_set_status(
        self,
        user_id: str,
        expected: UserStatus,
        target: UserStatus,
        *,
        bump_token_version: bool = False,
    ) -> bool:
        """Move status from expected to target in one conditional UPDATE.

        Returns False when the row is missing or its status has already moved
        on, which is how a concurrent transition is detected. When
        bump_token_version is set the version increments in the same statement,
        so a ban and the invalidation of its access tokens are indivisible.
        """
        values: dict = {"status": target.value}
        if bump_token_version:
            values["token_version"] = _users.c.token_version + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.status == expected.value))
                .values(**values)
            )
        return result.rowcount > 0

    def consume_reset_code(self, user_id: str, code_hash: str, now: datetime, new_password_hash: str) -> bool:
        """Single-use redemption of a password reset code.

        Sets the new hash, clears the reset fields and bumps token_version only
        if the code is still present and unexpired. Two concurrent redemptions
        of the same code: exactly one sees rowcount == 1.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.password_reset_code == code_hash)
                    & (_users.c.password_reset_expires_at > now.timestamp())
                )
                .values(
                    password_hash=new_password_hash,
                    password_reset_code=None,
                    password_reset_expires_at=None,
                    token_version=_users.c.token_version + 1,
                )
            )
        return result.rowcount > 0

    def touch_last_login(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Refresh tokens (RefreshTokenStore)
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
            token_id = result.inserted_primary_key[0]
        return replace(token, id=str(token_id))

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, token_hash: str, replacement: RefreshToken, now: datetime) -> bool:
        """Revoke token_hash and insert replacement, or do nothing.

        The revoke is conditional on the row still being live. If another
        request already rotated it, rowcount is 0, nothing is inserted and the
        caller has lost the race.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now.timestamp())
                )
                .values(revoked=1)
            )
            if result.rowcount == 0:
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(replacement)))
        return True

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        """Revoke every live refresh token of user_id. Returns how many."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount

    def purge_refresh_tokens(self, now: datetime) -> int:
        """Delete revoked or expired refresh rows. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.revoked == 1) | (_refresh_tokens.c.expires_at <= now.timestamp())
                )
            )
        if result.rowcount:
            logger.info("Purged %d stale refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # OTP challenges (ChallengeStore)
    # ------------------------------------------------------------------

    def get_challenge(self, user_id: str) -> OtpChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otp_challenges.select().where(_otp_challenges.c.user_id == user_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def issue_challenge(
        self,
        user_id: str,
        expires_at: datetime,
        resend_after: datetime,
        now: datetime,
        enforce_cooldown: bool = False,
    ) -> OtpChallenge | None:
        """Start a new challenge for user_id, superseding any outstanding one.

        The counter only ever grows, so the previous code can never be valid
        again. With enforce_cooldown, returns None (and changes nothing) while
        the previous challenge's resend_after is still in the future.
        """
        try:
            counter = self._bump_challenge(user_id, expires_at, resend_after, now, enforce_cooldown)
        except IntegrityError:
            # Lost the race to create the first row; the row exists now.
            counter = self._bump_challenge(user_id, expires_at, resend_after, now, enforce_cooldown)
        if counter is None:
            return None
        return OtpChallenge(user_id=user_id, counter=counter, expires_at=expires_at, resend_after=resend_after)

    def _bump_challenge(
        self,
        user_id: str,
        expires_at: datetime,
        resend_after: datetime,
        now: datetime,
        enforce_cooldown: bool,
    ) -> int | None:
        condition = _otp_challenges.c.user_id == user_id
        if enforce_cooldown:
            condition = condition & (_otp_challenges.c.resend_after <= now.timestamp())
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_challenges.update()
                .where(condition)
                .values(
                    counter=_otp_challenges.c.counter + 1,
                    expires_at=expires_at.timestamp(),
                    resend_after=resend_after.timestamp(),
                    consumed=0,
                )
            )
            if result.rowcount > 0:
                return conn.execute(
                    select(_otp_challenges.c.counter).where(_otp_challenges.c.user_id == user_id)
                ).scalar_one()
            exists = conn.execute(
                select(_otp_challenges.c.user_id).where(_otp_challenges.c.user_id == user_id)
            ).first()
            if exists is not None:
                return None  # cooldown still running
            conn.execute(
                _otp_challenges.insert().values(
                    user_id=user_id,
                    counter=1,
                    expires_at=expires_at.timestamp(),
                    resend_after=resend_after.timestamp(),
                    consumed=0,
                )
            )
        return 1

    def record_totp_step(self, user_id: str, step: int) -> bool:
        """Remember the newest authenticator time step used at login.

        False when step is not newer than the last one recorded, i.e. the
        code was already spent.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_challenges.update()
                .where((_otp_challenges.c.user_id == user_id) & (_otp_challenges.c.last_totp_step < step))
                .values(last_totp_step=step)
            )
        return result.rowcount > 0

    def consume_challenge(self, user_id: str, counter: int) -> bool:
        """Mark the challenge at counter consumed. False if already consumed or superseded."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_challenges.update()
                .where(
                    (_otp_challenges.c.user_id == user_id)
                    & (_otp_challenges.c.counter == counter)
                    & (_otp_challenges.c.consumed == 0)
                )
                .values(consumed=1)
            )
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        status=UserStatus(row.status),
        role=row.role,
        federated_id=row.federated_id,
        provider=row.provider,
        token_version=row.token_version,
        two_factor_secret=row.two_factor_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_pending_secret=row.two_factor_pending_secret,
        two_factor_enroll_attempts=row.two_factor_enroll_attempts,
        password_reset_code=row.password_reset_code,
        password_reset_expires_at=_dt(row.password_reset_expires_at),
        display_name=row.display_name,
        picture=row.picture,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "session_id": token.session_id,
        "issued_at": token.issued_at.timestamp(),
        "expires_at": token.expires_at.timestamp(),
        "revoked": 1 if token.revoked else 0,
    }


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=str(row.id),
        user_id=row.user_id,
        token_hash=row.token_hash,
        session_id=row.session_id,
        issued_at=_dt(row.issued_at),
        expires_at=_dt(row.expires_at),
        revoked=bool(row.revoked),
    )


def _row_to_challenge(row) -> OtpChallenge:
    return OtpChallenge(
        user_id=row.user_id,
        counter=row.counter,
        expires_at=_dt(row.expires_at),
        resend_after=_dt(row.resend_after),
        consumed=bool(row.consumed),
    )
