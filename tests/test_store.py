"""Tests for auth/store.py -- SQLAlchemy Core repository.

Covers:
- create/find round trip, unique email enforced by the database
- update_fields() rejects columns outside the whitelist
- compare_and_set_status() only moves from the expected status
- reset codes are single use and expire
- OTP challenge counters only grow; cooldown enforced in the store, also under
  concurrent resends
- authenticator time steps are recorded monotonically
- purge removes revoked and expired refresh rows; user delete cascades
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from auth.models import RefreshToken, User, UserStatus
from auth.store import AuthStore, _refresh_tokens, _users


def _user(store, email: str = "bob@example.com", **kwargs) -> User:
    return store.create(User(email=email, password_hash="00.00", **kwargs))


def _refresh(user: User, clock, suffix: str, ttl: int = 3600, revoked: bool = False) -> RefreshToken:
    now = clock()
    return RefreshToken(
        user_id=user.id,
        token_hash=f"hash-{suffix}",
        session_id="session-1",
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl),
        revoked=revoked,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_create_assigns_id_and_created_at(store):
    user = _user(store)
    assert user.id and len(user.id) == 32
    assert user.created_at
    found = store.find_by_email("bob@example.com")
    assert found == user
    assert store.find_by_id(user.id) == user


def test_duplicate_email_rejected_by_database(store):
    _user(store)
    with pytest.raises(IntegrityError):
        _user(store)


def test_duplicate_federated_id_rejected(store):
    _user(store, "a@example.com", federated_id="sub-1", provider="google")
    with pytest.raises(IntegrityError):
        _user(store, "b@example.com", federated_id="sub-1", provider="google")
    # Several unlinked accounts may coexist.
    _user(store, "c@example.com")
    _user(store, "d@example.com")


def test_lookup_misses_return_none(store):
    assert store.find_by_email("nobody@example.com") is None
    assert store.find_by_id("missing") is None
    assert store.find_by_federated_id("sub-x") is None
    assert store.find_by_reset_code("f" * 64) is None


def test_update_fields(store):
    user = _user(store)
    assert store.update_fields(user.id, display_name="Bob", two_factor_enabled=True) is True
    reloaded = store.find_by_id(user.id)
    assert reloaded.display_name == "Bob"
    assert reloaded.two_factor_enabled is True
    assert store.update_fields("missing", display_name="x") is False


@pytest.mark.parametrize("field", ["status", "token_version", "email", "id"])
def test_update_fields_whitelist(store, field):
    user = _user(store)
    with pytest.raises(ValueError):
        store.update_fields(user.id, **{field: "x"})


def test_increment_token_version(store):
    user = _user(store)
    assert store.increment_token_version(user.id) == 1
    assert store.increment_token_version(user.id) == 2
    assert store.increment_token_version("missing") is None


def test_compare_and_set_status(store):
    user = _user(store)
    assert store.compare_and_set_status(user.id, UserStatus.ACTIVE, UserStatus.BLOCKED, bump_token_version=True)
    # Second attempt from the same expected state loses.
    assert not store.compare_and_set_status(user.id, UserStatus.ACTIVE, UserStatus.INACTIVE)
    reloaded = store.find_by_id(user.id)
    assert reloaded.status is UserStatus.BLOCKED
    assert reloaded.token_version == 1


def test_reset_code_is_single_use(store, clock):
    user = _user(store)
    store.update_fields(
        user.id,
        password_reset_code="c" * 64,
        password_reset_expires_at=clock() + timedelta(seconds=600),
    )
    assert store.find_by_reset_code("c" * 64).id == user.id

    assert store.consume_reset_code(user.id, "c" * 64, clock(), "11.11") is True
    assert store.consume_reset_code(user.id, "c" * 64, clock(), "22.22") is False

    reloaded = store.find_by_id(user.id)
    assert reloaded.password_hash == "11.11"
    assert reloaded.password_reset_code is None
    assert reloaded.password_reset_expires_at is None
    assert reloaded.token_version == 1


def test_reset_code_expires(store, clock):
    user = _user(store)
    store.update_fields(
        user.id,
        password_reset_code="d" * 64,
        password_reset_expires_at=clock() + timedelta(seconds=600),
    )
    clock.advance(600)
    assert store.consume_reset_code(user.id, "d" * 64, clock(), "11.11") is False
    assert store.find_by_id(user.id).password_hash == "00.00"


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def test_rotate_refresh_token(store, clock):
    user = _user(store)
    store.add_refresh_token(_refresh(user, clock, "a"))
    assert store.rotate_refresh_token("hash-a", _refresh(user, clock, "b"), clock()) is True
    assert store.find_refresh_token("hash-a").revoked
    assert not store.find_refresh_token("hash-b").revoked

    # The rotated-away token cannot be rotated again.
    assert store.rotate_refresh_token("hash-a", _refresh(user, clock, "c"), clock()) is False
    assert store.find_refresh_token("hash-c") is None


def test_rotate_expired_refresh_token(store, clock):
    user = _user(store)
    store.add_refresh_token(_refresh(user, clock, "a", ttl=10))
    clock.advance(10)
    assert store.rotate_refresh_token("hash-a", _refresh(user, clock, "b"), clock()) is False


def test_revoke_user_refresh_tokens(store, clock):
    user = _user(store)
    other = _user(store, "carol@example.com")
    store.add_refresh_token(_refresh(user, clock, "a"))
    store.add_refresh_token(_refresh(user, clock, "b"))
    store.add_refresh_token(_refresh(other, clock, "c"))

    assert store.revoke_user_refresh_tokens(user.id) == 2
    assert store.revoke_user_refresh_tokens(user.id) == 0
    assert not store.find_refresh_token("hash-c").revoked


def test_purge_refresh_tokens(store, clock):
    user = _user(store)
    store.add_refresh_token(_refresh(user, clock, "live"))
    store.add_refresh_token(_refresh(user, clock, "dead", revoked=True))
    store.add_refresh_token(_refresh(user, clock, "old", ttl=5))
    clock.advance(5)

    assert store.purge_refresh_tokens(clock()) == 2
    assert store.find_refresh_token("hash-live") is not None
    assert store.find_refresh_token("hash-dead") is None
    assert store.find_refresh_token("hash-old") is None


def test_user_delete_cascades_refresh_tokens(store, clock):
    user = _user(store)
    store.add_refresh_token(_refresh(user, clock, "a"))
    with store.engine.begin() as conn:
        conn.execute(_users.delete().where(_users.c.id == user.id))
    with store.engine.connect() as conn:
        rows = conn.execute(select(_refresh_tokens.c.id)).fetchall()
    assert rows == []


# ---------------------------------------------------------------------------
# OTP challenges
# ---------------------------------------------------------------------------


def test_issue_challenge_increments_counter(store, clock):
    user = _user(store)
    now = clock()
    first = store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    second = store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    assert first.counter == 1
    assert second.counter == 2
    assert store.get_challenge(user.id).counter == 2


def test_issue_challenge_cooldown(store, clock):
    user = _user(store)
    now = clock()
    store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    assert (
        store.issue_challenge(
            user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now, enforce_cooldown=True
        )
        is None
    )
    assert store.get_challenge(user.id).counter == 1

    later = now + timedelta(seconds=60)
    issued = store.issue_challenge(
        user.id, later + timedelta(seconds=300), later + timedelta(seconds=60), later, enforce_cooldown=True
    )
    assert issued.counter == 2


def test_consume_challenge_once(store, clock):
    user = _user(store)
    now = clock()
    issued = store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    assert store.consume_challenge(user.id, issued.counter) is True
    assert store.consume_challenge(user.id, issued.counter) is False
    assert store.get_challenge(user.id).consumed is True


def test_consume_superseded_challenge(store, clock):
    user = _user(store)
    now = clock()
    old = store.issue_challenge(user.id, now + timedelta(seconds=300), now, now)
    store.issue_challenge(user.id, now + timedelta(seconds=300), now, now)
    assert store.consume_challenge(user.id, old.counter) is False


def test_concurrent_resend_issues_one_challenge(store, clock):
    user = _user(store)
    now = clock()
    store.issue_challenge(user.id, now + timedelta(seconds=300), now, now)
    workers = 8
    barrier = threading.Barrier(workers)

    def attempt():
        barrier.wait()
        return store.issue_challenge(
            user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now, enforce_cooldown=True
        )

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: attempt(), range(workers)))

    issued = [r for r in results if r is not None]
    assert len(issued) == 1
    assert issued[0].counter == 2
    assert store.get_challenge(user.id).counter == 2


def test_concurrent_first_challenge(store, clock):
    user = _user(store)
    now = clock()
    workers = 4
    barrier = threading.Barrier(workers)

    def attempt():
        barrier.wait()
        return store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda _: attempt(), range(workers)))

    assert sorted(r.counter for r in results) == [1, 2, 3, 4]


def test_record_totp_step_only_moves_forward(store, clock):
    user = _user(store)
    now = clock()
    store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    assert store.record_totp_step(user.id, 100) is True
    assert store.record_totp_step(user.id, 100) is False
    assert store.record_totp_step(user.id, 99) is False
    assert store.record_totp_step(user.id, 101) is True
    # A new challenge keeps the recorded step.
    store.issue_challenge(user.id, now + timedelta(seconds=300), now + timedelta(seconds=60), now)
    assert store.record_totp_step(user.id, 101) is False


def test_ping_and_memory_url():
    store = AuthStore("sqlite://")
    try:
        assert store.ping() is True
        store.create(User(email="mem@example.com"))
        assert store.find_by_email("mem@example.com") is not None
    finally:
        store.close()
