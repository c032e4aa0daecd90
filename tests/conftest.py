"""
tests/conftest.py -- Shared test fixtures for SessionTrust.

This module provides:
  - FakeClock: injectable "now" that tests move forward explicitly
  - RecordingSender: CodeSender that keeps every dispatched code for assertions
  - settings / hasher: cheap argon2 cost parameters so the suite stays fast
  - store: AuthStore on an isolated SQLite file per test (tmp_path)
  - service: fully wired AuthService on top of store
  - api_client: TestClient with a patched lifespan wired to the same objects

Design: file-backed SQLite (not :memory:) because TestClient and the
concurrency tests run handlers on several threads, and every thread must see
the same database through its own pooled connection.

The DEBUG env var must be set before any core import so Settings() can
auto-generate SECRET_KEY for the API module's get_settings() call.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from auth.models import User
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class SentCode:
    user_id: str
    code: str
    purpose: str


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[SentCode] = []

    def send_code(self, user: User, code: str, purpose: str) -> None:
        self.sent.append(SentCode(user.id, code, purpose))

    def last(self, purpose: str | None = None) -> str:
        matching = [s for s in self.sent if purpose is None or s.purpose == purpose]
        assert matching, f"no code sent for purpose={purpose!r}"
        return matching[-1].code


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        password_time_cost=1,
        password_memory_cost=256,
        password_parallelism=1,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
        otp_ttl_seconds=300,
        otp_resend_cooldown_seconds=60,
        federated_audience="",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=256, parallelism=1)


@pytest.fixture
def store(tmp_path) -> Generator[AuthStore, None, None]:
    s = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def service(settings, store, sender, hasher, clock) -> AuthService:
    return AuthService.build(settings, store, sender=sender, hasher=hasher, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    service: AuthService
    store: AuthStore
    sender: RecordingSender
    clock: FakeClock
    admin_id: str
    admin_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(store: AuthStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can .cancel() it
    exactly like the real one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(store, service, sender, clock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness with an admin account already registered."""
    from api.limiter import limiter
    from api.main import app

    pair = service.register("admin@example.com", "adminpass123")
    admin = store.find_by_email("admin@example.com")
    store.update_fields(admin.id, role="admin")

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield ApiHarness(
            client=client,
            service=service,
            store=store,
            sender=sender,
            clock=clock,
            admin_id=admin.id,
            admin_token=pair.access_token,
        )
