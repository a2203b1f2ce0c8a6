"""
tests/conftest.py -- Shared test fixtures for Inkwell Auth.

This module provides:
  - FakeClock: injectable epoch-seconds clock that tests advance by hand
  - codec / user_store / refresh_store / tokens: unit-level auth services
  - make_user(): helper that inserts a user and returns its Principal
  - api: TestClient wired to isolated stores through a patched lifespan

Design: unit fixtures use plain sqlite:///:memory: stores (one connection per
thread, which is all a unit test needs). The api fixture uses named
shared-memory SQLite URIs because TestClient runs sync route handlers in a
thread pool; plain :memory: DBs are per-connection and would present a blank
schema to each worker thread.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_auth
from auth.lifecycle import TokenLifecycleManager
from auth.models import Principal, User
from auth.passwords import hash_password
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import TokenCodec
from core.config import Settings

SECRET = "unit-test-secret-key-0123456789abcdef"

# Rate limits are exercised by slowapi's own suite; keep them out of the way here.
limiter.enabled = False


class FakeClock:
    """Zero-argument callable returning epoch seconds; advance() moves time forward."""

    def __init__(self, start: int | None = None) -> None:
        self.now = start if start is not None else int(time.time())

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_user(store: UserStore, username: str, role: str = "user", password: str = "password123") -> Principal:
    """Insert a user and return the Principal view of the stored record."""
    user_id = store.create_user(
        User(
            username=username,
            email=f"{username}@example.com",
            role=role,
            hashed_password=hash_password(password),
        )
    )
    return Principal.from_user(store.get_by_id(user_id))


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec(clock: FakeClock) -> TokenCodec:
    return TokenCodec(SECRET, clock=clock)


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def refresh_store() -> Generator[RefreshTokenStore, None, None]:
    store = RefreshTokenStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def tokens(codec: TokenCodec, refresh_store: RefreshTokenStore) -> TokenLifecycleManager:
    return TokenLifecycleManager(codec, refresh_store, access_ttl=900, refresh_ttl=604800)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    clock: FakeClock
    users: UserStore
    admin: Principal
    admin_token: str

    def auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(settings: Settings, user_store: UserStore, refresh_store: RefreshTokenStore, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and the fake clock into app.state so
    TestClient routes see isolated test DBs rather than the production
    database. The cleanup task is a long-sleeping coroutine (a real
    asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_auth(app, settings, user_store, refresh_store, clock=clock)
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


def _build_api(**overrides) -> Generator[ApiHarness, None, None]:
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url)
    refresh_store = RefreshTokenStore(db_url)
    settings = Settings(secret_key=SECRET, **overrides)
    clock = FakeClock()
    admin = make_user(user_store, "testadmin", role="admin", password="testpass123")

    app.router.lifespan_context = _patch_lifespan(settings, user_store, refresh_store, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        admin_token = app.state.tokens.generate_token_pair(admin).access_token
        yield ApiHarness(client=client, clock=clock, users=user_store, admin=admin, admin_token=admin_token)

    user_store.close()
    refresh_store.close()


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness with a pre-created admin ("testadmin" / "testpass123")."""
    yield from _build_api()


@pytest.fixture
def rotating_api() -> Generator[ApiHarness, None, None]:
    """Same as ``api`` but with refresh-token rotation enabled."""
    yield from _build_api(rotate_refresh_tokens=True)


@pytest.fixture
def closed_registration_api() -> Generator[ApiHarness, None, None]:
    yield from _build_api(self_registration_enabled=False)
