"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - FakeClock: a settable clock injected into stores, generator and service
  - engine / user_store / token_store / hasher / service: isolated in-memory
    SQLite stack for unit tests (one fresh database per test)
  - make_user(): helper that registers a user with a known password
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: unit tests use plain sqlite:///:memory: because they run on a single
thread. The API fixture uses a temporary database file instead: TestClient
runs sync route handlers in a thread pool, and a file database gives every
worker thread the same schema through a normal connection pool.

Environment variables must be set before any api/ or core/ import so
get_settings() picks them up: DEBUG allows the reduced bcrypt cost that keeps
the suite fast, and rate limiting is off so repeated logins never hit 429.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any core/api import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import NewUser, User
from auth.service import AuthenticationService
from auth.store import TokenStore, UserStore, create_db_engine
from auth.tokens import PasswordHasher, TokenGenerator

TEST_ROUNDS = 4
DEFAULT_PASSWORD = "secret"


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


# ---------------------------------------------------------------------------
# Unit-test stack
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=TEST_ROUNDS)


@pytest.fixture
def user_store(engine, clock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture
def token_store(engine, clock) -> TokenStore:
    return TokenStore(engine, clock=clock)


@pytest.fixture
def service(user_store, token_store, hasher, clock) -> AuthenticationService:
    return AuthenticationService(
        user_store,
        token_store,
        hasher,
        TokenGenerator(clock=clock),
        clock=clock,
    )


@pytest.fixture
def make_user(service):
    """Return a factory: make_user("a@b.com", active=False) -> User (password "secret")."""

    def _make(email: str = "a@b.com", password: str = DEFAULT_PASSWORD, active: bool = True, **names) -> User:
        return service.register_user(NewUser(email=email, password=password, active=active, **names))

    return _make


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, auth_service: AuthenticationService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and service into app.state so TestClient routes see
    an isolated database rather than the configured DATABASE_URL.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = auth_service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, User], None, None]:
    """Yield (client, bearer_token, user) for API integration tests.

    The user is a@b.com / "secret", active. The bearer token comes from a real
    login through the service, so it is a genuine 26-character stored token.
    """
    db_path = tmp_path_factory.mktemp("authdb") / "auth.db"
    engine = create_db_engine(f"sqlite:///{db_path}")
    auth_service = AuthenticationService(
        UserStore(engine),
        TokenStore(engine),
        PasswordHasher(rounds=TEST_ROUNDS),
    )
    user = auth_service.register_user(
        NewUser(email="a@b.com", password=DEFAULT_PASSWORD, first_name="Ada", last_name="Byron")
    )
    token = auth_service.login("a@b.com", DEFAULT_PASSWORD).token.token

    app.router.lifespan_context = _patch_lifespan(engine, auth_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, user

    engine.dispose()
