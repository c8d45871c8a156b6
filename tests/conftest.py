"""
tests/conftest.py -- Shared test fixtures for the identity service.

This module provides:
  - service-level fixtures (db, hasher, tokens, accounts, code services) over a
    private in-memory SQLite database per test
  - FakeClock: an injectable clock so expiry tests never sleep
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: API tests use a named shared-memory SQLite URI (not plain sqlite://)
because TestClient runs sync route handlers in a thread pool. Plain in-memory
DBs are per-connection and would present a blank schema to each worker
thread. The named URI shares one in-memory instance across all connections in
the same process.

DEBUG and BCRYPT_ROUNDS must be set before any import that calls
get_settings(): DEBUG lets Settings auto-generate SECRET_KEY, and 4 rounds
keeps bcrypt fast enough for a test suite.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.accounts import AccountService
from auth.codes import EmailVerificationService, ForgotPasswordService
from auth.passwords import PasswordHasher
from auth.store import AccountDetailStore, AccountStore, CodeStore, Database, ExternalAuthStore
from auth.tokens import TokenService
from core.config import get_settings

TEST_SECRET = "test-secret-key-with-at-least-32-characters"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite://")
    yield database
    database.close()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def token_secret() -> str:
    return TEST_SECRET


@pytest.fixture
def tokens(hasher: PasswordHasher, token_secret: str) -> TokenService:
    return TokenService(token_secret, expire_seconds=3600, hasher=hasher)


@pytest.fixture
def account_store(db: Database) -> AccountStore:
    return AccountStore(db)


@pytest.fixture
def detail_store(db: Database) -> AccountDetailStore:
    return AccountDetailStore(db)


@pytest.fixture
def link_store(db: Database) -> ExternalAuthStore:
    return ExternalAuthStore(db)


@pytest.fixture
def accounts(
    db: Database,
    account_store: AccountStore,
    detail_store: AccountDetailStore,
    tokens: TokenService,
    hasher: PasswordHasher,
) -> AccountService:
    return AccountService(db, account_store, detail_store, tokens, hasher)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def email_codes(db: Database, accounts: AccountService, clock: FakeClock) -> EmailVerificationService:
    return EmailVerificationService(accounts, CodeStore(db, "email_verification"), clock=clock)


@pytest.fixture
def forgot_codes(db: Database, accounts: AccountService, clock: FakeClock) -> ForgotPasswordService:
    return ForgotPasswordService(accounts, CodeStore(db, "forgot_password"), clock=clock)


@pytest.fixture
def ada(accounts: AccountService):
    """A plain password account: ada@example.com / ada / correct-horse."""
    return accounts.create("Ada Lovelace", "ada@example.com", "ada", "correct-horse")


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database):
    """Return a lifespan that wires services to the test database.

    No sweep task is started; expiry tests drive the services directly.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), db)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient whose app uses an isolated shared-memory database.

    The database name includes the test module name so modules never see
    each other's accounts. base_url uses localhost to pass TrustedHostMiddleware.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    db = Database(f"sqlite:///file:identity_{name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(db)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client

    db.close()
