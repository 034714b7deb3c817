"""
tests/conftest.py -- Shared test fixtures for the admin auth service.

This module provides:
  - store / clock / mailer / code_service / issuer: unit-level fixtures built
    directly from the classes, with a controllable clock
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient plus an admin token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

Environment must be set before any app import: get_settings() is cached on
first use and auth/hashing.py computes its dummy hash at import time.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SMTP_MOCK"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOGIN_RATE_LIMIT"] = "5/minute"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.codes import CodeService
from auth.mailer import MockMailDispatcher
from auth.store import UserStore
from auth.tokens import TokenIssuer

TEST_SECRET = secrets.token_hex(32)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> MockMailDispatcher:
    return MockMailDispatcher()


@pytest.fixture
def code_service(store: UserStore, mailer: MockMailDispatcher, clock: FakeClock) -> CodeService:
    return CodeService(store, mailer, ttl_minutes=10, cooldown_seconds=60, echo_codes=True, clock=clock)


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, expire_seconds=3600)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, token_issuer: TokenIssuer):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        mailer = MockMailDispatcher()
        app.state.user_store = user_store
        app.state.token_issuer = token_issuer
        app.state.mailer = mailer
        app.state.code_service = CodeService(user_store, mailer, ttl_minutes=10, cooldown_seconds=60, echo_codes=True)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str], None, None]:
    """Yield (client, admin_token) for API integration tests.

    Each test module gets its own named in-memory DB, so usernames only need
    to be unique within a module.
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    user_store = UserStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    token_issuer = TokenIssuer(TEST_SECRET, expire_seconds=3600)

    admin = user_store.register("testadmin", "testpass123", roles={"user", "admin"})
    token = token_issuer.issue_for_user(admin)

    app.router.lifespan_context = _patch_lifespan(user_store, token_issuer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token

    user_store.close()
