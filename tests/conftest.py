"""
tests/conftest.py -- Shared test fixtures for Turnstile unit and integration tests.

This module provides:
  - make_store(): isolated in-memory AccountStore
  - settings / store / authenticator / issuer / registry: unit-test fixtures
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient over the real app with an admin and a regular account

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool, and the reaper runs
sweeps in a worker thread. Plain :memory: DBs are per-connection and would
present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG must be set before any api/auth import so get_settings() can
auto-generate the signing secrets instead of raising ConfigurationError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
# The login limiter is shared across the whole session; keep it out of the way.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.credentials import CredentialAuthenticator
from auth.linking import OAuthIdentityLinker
from auth.models import Account
from auth.reaper import SessionReaper
from auth.sessions import SessionRegistry
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"
USER_EMAIL = "user@example.com"
USER_PASSWORD = "userpass123"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> AccountStore:
    """Create an isolated named shared-memory AccountStore.

    Args:
        name: DB name suffix. Random when omitted, so every call is isolated.
    """
    name = name or uuid.uuid4().hex
    return AccountStore(f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "a" * 64,
        "refresh_secret_key": "b" * 64,
        "reaper_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-test fixtures -- one fresh store per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def authenticator(store: AccountStore, settings: Settings) -> CredentialAuthenticator:
    return CredentialAuthenticator(store, settings)


@pytest.fixture
def issuer(store: AccountStore, settings: Settings) -> TokenIssuer:
    return TokenIssuer(store, settings)


@pytest.fixture
def registry(store: AccountStore, settings: Settings) -> SessionRegistry:
    return SessionRegistry(store, settings)


@pytest.fixture
def account(authenticator: CredentialAuthenticator) -> Account:
    """A registered password account: user@example.com / userpass123."""
    return authenticator.register(USER_EMAIL, USER_PASSWORD, display_name="Test User")


# ---------------------------------------------------------------------------
# Lifespan patch
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and real auth components into app.state. The OAuth
    registry is mocked to prevent network calls. The reaper task is a
    long-sleeping coroutine (a real asyncio.Task is required; MagicMock
    would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        registry = SessionRegistry(store, settings)
        app.state.account_store = store
        app.state.authenticator = CredentialAuthenticator(store, settings)
        app.state.token_issuer = TokenIssuer(store, settings)
        app.state.session_registry = registry
        app.state.identity_linker = OAuthIdentityLinker(store)
        app.state.session_reaper = SessionReaper(registry)
        app.state.oauth = MagicMock()
        app.state.reaper_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reaper_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store. An admin
    and a regular password account exist before the client starts.

    The client keeps cookies between requests; tests that log in should
    clear client.cookies when they are done.
    """
    settings = get_settings()
    store = make_store(f"api_{uuid.uuid4().hex}")
    authenticator = CredentialAuthenticator(store, settings)
    authenticator.register(ADMIN_EMAIL, ADMIN_PASSWORD, display_name="Admin", role="admin")
    authenticator.register(USER_EMAIL, USER_PASSWORD, display_name="User")

    app.router.lifespan_context = _patch_lifespan(store, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
