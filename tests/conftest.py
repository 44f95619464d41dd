"""
tests/conftest.py -- Shared test fixtures for Gatekeeper unit and integration tests.

This module provides:
  - user_store / token_store / authority / sso / flow: wired core services
  - api_client: TestClient over the real app with a patched lifespan

Builders (make_engine, add_user, FakeProvider) live in tests/helpers.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() generates a
SECRET_KEY and an RSA signing pair instead of raising. The login rate limit
is raised so the suite never trips it.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set these before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, build_services
from auth.authority import TokenAuthority
from auth.oauth import OAuthLinkingFlow
from auth.providers import OAuthProvider
from auth.sso import SSOCoordinator
from auth.store import UserStore
from auth.token_store import OAuthStateStore, RefreshTokenStore
from core.config import Settings, get_settings
from tests.helpers import FakeProvider, add_user, google_profile, make_engine

# ---------------------------------------------------------------------------
# Core service fixtures (function-scoped: each test gets an empty database)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def token_store(engine) -> RefreshTokenStore:
    return RefreshTokenStore(engine)


@pytest.fixture
def state_store(engine) -> OAuthStateStore:
    return OAuthStateStore(engine)


@pytest.fixture
def authority(settings, token_store, user_store) -> TokenAuthority:
    return TokenAuthority(settings, token_store, user_store)


@pytest.fixture
def sso(settings, authority, user_store) -> SSOCoordinator:
    return SSOCoordinator(settings, authority, user_store)


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return {
        "google": FakeProvider("google", google_profile()),
        "github": FakeProvider("github"),
    }


@pytest.fixture
def flow(settings, providers, user_store, state_store, sso) -> OAuthLinkingFlow:
    return OAuthLinkingFlow(settings, providers, user_store, state_store, sso, retry_delay=0)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, providers: dict[str, OAuthProvider]):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fake providers into app.state so TestClient
    routes hit an isolated in-memory database and never reach the network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, user_store, providers=providers)
        app.state.oauth_flow._retry_delay = 0
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, dict], None, None]:
    """Yield (client, ctx) for API integration tests.

    ctx carries the admin's id and a bearer token for Authorization headers,
    the user store and the fake providers. follow_redirects=False so OAuth
    tests can assert on redirect Location headers.
    """
    user_store = UserStore(make_engine("api"))
    admin = add_user(user_store, "admin@company.com", role="admin", email_verified=True)
    providers = {"google": FakeProvider("google", google_profile("g-api", "oauth.user@company.com"))}

    app.router.lifespan_context = _patch_lifespan(user_store, providers)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        token = app.state.authority.issue_token_pair(admin.id, admin.role).access_token
        yield client, {
            "admin_id": admin.id,
            "admin_token": token,
            "user_store": user_store,
            "providers": providers,
        }

    user_store.close()
