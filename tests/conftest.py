"""
tests/conftest.py -- Shared test fixtures for the SSO gateway tests.

This module provides:
  - make_stores(): isolated in-memory UserStore + SessionStore
  - FakeOAuthClient: OAuthClient stand-in that records calls, no network
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - web_client: TestClient with follow_redirects=False for browser routes
  - login(): drives a full login through the real routes

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.models import OAuthProfile
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import Settings

# Long enough for the secret_key validator; only used to build Settings objects.
TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"


def make_settings(**overrides) -> Settings:
    """Settings with every OAuth credential filled in, independent of the environment."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "microsoft_client_id": "ms-client",
        "microsoft_client_secret": "ms-secret",
        "github_client_id": "gh-client",
        "github_client_secret": "gh-secret",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_stores(name: str | None = None, clock=None) -> tuple[UserStore, SessionStore]:
    """Create an isolated named shared-memory database and both stores on it.

    Each call gets a fresh database name so tests never see each other's rows.
    """
    suffix = name or uuid4().hex
    url = f"sqlite:///file:test_{suffix}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url=url)
    session_store = SessionStore(user_store, clock=clock) if clock else SessionStore(user_store)
    return user_store, session_store


class FakeClock:
    """Settable clock for SessionStore. Starts at a fixed instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeOAuthClient:
    """Records calls; fetch_profile returns the queued profile or raises the queued error."""

    def __init__(self, missing: list[str] | None = None) -> None:
        self.missing = missing or []
        self.profile: OAuthProfile | None = None
        self.error: Exception | None = None
        self.fetch_calls: list[tuple[str, str]] = []
        self.authorize_calls: list[tuple[str, str]] = []

    def missing_credentials(self) -> list[str]:
        return list(self.missing)

    def enabled_providers(self) -> list[dict]:
        return [{"name": "microsoft", "label": "Microsoft"}, {"name": "github", "label": "GitHub"}]

    def authorization_url(self, provider: str, state: str) -> str:
        self.authorize_calls.append((provider, state))
        return f"https://idp.example.com/{provider}/authorize?state={state}"

    def fetch_profile(self, provider: str, code: str) -> OAuthProfile:
        self.fetch_calls.append((provider, code))
        if self.error is not None:
            raise self.error
        return self.profile


@pytest.fixture
def stores() -> Generator[tuple[UserStore, SessionStore], None, None]:
    user_store, session_store = make_stores()
    yield user_store, session_store
    user_store.close()


@pytest.fixture
def user_store(stores) -> UserStore:
    return stores[0]


@pytest.fixture
def session_store(stores) -> SessionStore:
    return stores[1]


@pytest.fixture
def fake_oauth() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture
def auth_service(stores, fake_oauth) -> AuthService:
    user_store, session_store = stores
    service = AuthService(user_store, session_store, fake_oauth, make_settings())
    service.initialize()
    return service


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test auth service and its stores into app.state so TestClient
    routes see isolated test DBs and a fake OAuth client. The sweep_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = auth_service.user_store
        app.state.session_store = auth_service.session_store
        app.state.auth_service = auth_service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def web_client(auth_service) -> Generator[TestClient, None, None]:
    """TestClient over the assembled app (API + web routers).

    follow_redirects=False is essential: we assert on redirect locations,
    which are invisible once the client follows the redirect.
    """
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(auth_service)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


def login(client: TestClient, fake_oauth: FakeOAuthClient, profile: OAuthProfile) -> str:
    """Run initiate + callback through the routes. Returns the session cookie value."""
    fake_oauth.profile = profile
    resp = client.get(f"/auth/{profile.provider}")
    assert resp.status_code == 302
    state = parse_qs(urlparse(resp.headers["location"]).query)["state"][0]
    resp = client.get(f"/auth/callback/{profile.provider}", params={"code": "auth-code", "state": state})
    assert resp.status_code == 302, resp.headers.get("location")
    assert resp.headers["location"] == "/dashboard"
    return client.cookies["session_id"]
