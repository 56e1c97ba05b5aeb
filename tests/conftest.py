"""
tests/conftest.py -- Shared test fixtures for PulseHours tests.

This module provides:
  - FakeClock: injectable clock so session expiry, rotation and rate-limit
    windows can be tested without sleeping
  - engine / auth: a fresh in-memory database and auth core per test
  - _patch_lifespan(): wires the test auth core into app.state, bypassing
    real startup
  - web_client: TestClient with follow_redirects=False for route tests
  - make_user() / login(): helpers that create accounts and log in through
    the real form (including its CSRF token)

Design: a single in-memory SQLite connection shared through StaticPool.
TestClient runs sync route handlers in a thread pool; plain ':memory:' with
a per-thread pool would present a blank schema to each worker thread.

DEBUG and ALLOWED_HOSTS must be set before any app import: get_settings() is
cached on first call, and TrustedHostMiddleware reads allowed_hosts when
api/main.py is imported (TestClient sends Host: testserver).
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
# Opportunistic pruning is random; tests that need it build their own log.
os.environ.setdefault("LOGIN_ATTEMPT_PRUNE_PROBABILITY", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from api.limiter import limiter
from asgi import app
from auth.components import AuthComponents, build_auth_components
from auth.credentials import hash_password
from auth.models import Role, User
from core.config import get_settings

START = 1_700_000_000.0
CSRF_RE = re.compile(r'name="csrf_token" value="([0-9a-f]+)"')


class FakeClock:
    """Callable clock returning a controllable epoch time."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_engine() -> Engine:
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def make_user(
    auth: AuthComponents,
    email: str,
    password: str = "correct-horse",
    role: Role = Role.USER,
    is_active: bool = True,
    first_name: str = "",
) -> User:
    """Create an account and return it as loaded from the store."""
    uid = auth.users.create_user(
        User(
            email=email,
            role=role,
            first_name=first_name,
            hashed_password=hash_password(password),
            is_active=is_active,
        )
    )
    return auth.users.get_by_id(uid)


def _patch_lifespan(auth: AuthComponents, engine: Engine, setup_required: bool = False):
    """Return an async context manager that replaces the real lifespan.

    The housekeeping task is a long-sleeping coroutine that keeps asyncio
    happy (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.engine = engine
        app.state.auth = auth
        app.state.setup_required = setup_required
        app.state.housekeeping_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.housekeeping_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Client helpers
# ---------------------------------------------------------------------------


def csrf_from(html: str) -> str:
    match = CSRF_RE.search(html)
    assert match, "page has no csrf_token field"
    return match.group(1)


def session_cookie(client: TestClient) -> str | None:
    return client.cookies.get(get_settings().session_cookie_name)


def login(client: TestClient, email: str, password: str):
    """Log in through GET /login + POST /login, returning the POST response."""
    page = client.get("/login")
    assert page.status_code == 200
    return client.post(
        "/login",
        data={"email": email, "password": password, "csrf_token": csrf_from(page.text)},
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def auth(engine: Engine, clock: FakeClock) -> AuthComponents:
    return build_auth_components(engine, get_settings(), clock=clock)


@pytest.fixture
def web_client(auth: AuthComponents, engine: Engine) -> Generator[TestClient, None, None]:
    """Yield a TestClient wired to the per-test auth core.

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations* (e.g. 302 to /login), which are invisible once
    the client follows the redirect and returns the final 200 response.

    The slowapi flood cap is disabled; the attempt-log limiter under test
    still runs.
    """
    app.router.lifespan_context = _patch_lifespan(auth, engine)
    limiter.enabled = False
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
    limiter.enabled = True
