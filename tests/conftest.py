"""
tests/conftest.py -- Shared test fixtures for SmartVal.

This module provides:
  - FakeClock: injectable epoch-seconds clock with advance()
  - memory_engine(): isolated named shared-memory SQLite engine
  - engine / clock: per-test store fixtures
  - harness: the real FastAPI app wired to a fresh in-memory store and a fake
    clock through a patched lifespan, plus helpers to create users and sign in

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

SECRET_KEY must be set before any api/ import: api.main loads settings at
import time and refuses to start without a signing secret.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set SECRET_KEY before any api/ or core/ import.
os.environ["SECRET_KEY"] = "test-secret-key-for-smartval-0123456789abcdef"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, init_state
from auth.models import Role, Tenant, User
from auth.passwords import hash_password
from auth.store import TenantStore, UserStore
from core.config import get_settings
from core.db import create_db_engine

TEST_SECRET = os.environ["SECRET_KEY"]


class FakeClock:
    """Callable clock returning epoch seconds that only moves when told to."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else float(int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def memory_engine(name: str | None = None) -> Engine:
    """Engine on a fresh named shared-memory SQLite database."""
    name = name or f"smartval_test_{uuid.uuid4().hex}"
    return create_db_engine(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = memory_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_user(
    engine: Engine,
    username: str,
    password: str = "secret123",
    role: Role = Role.valuer,
    tenant: Tenant | None = None,
) -> User:
    """Create a user (and a tenant when none is given) directly in the store."""
    if tenant is None:
        tenant = TenantStore(engine).create(f"{username} tenant")
    store = UserStore(engine)
    user_id = store.create_user(
        User(username=username, password_hash=hash_password(password), role=role, tenant_id=tenant.id)
    )
    return store.get_by_id(user_id)


@pytest.fixture
def secret() -> str:
    return TEST_SECRET


@pytest.fixture
def user_factory(engine: Engine):
    """make_user() bound to the per-test engine."""

    def factory(username: str, password: str = "secret123", role: Role = Role.valuer, tenant: Tenant | None = None) -> User:
        return make_user(engine, username, password, role, tenant)

    return factory


# ---------------------------------------------------------------------------
# App harness
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and fake clock into app.state so TestClient routes
    see an isolated store rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; a mock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, engine, get_settings(), clock=clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class Harness:
    client: TestClient
    engine: Engine
    clock: FakeClock

    def new_client(self) -> TestClient:
        """A second client with its own cookie jar, sharing the running app."""
        return TestClient(app, follow_redirects=False)

    def make_user(self, username: str, password: str = "secret123", role: Role = Role.valuer, tenant=None) -> User:
        return make_user(self.engine, username, password, role, tenant)

    def login(self, username: str, password: str = "secret123", client: TestClient | None = None):
        client = client or self.client
        return client.post("/api/v1/auth/login", json={"username": username, "password": password})

    def client_for(self, user: User) -> TestClient:
        """A fresh client holding a session for user.

        The session is issued directly by the session manager, so it does not
        count against the login rate limit.
        """
        manager = app.state.session_manager
        issued = manager.create_session(user.id)
        c = self.new_client()
        c.cookies.set(manager.cookie_name, issued.cookie_value)
        return c


@pytest.fixture
def harness(engine: Engine, clock: FakeClock) -> Generator[Harness, None, None]:
    """Yield a Harness around the real app with an isolated store.

    follow_redirects=False is essential: edge guard tests assert on redirect
    locations, which are invisible once the client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(engine, clock)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Harness(client=client, engine=engine, clock=clock)
