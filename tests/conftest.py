"""
tests/conftest.py -- Shared test fixtures for Gatekeeper integration tests.

This module provides:
  - _make_test_stores(): creates an isolated in-memory DB shared by UserStore
    and AdminStore
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - stores: one pair of stores per test module
  - client: a fresh TestClient (empty cookie jar) per test, follow_redirects=False
  - make_user / auth_headers: factories for accounts and Bearer headers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates the JWT secrets in dev mode rather than raising ValueError.
ALLOWED_HOSTS is set the same way so TrustedHostMiddleware accepts TestClient.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate the JWT secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# TestClient sends Host: testserver, which production hosts never allow.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')

import pytest
from fastapi.testclient import TestClient

from admin.store import AdminStore
from api.main import app
from auth.models import Role, User
from auth.passwords import hash_password
from auth.store import UserStore
from auth.tokens import create_access_token

TEST_PASSWORD = "Passw0rd!"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, AdminStore]:
    """Create both stores on one named shared-memory SQLite database.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (the module name is used).
    """
    url = f"sqlite:///file:test_gatekeeper_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), AdminStore(db_url=url)


def _patch_lifespan(user_store: UserStore, admin_store: AdminStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.admin_store = admin_store
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def stores(request) -> Generator[tuple[UserStore, AdminStore], None, None]:
    """One isolated database per test module."""
    user_store, admin_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    yield user_store, admin_store
    admin_store.close()
    user_store.close()


@pytest.fixture
def client(stores) -> Generator[TestClient, None, None]:
    """Yield a TestClient with an empty cookie jar.

    follow_redirects=False is essential for page gating tests: we assert on
    redirect *locations*, which are invisible once the client follows them.
    """
    user_store, admin_store = stores
    app.router.lifespan_context = _patch_lifespan(user_store, admin_store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def make_user(stores) -> Callable[..., User]:
    """Factory: create a user with a unique username and return the stored User."""
    user_store, _ = stores

    def _make(role: Role = Role.USER, password: str = TEST_PASSWORD, username: str | None = None) -> User:
        name = username or f"user_{uuid.uuid4().hex[:10]}"
        uid = user_store.create_user(
            User(username=name, email=f"{name}@example.com", role=role, hashed_password=hash_password(password))
        )
        return user_store.get_by_id(uid)

    return _make


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    """Factory: Authorization header carrying a fresh access token for a user."""

    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(user.id, user.username, user.role.value)
        return {"Authorization": f"Bearer {token}"}

    return _headers
