"""
tests/conftest.py -- Shared test fixtures for OrgTree unit and integration tests.

This module provides:
  - SecurityEnv: every store and security component wired to one engine,
    plus helpers that mint users, organizations, memberships and tokens
  - env: function-scoped SecurityEnv on a fresh in-memory DB (unit tests)
  - _patch_lifespan(): wires a SecurityEnv into app.state, bypassing real startup
  - api: TestClient against the real app with a module-scoped SecurityEnv;
    cookies are cleared before every test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and SECRET_KEY must be set before any api/auth/core import so
get_settings() resolves without a .env file.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Optional

# CRITICAL: set before any api/auth/core import.
TEST_SECRET = "test-secret-key-for-orgtree-0123456789abcdef"
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", TEST_SECRET)

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.models import AuditFilters, AuditLogEntry
from audit.store import AuditLog
from auth.csrf import CSRFGuard
from auth.models import Organization, OrganizationMembership, User
from auth.permissions import OrgAccessResolver
from auth.sessions import RefreshTokenManager
from auth.store import MembershipStore, UserStore
from auth.tokens import AccessTokenCodec, hash_password
from core.database import create_db_engine

PASSWORD = "correct-horse-battery"

# Rate limits are exercised explicitly in test_rate_limit.py; everywhere else
# the shared in-memory counters would leak between tests.
limiter.enabled = False

_counter = itertools.count(1)


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


class SecurityEnv:
    """Every security component on one engine, the way api/main.py wires them."""

    def __init__(self, name: str, secret: str = TEST_SECRET) -> None:
        self.engine = create_db_engine(_memory_url(name))
        self.audit_log = AuditLog(self.engine)
        self.user_store = UserStore(self.engine)
        self.membership_store = MembershipStore(self.engine)
        self.codec = AccessTokenCodec(secret)
        self.refresh_manager = RefreshTokenManager(self.engine, self.codec)
        self.csrf_guard = CSRFGuard(secret, self.audit_log)
        self.access_resolver = OrgAccessResolver(self.user_store, self.membership_store, self.audit_log)

    # -- factories -----------------------------------------------------

    def create_user(self, role: str = "user", password: str = PASSWORD, name: Optional[str] = None) -> User:
        n = next(_counter)
        user_id = self.user_store.create_user(
            User(
                email=f"user{n}@example.com",
                name=name or f"User {n}",
                role=role,
                hashed_password=hash_password(password),
            )
        )
        return self.user_store.get_by_id(user_id)

    def create_org(self, owner: User, name: str = "Acme") -> int:
        return self.membership_store.create_organization(Organization(name=name, created_by_id=owner.id))

    def add_member(self, org_id: int, user: User, role: str, added_by: Optional[User] = None) -> int:
        return self.membership_store.add_member(
            OrganizationMembership(
                organization_id=org_id,
                user_id=user.id,
                role=role,
                added_by_id=added_by.id if added_by else None,
            )
        )

    def auth_headers(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.codec.issue(user)}"}

    def audit_entries(self, action_type: Optional[str] = None) -> list[AuditLogEntry]:
        return self.audit_log.query_all(AuditFilters(action_type=action_type), limit=200).entries

    def close(self) -> None:
        self.engine.dispose()


@pytest.fixture()
def env() -> Generator[SecurityEnv, None, None]:
    """Fresh, isolated components per test."""
    security_env = SecurityEnv("unit")
    yield security_env
    security_env.close()


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(security_env: SecurityEnv):
    """Return an async context manager that replaces the real lifespan.

    The cleanup_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = security_env.engine
        app.state.audit_log = security_env.audit_log
        app.state.user_store = security_env.user_store
        app.state.membership_store = security_env.membership_store
        app.state.codec = security_env.codec
        app.state.refresh_manager = security_env.refresh_manager
        app.state.csrf_guard = security_env.csrf_guard
        app.state.access_resolver = security_env.access_resolver
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def _app_env(request) -> Generator[SimpleNamespace, None, None]:
    """One TestClient and SecurityEnv per test module for speed."""
    security_env = SecurityEnv(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(security_env)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield SimpleNamespace(client=client, env=security_env)
    security_env.close()


@pytest.fixture()
def api(_app_env) -> SimpleNamespace:
    """Yield namespace(client, env) with an empty cookie jar."""
    _app_env.client.cookies.clear()
    return _app_env


@pytest.fixture()
def csrf_headers(api):
    """Return a callable that fetches a CSRF token.

    The cookie lands in the client's jar; the callable returns the matching header.
    """

    def fetch() -> dict[str, str]:
        resp = api.client.get("/api/v1/csrf-token")
        assert resp.status_code == 200, resp.text
        return {"X-CSRF-Token": resp.json()["csrf_token"]}

    return fetch
