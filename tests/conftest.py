"""
tests/conftest.py -- Shared fixtures for the portal integration tests.

This module provides:
  - _make_test_stores(): isolated named shared-memory SQLite stores
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - InlineDispatcher: runs background tasks synchronously so effects are observable
  - api_client: one TestClient + stores + admin per test module
  - portal: function-scoped view of api_client with a clean cookie jar and limiter

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Settings are read once and cached, so the environment below must be set
before any api/auth/core import:
  DEBUG=true        -- auto-generate SECRET_KEY instead of refusing to start
  BCRYPT_ROUNDS=4   -- keep password hashing fast
  ALLOWED_HOSTS     -- TestClient sends Host: testserver
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from concurrent.futures import Future
from contextlib import asynccontextmanager
from dataclasses import dataclass

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.models import User
from auth.sessions import TokenService
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.tasks import BackgroundDispatcher, _run_logged
from tenancy.store import TenancyStore

DEFAULT_PASSWORD = "correct-horse-battery"
REFRESH_COOKIE = "refresh_token"

_email_seq = itertools.count(1)


def unique_email(prefix: str = "user") -> str:
    """Emails must not repeat inside a module: the stores live for the whole module."""
    return f"{prefix}{next(_email_seq)}@example.com"


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def refresh_cookie_header(raw: str) -> dict[str, str]:
    """Send one specific refresh token, ignoring whatever is in the client jar."""
    return {"Cookie": f"{REFRESH_COOKIE}={raw}"}


def cookie_cleared(resp) -> bool:
    """True when the response expires the refresh cookie."""
    for header in resp.headers.get_list("set-cookie"):
        lowered = header.lower()
        if lowered.startswith(f"{REFRESH_COOKIE}=") and "max-age=0" in lowered:
            return True
    return False


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


class InlineDispatcher(BackgroundDispatcher):
    """Runs each task before dispatch() returns, with the production failure policy."""

    def __init__(self) -> None:
        super().__init__(max_workers=1)
        self.dispatched: list[str] = []

    def dispatch(self, name, fn, *args) -> Future[None]:
        self.dispatched.append(name)
        _run_logged(name, fn, *args)
        done: Future[None] = Future()
        done.set_result(None)
        return done


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, TenancyStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    portal_url = f"sqlite:///file:test_portal_{db_suffix}?mode=memory&cache=shared&uri=true"
    audit_url = f"sqlite:///file:test_audit_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(portal_url), TenancyStore(portal_url), AuditStore(audit_url)


def _patch_lifespan(user_store: UserStore, tenancy_store: TenancyStore, audit_store: AuditStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine: a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.tenancy_store = tenancy_store
        app.state.audit_store = audit_store
        app.state.audit = AuditLogger(audit_store)
        app.state.token_service = TokenService(user_store)
        app.state.dispatcher = InlineDispatcher()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class Portal:
    client: TestClient
    user_store: UserStore
    tenancy_store: TenancyStore
    audit_store: AuditStore
    admin_id: int
    admin_token: str

    def create_user(
        self,
        roles: tuple[str, ...] | list[str] = (),
        email: str | None = None,
        password: str = DEFAULT_PASSWORD,
        is_active: bool = True,
    ) -> tuple[int, str]:
        """Insert a user directly and return (user_id, access_token)."""
        user = User(
            email=email or unique_email(),
            password_hash=hash_password(password),
            is_active=is_active,
        )
        uid = self.user_store.create_user(user, roles)
        return uid, create_access_token(uid, list(roles), expire_seconds=3600)

    def admin_headers(self) -> dict[str, str]:
        return bearer(self.admin_token)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[Portal, None, None]:
    """One TestClient per test module against the real app and isolated stores."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, tenancy_store, audit_store = _make_test_stores(suffix)

    admin = User(email=unique_email("admin"), password_hash=hash_password(DEFAULT_PASSWORD))
    admin_id = user_store.create_user(admin, ["admin"])
    admin_token = create_access_token(admin_id, ["admin"], expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(user_store, tenancy_store, audit_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Portal(
            client=client,
            user_store=user_store,
            tenancy_store=tenancy_store,
            audit_store=audit_store,
            admin_id=admin_id,
            admin_token=admin_token,
        )

    audit_store.close()
    tenancy_store.close()
    user_store.close()


@pytest.fixture()
def portal(api_client: Portal) -> Portal:
    """api_client with an empty cookie jar and fresh rate-limit counters."""
    api_client.client.cookies.clear()
    limiter.reset()
    return api_client
