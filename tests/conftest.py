"""
tests/conftest.py -- Shared test fixtures for the GSO auth service.

This module provides:
  - engine / user_store / session_store: stores on a fresh shared-memory DB
  - reset_rate_limits (autouse): empty slowapi counters around every test
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api: an ApiHarness (TestClient + stores + a signed-in admin)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import: get_settings()
is cached on first call, and auth.tokens hashes its timing dummy at import.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import so get_settings() auto-generates
# SECRET_KEY in dev mode and bcrypt stays at the cheapest accepted cost.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "10")
os.environ.setdefault("REQUIRE_EMAIL_VERIFICATION", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app
from auth.audit import AuditLog
from auth.email import EmailService
from auth.models import DeviceFingerprint, GeoLocation
from auth.origin import GeoLocator
from auth.revocation import InMemoryRevocationRegistry
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import issue_access_token
from tests.factories import CHROME_WINDOWS, PASSWORD, make_test_engine, make_user

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = make_test_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def session_store(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture(autouse=True)
def reset_rate_limits() -> Generator[None, None, None]:
    """Every test starts with empty rate-limit counters."""
    limiter.reset()
    yield
    limiter.reset()


# ---------------------------------------------------------------------------
# App harness
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    user_store: UserStore
    session_store: SessionStore
    audit_log: AuditLog
    registry: InMemoryRevocationRegistry
    email: MagicMock
    geo: MagicMock
    admin_id: int
    admin_token: str

    def auth(self, token: str | None = None, user_agent: str = CHROME_WINDOWS) -> dict:
        """Authorization + User-Agent headers for token (default: the admin's)."""
        return {"Authorization": f"Bearer {token or self.admin_token}", "User-Agent": user_agent}

    def login(self, email: str, password: str = PASSWORD, user_agent: str = CHROME_WINDOWS, **extra):
        return self.client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password, **extra},
            headers={"User-Agent": user_agent},
        )


def _patch_lifespan(harness_state: dict):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see an
    isolated test DB. Mail and geolocation are MagicMocks so no network call
    is ever made and tests can inspect what would have been sent.

    The maintenance task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in harness_state.items():
            setattr(app.state, name, value)
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around the real app with isolated stores.

    Function-scoped: session and revocation tests mutate shared state, so
    every test gets a fresh database, registry and signed-in admin.
    """
    eng = make_test_engine()
    user_store = UserStore(eng)
    session_store = SessionStore(eng)
    audit_log = AuditLog(eng)
    registry = InMemoryRevocationRegistry()
    email = MagicMock(spec=EmailService)
    geo = MagicMock(spec=GeoLocator)
    geo.lookup.return_value = GeoLocation()

    admin_id = make_user(user_store, email="admin@example.com", role="admin", name="Admin")
    admin_token = issue_access_token(admin_id, "admin")
    session_store.create_or_refresh(
        admin_id,
        admin_token,
        DeviceFingerprint(platform="Windows", browser="Chromium", user_agent=CHROME_WINDOWS),
        ip_address="testclient",
    )

    app.router.lifespan_context = _patch_lifespan(
        {
            "engine": eng,
            "user_store": user_store,
            "session_store": session_store,
            "audit_log": audit_log,
            "revocation": registry,
            "email": email,
            "geo": geo,
        }
    )

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(
            client=client,
            user_store=user_store,
            session_store=session_store,
            audit_log=audit_log,
            registry=registry,
            email=email,
            geo=geo,
            admin_id=admin_id,
            admin_token=admin_token,
        )

    eng.dispose()
