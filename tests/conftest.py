"""
tests/conftest.py -- Shared test fixtures for retail-auth.

This module provides:
  - store / make_user: an in-memory CredentialStore with every role seeded,
    plus a factory for active, verified users
  - notifier: an OTP notifier that records codes instead of sending them
  - service: a LoginService wired to the store with geo lookups stubbed out
  - file_store / make_file_user / file_service: the same on a tmp_path SQLite
    file, for code that calls the service from worker threads
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient against the real app with an isolated store

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for
the API fixture because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests that stay on one thread use plain :memory:.

Environment variables must be set before any auth/core import:
  DEBUG=true                -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4           -- keeps hashing fast in tests
  GEO_LOOKUP_ENABLED=false  -- no outbound geo-IP calls
  LOGIN_RATE_LIMIT          -- high enough that login tests never hit 429
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import -- settings are read at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("GEO_LOOKUP_ENABLED", "false")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Role, User
from auth.passwords import hash_password
from auth.roles import ROLE_SECTIONS
from auth.service import LoginService, build_login_service
from auth.store import CredentialStore

DEFAULT_PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """OTP notifier that keeps every code it is asked to deliver."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, email: str, display_name: str, code: str, expiry_minutes: int) -> None:
        self.sent.append((email, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def seed_roles(store: CredentialStore) -> None:
    for name in ROLE_SECTIONS:
        if name == "user":
            continue
        store.create_role(Role(name=name, display_name=name.replace("-", " ").title(), is_system_role=True))


def create_user(store: CredentialStore, email: str, password: str | None = DEFAULT_PASSWORD, **overrides) -> User:
    """Insert an active, email-verified user and return the stored row."""
    fields = {
        "email": email,
        "password_hash": hash_password(password) if password else None,
        "first_name": "Test",
        "last_name": "User",
        "role": "cashier",
        "account_status": "active",
        "is_active": True,
        "email_verified": True,
    }
    fields.update(overrides)
    uid = store.create_user(User(**fields))
    return store.find_user_by_id(uid)


def _patch_lifespan(store: CredentialStore, service: LoginService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and service into app.state so TestClient routes see
    an isolated database. The OAuth registry is mocked to prevent network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.login_service = service
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    seed_roles(s)
    yield s
    s.close()


@pytest.fixture
def make_user(store):
    def _make(email: str = "alice@x.com", password: str | None = DEFAULT_PASSWORD, **overrides) -> User:
        return create_user(store, email, password, **overrides)

    return _make


@pytest.fixture
def password() -> str:
    """The plain-text password create_user() hashes by default."""
    return DEFAULT_PASSWORD


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier) -> LoginService:
    return build_login_service(
        store,
        notifier=notifier,
        geo_lookup=lambda ip, timeout=None: None,
        ip_lookup=lambda timeout=None: None,
    )


@pytest.fixture
def file_store(tmp_path) -> Generator[CredentialStore, None, None]:
    """File-backed store for code that reaches the database from worker threads."""
    s = CredentialStore(f"sqlite:///{tmp_path / 'auth.db'}")
    seed_roles(s)
    yield s
    s.close()


@pytest.fixture
def make_file_user(file_store):
    def _make(email: str = "alice@x.com", password: str | None = DEFAULT_PASSWORD, **overrides) -> User:
        return create_user(file_store, email, password, **overrides)

    return _make


@pytest.fixture
def file_service(file_store, notifier) -> LoginService:
    return build_login_service(
        file_store,
        notifier=notifier,
        geo_lookup=lambda ip, timeout=None: None,
        ip_lookup=lambda timeout=None: None,
    )


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, CredentialStore, RecordingNotifier], None, None]:
    """Yield (client, store, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers against an isolated in-memory store. base_url
    uses localhost so TrustedHostMiddleware accepts the requests.
    """
    db_url = f"sqlite:///file:test_api_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    api_store = CredentialStore(db_url)
    seed_roles(api_store)
    api_notifier = RecordingNotifier()
    api_service = build_login_service(
        api_store,
        notifier=api_notifier,
        geo_lookup=lambda ip, timeout=None: None,
        ip_lookup=lambda timeout=None: None,
    )

    app.router.lifespan_context = _patch_lifespan(api_store, api_service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, api_store, api_notifier

    api_store.close()
