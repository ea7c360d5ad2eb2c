"""
tests/conftest.py -- Shared test fixtures for AccountGate tests.

This module provides:
  - RecordingNotifier: captures notifications (reset links, alerts) for assertions
  - service: an AuthService on an isolated SQLite file per test
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api: (client, service, notifier) TestClient over the real FastAPI app
  - helpers to create users at each role and to build Authorization headers

Design: every test gets its own SQLite file under tmp_path. TestClient runs
sync route handlers in a thread pool, and file databases (unlike :memory:)
present the same schema to every pooled connection.

Environment must be set before any api/auth/core import: get_settings() is
cached on first call and api.limiter / api.main read it at import time.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager, suppress

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-0123456789"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ADMIN_SECRET"] = "test-admin-secret"
os.environ["ALLOWED_HOSTS"] = '["testserver", "localhost"]'

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.service import AuthService, build_auth_service
from auth.tokens import hash_password
from core.config import get_settings

PASSWORD = "correct-horse-battery"

# ---------------------------------------------------------------------------
# Notification capture
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Notifier that keeps every call so tests can read links and alerts."""

    def __init__(self) -> None:
        self.events: list[tuple[str, tuple]] = []

    def _record(self, event: str, *args) -> None:
        self.events.append((event, args))

    def named(self, event: str) -> list[tuple]:
        return [args for name, args in self.events if name == event]

    def last_token(self, event: str) -> str:
        """Token at the end of the most recent link sent for `event`."""
        args = self.named(event)[-1]
        return args[1].rsplit("/", 1)[-1]

    def password_reset(self, user, reset_url):
        self._record("password_reset", user, reset_url)

    def account_recovery(self, user, recovery_url, recipient):
        self._record("account_recovery", user, recovery_url, recipient)

    def login_alert(self, user, device):
        self._record("login_alert", user, device)

    def suspension(self, user, suspension):
        self._record("suspension", user, suspension)

    def reactivation(self, user):
        self._record("reactivation", user)

    def two_factor_enabled(self, user):
        self._record("two_factor_enabled", user)

    def two_factor_disabled(self, user):
        self._record("two_factor_disabled", user)

    def two_factor_backup_codes(self, user, codes):
        self._record("two_factor_backup_codes", user, list(codes))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_user(service: AuthService, email: str, role: str = "user", password: str = PASSWORD, name: str = "") -> User:
    """Insert a user directly through the store (owner via the atomic bootstrap)."""
    if role == "owner":
        return service.bootstrap_owner(email, password, name or "Owner")
    uid = service.users.create_user(
        User(email=email, name=name or email.split("@")[0], role=role, hashed_password=hash_password(password, 4))
    )
    return service.users.find_by_id(uid)


def bearer(service: AuthService, user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {service.issue_token(user)}"}


def wrong_totp(secret: str) -> str:
    """A well-formed 6-digit code that is outside the accepted window."""
    totp = pyotp.TOTP(secret)
    now = int(time.time())
    accepted = {totp.at(now + offset) for offset in (-30, 0, 30)}
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555"):
        if candidate not in accepted:
            return candidate
    raise AssertionError("unreachable")


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can .cancel() a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(tmp_path, notifier) -> Generator[AuthService, None, None]:
    """AuthService backed by a fresh SQLite file."""
    svc = build_auth_service(get_settings(), db_url=f"sqlite:///{tmp_path / 'auth.db'}", notifier=notifier)
    yield svc
    svc.close()


@pytest.fixture
def api(service, notifier) -> Generator[tuple[TestClient, AuthService, RecordingNotifier], None, None]:
    """Yield (client, service, notifier) for API integration tests.

    Tests hit real route handlers, middleware and exception handlers, with the
    lifespan patched to use the isolated service.
    """
    app.router.lifespan_context = _patch_lifespan(service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, notifier
