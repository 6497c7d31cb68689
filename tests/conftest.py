"""
tests/conftest.py -- Shared test fixtures for Xuthority tests.

This module provides:
  - RecordingDispatcher: in-memory stand-in for notify.Dispatcher that
    records every call and can be told to fail per channel or per kind
  - make_store(): isolated named shared-memory AccountStore
  - _patch_lifespan(): wires test doubles into app.state, bypassing real startup
  - store / dispatcher: service-level fixtures
  - api: TestClient harness (client, store, dispatcher, provider client mock)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The env vars below must be set before any auth/core import: get_settings()
is cached on first use and api.limiter reads RATE_LIMIT_ENABLED at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set before any auth/core import. DEBUG lets get_settings()
# auto-generate SECRET_KEY; BCRYPT_ROUNDS=4 keeps hashing fast.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from api.main import app
from auth.store import AccountStore
from notify.dispatcher import DispatchError

# ---------------------------------------------------------------------------
# Dispatcher double
# ---------------------------------------------------------------------------


class RecordingDispatcher:
    """Records side effects instead of performing them.

    fail holds channel names ("email", "in_app", "staff") or "channel:kind"
    pairs (e.g. "email:welcome"); matching calls raise DispatchError.
    """

    def __init__(self) -> None:
        self.emails: list[tuple[str, str, dict]] = []
        self.notifications: list[tuple[str, int, dict]] = []
        self.staff_alerts: list[tuple[str, dict]] = []
        self.fail: set[str] = set()

    def _check(self, channel: str, kind: str) -> None:
        if channel in self.fail or f"{channel}:{kind}" in self.fail:
            raise DispatchError(channel, kind, RuntimeError("forced failure"))

    async def send_transactional_email(self, kind: str, recipient: str, data: dict) -> None:
        self._check("email", kind)
        self.emails.append((kind, recipient, data))

    async def create_in_app_notification(self, kind: str, account_id: int, data: dict) -> None:
        self._check("in_app", kind)
        self.notifications.append((kind, account_id, data))

    async def alert_staff(self, kind: str, data: dict) -> None:
        self._check("staff", kind)
        self.staff_alerts.append((kind, data))

    def emails_of(self, kind: str) -> list[tuple[str, str, dict]]:
        return [e for e in self.emails if e[0] == kind]

    def reset_token_for(self, email: str) -> str:
        """Plaintext reset token from the most recent reset email to `email`."""
        for kind, recipient, data in reversed(self.emails):
            if kind == "password_reset" and recipient == email:
                return data["token"]
        raise AssertionError(f"no password_reset email sent to {email}")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "test") -> AccountStore:
    """Create an isolated named shared-memory AccountStore.

    The uuid suffix keeps every store private to the test that created it.
    """
    return AccountStore(db_url=f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def userinfo(email: str = "fed@example.com", **overrides) -> dict:
    """An OIDC userinfo payload as authlib puts it on the token dict."""
    info = {
        "sub": f"sub-{email}",
        "email": email,
        "email_verified": True,
        "given_name": "Fed",
        "family_name": "User",
        "picture": "https://img.example.com/fed.png",
    }
    info.update(overrides)
    return info


def _make_provider_client() -> MagicMock:
    """Mock authlib client: redirects echo the state, token exchange is scripted."""
    client = MagicMock()

    async def authorize_redirect(request, redirect_uri, **kwargs):
        state = kwargs.get("state", "provider-state")
        return RedirectResponse(f"https://idp.example.com/authorize?state={state}", status_code=302)

    client.authorize_redirect = AsyncMock(side_effect=authorize_redirect)
    client.authorize_access_token = AsyncMock(return_value={"userinfo": userinfo()})
    client.userinfo = AsyncMock(return_value=userinfo())
    return client


def _patch_lifespan(store: AccountStore, dispatcher: RecordingDispatcher, oauth: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test doubles into app.state so TestClient routes see
    an isolated test DB and never send mail or reach an identity provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.dispatcher = dispatcher
        app.state.oauth = oauth
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def api(store: AccountStore, dispatcher: RecordingDispatcher) -> Generator[SimpleNamespace, None, None]:
    """Yield a harness with client, store, dispatcher and provider mocks.

    follow_redirects=False so federation tests can assert on the redirect
    Location (provider URL, or the frontend error page).
    """
    provider_client = _make_provider_client()
    oauth = MagicMock()
    oauth.create_client.side_effect = lambda name: provider_client if name in ("google", "linkedin") else None

    app.router.lifespan_context = _patch_lifespan(store, dispatcher, oauth)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield SimpleNamespace(client=client, store=store, dispatcher=dispatcher, provider=provider_client, oauth=oauth)
