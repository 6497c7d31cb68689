"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> request model
validation -> services -> AccountStore -> response model serialization ->
exception handlers. Unit testing individual route functions would miss
middleware (sessions), dependency injection, camelCase aliasing and the error
envelope -- integration tests are the right tool here.

Coverage:
  - Registration: 201 {user, accessToken}, duplicate 400, welcome failure 502,
    validation 422, vendor 201/200
  - Login: 200 {user, token}, token reuse, 404, 401, 403 with support email
  - Current account: GET/PATCH /auth/me with and without a Bearer token
  - Federation: role survives the redirect via the session cookie, blocked and
    provider failures redirect to the frontend, unknown provider 404
  - Identity verification: raw fields, no account, 502 on provider failure
  - Password reset: forgot/verify/reset over HTTP, mismatched confirmation 422
  - Passwords over bcrypt's 72-byte limit: 422 on register and reset
  - Vendor re-registration: wrong password 401, blocked account 403
  - Error envelope: unexpected errors are 500 internal_error, rate limits 429
  - Middleware: CORS outermost, then rate limiting, then the session cookie

Fixtures used (from conftest.py):
  - api: SimpleNamespace(client, store, dispatcher, provider, oauth)
    client has follow_redirects=False.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from authlib.integrations.starlette_client import OAuthError
from conftest import userinfo
from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.main import app
from auth.models import AccountStatus, Provider
from core.config import get_settings

REGISTER_BODY = {
    "firstName": "Jane",
    "lastName": "Doe",
    "email": "jane@example.com",
    "password": "password123",
    "acceptedTerms": True,
}

VENDOR_BODY = {
    **REGISTER_BODY,
    "email": "vendor@acme.io",
    "companyName": "Acme",
    "companyEmail": "sales@acme.io",
    "industry": "Software",
    "companySize": "11-50",
}


def _register(api: SimpleNamespace, **overrides) -> dict:
    resp = api.client.post("/api/v1/auth/register", json={**REGISTER_BODY, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestRegistration:
    def test_register_returns_user_and_access_token(self, api: SimpleNamespace) -> None:
        body = _register(api)
        assert body["accessToken"]
        user = body["user"]
        assert user["email"] == "jane@example.com"
        assert user["firstName"] == "Jane"
        assert user["role"] == "standard"
        assert user["status"] == "approved"
        assert user["slug"] == "jane-doe"
        assert user["authProvider"] == "none"

    def test_register_response_is_sanitized(self, api: SimpleNamespace) -> None:
        """No password hash, stored token or reset artifact in the user object."""
        user = _register(api)["user"]
        for leaked in ("hashedPassword", "hashed_password", "accessToken", "resetTokenHash", "resetExpiresAt"):
            assert leaked not in user

    def test_register_sets_no_store(self, api: SimpleNamespace) -> None:
        resp = api.client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_duplicate_email(self, api: SimpleNamespace) -> None:
        _register(api)
        resp = api.client.post("/api/v1/auth/register", json={**REGISTER_BODY, "email": "JANE@example.com"})
        assert resp.status_code == 400
        assert _error_code(resp) == "duplicate_account"

    def test_register_welcome_email_failure_is_502(self, api: SimpleNamespace) -> None:
        api.dispatcher.fail.add("email:welcome")
        resp = api.client.post("/api/v1/auth/register", json=REGISTER_BODY)
        assert resp.status_code == 502
        assert _error_code(resp) == "welcome_email_failed"
        assert api.store.get_by_email("jane@example.com") is not None

        login = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "password123"})
        assert login.status_code == 200

    def test_register_validation(self, api: SimpleNamespace) -> None:
        cases = [
            {**REGISTER_BODY, "acceptedTerms": False},
            {**REGISTER_BODY, "password": "short"},
            {**REGISTER_BODY, "email": "not-an-email"},
            {k: v for k, v in REGISTER_BODY.items() if k != "firstName"},
        ]
        for body in cases:
            resp = api.client.post("/api/v1/auth/register", json=body)
            assert resp.status_code == 422, body
            assert _error_code(resp) == "validation_error"

    def test_register_vendor_new_then_existing(self, api: SimpleNamespace) -> None:
        first = api.client.post("/api/v1/auth/register-vendor", json=VENDOR_BODY)
        assert first.status_code == 201
        assert first.json()["user"]["role"] == "vendor"
        assert first.json()["user"]["status"] == "pending"
        assert first.json()["user"]["companyName"] == "Acme"

        again = api.client.post("/api/v1/auth/register-vendor", json=VENDOR_BODY)
        assert again.status_code == 200
        assert again.json()["accessToken"] == first.json()["accessToken"]
        assert len(api.dispatcher.emails_of("welcome")) == 1

    def test_register_vendor_existing_email_wrong_password_is_401(self, api: SimpleNamespace) -> None:
        victim = _register(api)
        resp = api.client.post(
            "/api/v1/auth/register-vendor",
            json={**VENDOR_BODY, "email": "jane@example.com", "password": "attacker-guess-1"},
        )
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_credentials"
        assert victim["accessToken"] not in resp.text

    def test_register_vendor_existing_blocked_account_is_403(self, api: SimpleNamespace) -> None:
        first = api.client.post("/api/v1/auth/register-vendor", json=VENDOR_BODY)
        api.store.update_account(first.json()["user"]["id"], status=AccountStatus.blocked)

        resp = api.client.post("/api/v1/auth/register-vendor", json=VENDOR_BODY)
        assert resp.status_code == 403
        assert _error_code(resp) == "account_blocked"
        assert "accessToken" not in resp.json()

    def test_password_over_bcrypt_limit_is_422(self, api: SimpleNamespace) -> None:
        # 80 ASCII characters, and 40 two-byte characters (80 bytes).
        for password in ("a" * 80, "\u00e9" * 40):
            for path, body in (("/api/v1/auth/register", REGISTER_BODY), ("/api/v1/auth/register-vendor", VENDOR_BODY)):
                resp = api.client.post(path, json={**body, "password": password})
                assert resp.status_code == 422, (path, len(password))
                assert _error_code(resp) == "validation_error"
        assert api.store.get_by_email("jane@example.com") is None

    def test_multibyte_password_at_bcrypt_limit_is_accepted(self, api: SimpleNamespace) -> None:
        password = "\u00e9" * 36
        _register(api, password=password)
        login = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": password})
        assert login.status_code == 200


class TestLogin:
    def test_login_reuses_registration_token(self, api: SimpleNamespace) -> None:
        registered = _register(api)
        resp = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "password123"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["token"] == registered["accessToken"]
        assert body["user"]["id"] == registered["user"]["id"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_unknown_email(self, api: SimpleNamespace) -> None:
        resp = api.client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "password123"})
        assert resp.status_code == 404
        assert _error_code(resp) == "account_not_found"

    def test_login_wrong_password(self, api: SimpleNamespace) -> None:
        _register(api)
        resp = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "wrong-pass"})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_credentials"

    def test_login_blocked(self, api: SimpleNamespace) -> None:
        user = _register(api)["user"]
        api.store.update_account(user["id"], status=AccountStatus.blocked)
        resp = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "password123"})
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "account_blocked"
        assert error["detail"]["supportEmail"] == get_settings().support_email


class TestCurrentAccount:
    def test_me_requires_bearer(self, api: SimpleNamespace) -> None:
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "unauthorized"
        assert api.client.get("/api/v1/auth/me", headers=_bearer("garbage")).status_code == 401

    def test_me_returns_account(self, api: SimpleNamespace) -> None:
        token = _register(api)["accessToken"]
        resp = api.client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == "jane@example.com"

    def test_blocked_account_token_stops_working(self, api: SimpleNamespace) -> None:
        body = _register(api)
        api.store.update_account(body["user"]["id"], status=AccountStatus.blocked)
        assert api.client.get("/api/v1/auth/me", headers=_bearer(body["accessToken"])).status_code == 401

    def test_rename_regenerates_slug(self, api: SimpleNamespace) -> None:
        token = _register(api)["accessToken"]
        resp = api.client.patch(
            "/api/v1/auth/me", json={"firstName": "Janet", "lastName": "Roe"}, headers=_bearer(token)
        )
        assert resp.status_code == 200
        assert resp.json()["slug"] == "janet-roe"
        assert resp.json()["firstName"] == "Janet"

    def test_providers_is_public(self, api: SimpleNamespace) -> None:
        resp = api.client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert isinstance(resp.json()["providers"], list)


class TestFederation:
    def _start(self, api: SimpleNamespace, provider: str = "google", role: str | None = None) -> str:
        url = f"/api/v1/auth/{provider}" + (f"?role={role}" if role else "")
        resp = api.client.get(url)
        assert resp.status_code == 302
        return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]

    def test_role_survives_redirect(self, api: SimpleNamespace) -> None:
        state = self._start(api, role="vendor")
        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("newvendor@example.com")}

        resp = api.client.get(f"/api/v1/auth/google/callback?state={state}&code=abc")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["token"]
        assert body["user"]["role"] == "vendor"
        assert body["user"]["authProvider"] == "google"
        assert [kind for kind, _ in api.dispatcher.staff_alerts] == ["new_vendor"]

    def test_missing_intent_defaults_to_standard(self, api: SimpleNamespace) -> None:
        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("nointent@example.com")}
        resp = api.client.get("/api/v1/auth/linkedin/callback?state=never-issued&code=abc")
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "standard"

    def test_existing_account_logs_in(self, api: SimpleNamespace) -> None:
        registered = _register(api)
        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("jane@example.com")}
        state = self._start(api, role="vendor")

        resp = api.client.get(f"/api/v1/auth/google/callback?state={state}&code=abc")
        assert resp.status_code == 200
        assert resp.json()["token"] == registered["accessToken"]
        assert resp.json()["user"]["role"] == "standard"
        assert api.store.get_by_email("jane@example.com").auth_provider is Provider.none

    def test_blocked_account_redirects(self, api: SimpleNamespace) -> None:
        user = _register(api)["user"]
        api.store.update_account(user["id"], status=AccountStatus.blocked)
        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("jane@example.com")}

        resp = api.client.get("/api/v1/auth/google/callback?state=x&code=abc")
        assert resp.status_code == 302
        assert resp.headers["location"] == f"{get_settings().frontend_url}/login?error=account_blocked"

    def test_provider_failure_redirects(self, api: SimpleNamespace) -> None:
        api.provider.authorize_access_token.side_effect = OAuthError(error="access_denied")
        resp = api.client.get("/api/v1/auth/google/callback?state=x&code=abc")
        assert resp.status_code == 302
        assert resp.headers["location"].endswith("/login?error=oauth_failed")

    def test_unverified_email_redirects(self, api: SimpleNamespace) -> None:
        api.provider.authorize_access_token.return_value = {
            "userinfo": userinfo("sneaky@example.com", email_verified=False)
        }
        resp = api.client.get("/api/v1/auth/google/callback?state=x&code=abc")
        assert resp.status_code == 302
        assert resp.headers["location"].endswith("/login?error=oauth_failed")
        assert api.store.get_by_email("sneaky@example.com") is None

    def test_invalid_role_rejected(self, api: SimpleNamespace) -> None:
        resp = api.client.get("/api/v1/auth/google?role=admin")
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"

    def test_unknown_provider_404(self, api: SimpleNamespace) -> None:
        resp = api.client.get("/api/v1/auth/github")
        assert resp.status_code == 404
        assert _error_code(resp) == "provider_not_found"


class TestIdentityVerification:
    def test_verify_returns_raw_fields(self, api: SimpleNamespace) -> None:
        redirect = api.client.get("/api/v1/auth/linkedin/verify")
        assert redirect.status_code == 302

        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("who@example.com")}
        resp = api.client.get("/api/v1/auth/linkedin/verify/callback?state=x&code=abc")
        assert resp.status_code == 200
        body = resp.json()
        assert body["providerId"] == "sub-who@example.com"
        assert body["email"] == "who@example.com"
        assert body["firstName"] == "Fed"
        assert body["profileUrl"] == "https://linkedin.com/in/sub-who@example.com"
        assert api.store.get_by_email("who@example.com") is None

    def test_verify_provider_failure_is_502(self, api: SimpleNamespace) -> None:
        api.provider.authorize_access_token.side_effect = OAuthError(error="server_error")
        resp = api.client.get("/api/v1/auth/google/verify/callback?state=x&code=abc")
        assert resp.status_code == 502
        assert _error_code(resp) == "upstream_provider_failure"


class TestPasswordReset:
    def test_forgot_password_unknown_email_is_200(self, api: SimpleNamespace) -> None:
        resp = api.client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert api.dispatcher.emails == []

    def test_forgot_password_federation_account_is_400(self, api: SimpleNamespace) -> None:
        api.provider.authorize_access_token.return_value = {"userinfo": userinfo("fedonly@example.com")}
        assert api.client.get("/api/v1/auth/google/callback?state=x&code=abc").status_code == 200

        resp = api.client.post("/api/v1/auth/forgot-password", json={"email": "fedonly@example.com"})
        assert resp.status_code == 400
        assert _error_code(resp) == "federation_reset_not_allowed"

    def test_full_reset_over_http(self, api: SimpleNamespace) -> None:
        user = _register(api)["user"]
        assert api.client.post("/api/v1/auth/forgot-password", json={"email": "jane@example.com"}).status_code == 200
        token = api.dispatcher.reset_token_for("jane@example.com")

        verify = api.client.post("/api/v1/auth/verify-reset-token", json={"token": token})
        assert verify.status_code == 200
        assert verify.json()["userId"] == user["id"]
        assert verify.json()["email"] == "jane@example.com"
        assert "expiresAt" in verify.json()

        reset = api.client.post(
            "/api/v1/auth/reset-password",
            json={"token": token, "newPassword": "brand-new-pass", "confirmNewPassword": "brand-new-pass"},
        )
        assert reset.status_code == 200

        login = api.client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "brand-new-pass"})
        assert login.status_code == 200

        replay = api.client.post(
            "/api/v1/auth/reset-password",
            json={"token": token, "newPassword": "another-pass", "confirmNewPassword": "another-pass"},
        )
        assert replay.status_code == 400
        assert _error_code(replay) == "invalid_or_expired_token"

    def test_same_password_is_400(self, api: SimpleNamespace) -> None:
        _register(api)
        api.client.post("/api/v1/auth/forgot-password", json={"email": "jane@example.com"})
        token = api.dispatcher.reset_token_for("jane@example.com")
        resp = api.client.post(
            "/api/v1/auth/reset-password",
            json={"token": token, "newPassword": "password123", "confirmNewPassword": "password123"},
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "same_password_not_allowed"

    def test_mismatched_confirmation_is_422(self, api: SimpleNamespace) -> None:
        resp = api.client.post(
            "/api/v1/auth/reset-password",
            json={"token": "abc", "newPassword": "brand-new-pass", "confirmNewPassword": "different-pass"},
        )
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"

    def test_new_password_over_bcrypt_limit_is_422(self, api: SimpleNamespace) -> None:
        password = "\u00e9" * 40
        resp = api.client.post(
            "/api/v1/auth/reset-password",
            json={"token": "abc", "newPassword": password, "confirmNewPassword": password},
        )
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"

    def test_unknown_token_is_400(self, api: SimpleNamespace) -> None:
        resp = api.client.post("/api/v1/auth/verify-reset-token", json={"token": "0" * 64})
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_or_expired_token"


class TestErrorEnvelope:
    def test_unexpected_error_is_500_without_internals(self, api: SimpleNamespace) -> None:
        client = TestClient(app, follow_redirects=False, raise_server_exceptions=False)
        with patch.object(api.store, "get_by_email", side_effect=RuntimeError("db connection lost")):
            resp = client.post("/api/v1/auth/login", json={"email": "jane@example.com", "password": "password123"})
        assert resp.status_code == 500
        assert _error_code(resp) == "internal_error"
        assert "db connection lost" not in resp.text

    def test_login_rate_limit_is_429(self, api: SimpleNamespace, monkeypatch) -> None:
        monkeypatch.setattr(limiter, "enabled", True)
        try:
            statuses = [
                api.client.post("/api/v1/auth/login", json={"email": "nobody@example.com", "password": "whatever1"})
                for _ in range(12)
            ]
        finally:
            limiter.reset()
        assert statuses[0].status_code == 404
        limited = statuses[-1]
        assert limited.status_code == 429
        assert _error_code(limited) == "rate_limited"
        assert "Retry-After" in limited.headers


class TestMiddleware:
    def test_stack_runs_cors_then_limiter_then_session(self) -> None:
        # user_middleware is stored outermost first.
        classes = [m.cls for m in app.user_middleware]
        assert classes.index(CORSMiddleware) < classes.index(SlowAPIMiddleware) < classes.index(SessionMiddleware)

    def test_preflight_from_allowed_origin(self, api: SimpleNamespace) -> None:
        origin = get_settings().cors_origins[0]
        resp = api.client.options(
            "/api/v1/auth/login",
            headers={"Origin": origin, "Access-Control-Request-Method": "POST"},
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == origin
