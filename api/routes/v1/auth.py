"""
api/routes/v1/auth.py -- Account, session and password-reset REST endpoints.

Routes:
  POST  /api/v1/auth/register                    -- standard signup; 201 {user, accessToken}
  POST  /api/v1/auth/register-vendor             -- vendor signup; 201 new / 200 existing
  POST  /api/v1/auth/login                       -- password login; 200 {user, token}
  GET   /api/v1/auth/providers                   -- enabled identity providers (public)
  GET   /api/v1/auth/me                          -- current account (requires auth)
  PATCH /api/v1/auth/me                          -- rename current account (requires auth)
  GET   /api/v1/auth/{provider}?role=            -- redirect to provider, role captured
  GET   /api/v1/auth/{provider}/callback         -- federation login result
  GET   /api/v1/auth/{provider}/verify           -- redirect to provider, identity only
  GET   /api/v1/auth/{provider}/verify/callback  -- raw provider profile
  POST  /api/v1/auth/forgot-password             -- start a reset (always 200)
  POST  /api/v1/auth/verify-reset-token          -- check a reset token
  POST  /api/v1/auth/reset-password              -- consume a reset token

Security:
  [H2] login, register and the reset endpoints are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries a bearer token.
  forgot-password answers the same for unknown, blocked and throttled emails.

Domain errors (auth.errors.AuthError) propagate to the handler in api/main.py,
which renders the ErrorResponse envelope. The two federation login routes are
the exception: a browser lands on them, so failures redirect to the frontend
login page with an error code instead.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import limiter, login_limit, register_limit, reset_limit
from api.models import (
    AccountResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProviderInfo,
    ProvidersResponse,
    RegisterRequest,
    RegisterResponse,
    RegisterVendorRequest,
    ResetPasswordRequest,
    ResetTicketResponse,
    UpdateProfileRequest,
    VerifiedIdentityResponse,
    VerifyResetTokenRequest,
)
from auth.authenticator import CompanyProfile, CredentialAuthenticator, Profile
from auth.dependencies import get_current_account
from auth.errors import AuthError, BlockedAccount, ValidationError
from auth.federation import FederationBroker, begin_login, consume_role, parse_provider
from auth.models import Account
from auth.oauth import exchange_code, fetch_profile, get_enabled_providers
from auth.reset import ResetFlowController
from core.config import get_settings

logger = logging.getLogger("xuthority.api")

# Auth policy:
# - everything under /auth is public except GET/PATCH /auth/me, which
#   require a Bearer token (get_current_account).
router = APIRouter()

_FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _authenticator(request: Request) -> CredentialAuthenticator:
    return CredentialAuthenticator(request.app.state.account_store, request.app.state.dispatcher)


def _broker(request: Request) -> FederationBroker:
    return FederationBroker(request.app.state.account_store, request.app.state.dispatcher)


def _reset(request: Request) -> ResetFlowController:
    return ResetFlowController(request.app.state.account_store, request.app.state.dispatcher)


def _provider_client(request: Request, name: str):
    """Resolve a path segment to (Provider, authlib client) or 404."""
    try:
        provider = parse_provider(name)
    except ValidationError:
        provider = None
    client = request.app.state.oauth.create_client(provider.value) if provider else None
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_not_found", "message": f"Identity provider {name!r} is not enabled."},
        )
    return provider, client


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _frontend_login_redirect(error: str) -> RedirectResponse:
    return RedirectResponse(f"{get_settings().frontend_url}/login?error={error}", status_code=302)


# ---------------------------------------------------------------------------
# Password registration and login
# ---------------------------------------------------------------------------


@limiter.limit(register_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
async def register(request: Request, body: RegisterRequest, response: Response) -> RegisterResponse:
    """Create a standard account and return it with a bearer token.

    A failed welcome email fails the request (502) even though the account
    was created; the client can log in afterwards.
    """
    result = await _authenticator(request).register(
        body.email,
        body.password,
        Profile(body.first_name, body.last_name, body.accepted_marketing),
        body.accepted_terms,
    )
    _no_store(response)
    return RegisterResponse(user=AccountResponse.from_account(result.account), access_token=result.token)


@limiter.limit(register_limit)  # [H2]
@router.post("/auth/register-vendor", response_model=RegisterResponse, status_code=201)
async def register_vendor(request: Request, body: RegisterVendorRequest, response: Response) -> RegisterResponse:
    """Create a vendor account, or return the existing account's session with 200."""
    result = await _authenticator(request).register_vendor(
        body.email,
        body.password,
        Profile(body.first_name, body.last_name, body.accepted_marketing),
        CompanyProfile(body.company_name, body.company_email, body.industry, body.company_size),
        body.accepted_terms,
    )
    if not result.created:
        response.status_code = 200
    _no_store(response)
    return RegisterResponse(user=AccountResponse.from_account(result.account), access_token=result.token)


@limiter.limit(login_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest, response: Response) -> LoginResponse:
    """Authenticate with email and password.

    404 for an unknown email, 401 for a wrong password, 403 for a blocked
    account. A stored token with more than the refresh threshold left is
    returned as-is.
    """
    result = await _authenticator(request).login(body.email, body.password)
    _no_store(response)
    return LoginResponse(user=AccountResponse.from_account(result.account), token=result.token)


# ---------------------------------------------------------------------------
# Current account
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=ProvidersResponse)
async def list_providers() -> ProvidersResponse:
    """Return the configured identity providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no provider env vars are set.
    """
    return ProvidersResponse(providers=[ProviderInfo(**p) for p in get_enabled_providers()])


@router.get("/auth/me", response_model=AccountResponse)
async def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the account the bearer token belongs to."""
    return AccountResponse.from_account(current)


@router.patch("/auth/me", response_model=AccountResponse)
async def update_me(
    request: Request,
    body: UpdateProfileRequest,
    current: Account = Depends(get_current_account),
) -> AccountResponse:
    """Rename the current account. Its slug is regenerated from the new name."""
    renamed = _authenticator(request).update_name(current, body.first_name, body.last_name)
    return AccountResponse.from_account(renamed)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(reset_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Email a reset link if the account exists and may reset its password.

    The only non-200 answer is 400 federation_reset_not_allowed for accounts
    that have no password to reset.
    """
    await _reset(request).request_reset(body.email)
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@limiter.limit(reset_limit)  # [H2]
@router.post("/auth/verify-reset-token", response_model=ResetTicketResponse)
async def verify_reset_token(request: Request, body: VerifyResetTokenRequest) -> ResetTicketResponse:
    """Check a reset token without consuming it."""
    ticket = _reset(request).verify_reset(body.token)
    return ResetTicketResponse(
        user_id=ticket.account_id,
        first_name=ticket.first_name,
        last_name=ticket.last_name,
        email=ticket.email,
        expires_at=ticket.expires_at,
    )


@limiter.limit(reset_limit)  # [H2]
@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Consume a reset token and set the new password."""
    await _reset(request).consume_reset(body.token, body.new_password)
    return MessageResponse(message="Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Federation
#
# Route registration order: the fixed paths above (/auth/login, /auth/me,
# /auth/providers, ...) must be registered before /auth/{provider} so
# FastAPI does not treat "me" or "providers" as a provider name.
# ---------------------------------------------------------------------------


@router.get("/auth/{provider}", name="federation_login")
async def federation_login(request: Request, provider: str, role: str | None = None):
    """Redirect to the provider, remembering the requested role for the callback."""
    selected, client = _provider_client(request, provider)
    state = begin_login(request.session, selected, role)
    redirect_uri = str(request.url_for("federation_callback", provider=selected.value))
    return await client.authorize_redirect(request, redirect_uri, state=state)


@router.get("/auth/{provider}/callback", name="federation_callback")
async def federation_callback(request: Request, provider: str, response: Response):
    """Finish a federation login.

    Success returns {user, token}. Provider failures and blocked accounts
    redirect to the frontend login page with ?error=oauth_failed or
    ?error=account_blocked.
    """
    selected, client = _provider_client(request, provider)
    role = consume_role(request.session, selected, request.query_params.get("state"))
    try:
        token = await exchange_code(client, request, selected)
        profile = await fetch_profile(client, selected, token)
        result = await _broker(request).complete_login(profile, role)
    except BlockedAccount:
        return _frontend_login_redirect("account_blocked")
    except AuthError as exc:
        logger.warning("Federation login via %s failed: %s", selected.value, exc.code)
        return _frontend_login_redirect("oauth_failed")

    _no_store(response)
    return LoginResponse(user=AccountResponse.from_account(result.account), token=result.token)


@router.get("/auth/{provider}/verify", name="identity_verify")
async def identity_verify(request: Request, provider: str):
    """Redirect to the provider for identity verification only."""
    selected, client = _provider_client(request, provider)
    redirect_uri = str(request.url_for("identity_verify_callback", provider=selected.value))
    return await client.authorize_redirect(request, redirect_uri)


@router.get(
    "/auth/{provider}/verify/callback",
    name="identity_verify_callback",
    response_model=VerifiedIdentityResponse,
)
async def identity_verify_callback(request: Request, provider: str) -> VerifiedIdentityResponse:
    """Return the provider's profile fields. Never creates or reads an account.

    Provider failures surface as 502 upstream_provider_failure.
    """
    selected, client = _provider_client(request, provider)
    token = await exchange_code(client, request, selected)
    profile = await fetch_profile(client, selected, token)
    return VerifiedIdentityResponse(**FederationBroker.verify_identity(profile))

