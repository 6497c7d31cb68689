"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

Security notes:
  [H1] Email verification is mandatory. fetch_profile() raises
       UpstreamProviderFailure if the provider does not confirm the email is
       verified. Federation logins are matched to local accounts by email, so
       an unverified address would let anyone who typed a victim's email into
       their provider profile take over the victim's account.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware: the state is stored in the signed session cookie
  between the authorization redirect and the callback.

Supported providers (both via OpenID Connect discovery, so one code path
normalizes them):
  google   -- accounts.google.com
  linkedin -- "Sign In with LinkedIn using OpenID Connect"

Layer rule: no imports from api/ or notify/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError

from auth.errors import UpstreamProviderFailure
from auth.models import FederatedProfile, Provider
from core.config import Settings, get_settings

logger = logging.getLogger("xuthority.auth.oauth")

_LABELS: dict[Provider, str] = {
    Provider.google: "Google",
    Provider.linkedin: "LinkedIn",
}


def _credentials(cfg: Settings, provider: Provider) -> tuple[str, str]:
    if provider is Provider.google:
        return cfg.google_client_id, cfg.google_client_secret
    if provider is Provider.linkedin:
        return cfg.linkedin_client_id, cfg.linkedin_client_secret
    return "", ""


def register_providers(registry: OAuth, cfg: Settings) -> None:
    """Register every provider whose credentials are configured."""
    google_id, google_secret = _credentials(cfg, Provider.google)
    if google_id and google_secret:
        registry.register(
            name=Provider.google.value,
            client_id=google_id,
            client_secret=google_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    linkedin_id, linkedin_secret = _credentials(cfg, Provider.linkedin)
    if linkedin_id and linkedin_secret:
        registry.register(
            name=Provider.linkedin.value,
            client_id=linkedin_id,
            client_secret=linkedin_secret,
            server_metadata_url="https://www.linkedin.com/oauth/.well-known/openid-configuration",
            # LinkedIn rejects client_secret_basic on its token endpoint.
            client_kwargs={"scope": "openid profile email", "token_endpoint_auth_method": "client_secret_post"},
        )
        logger.info("LinkedIn OAuth provider registered")


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()
register_providers(oauth, get_settings())


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    providers: list[dict] = []
    for provider in (Provider.google, Provider.linkedin):
        client_id, client_secret = _credentials(cfg, provider)
        if client_id and client_secret:
            providers.append({"name": provider.value, "label": _LABELS[provider]})
    return providers


# ---------------------------------------------------------------------------
# Token exchange and profile extraction [H1]
# ---------------------------------------------------------------------------


async def exchange_code(client, request, provider: Provider) -> dict:
    """Exchange the callback's authorization code for a token dict.

    Raises UpstreamProviderFailure on state mismatch, a provider error
    response, or a network failure.
    """
    try:
        return await client.authorize_access_token(request)
    except (OAuthError, httpx.HTTPError) as exc:
        logger.warning("OAuth token exchange failed for provider %r: %s", provider.value, exc)
        raise UpstreamProviderFailure(f"{_LABELS[provider]} login failed.") from exc


async def fetch_profile(client, provider: Provider, token: dict) -> FederatedProfile:
    """Normalize a provider token response into a FederatedProfile.

    Prefers the claims parsed from the id_token; falls back to the userinfo
    endpoint when the provider did not include them.

    Raises:
        UpstreamProviderFailure: network/4xx from the provider, or a missing
            or unverified email [H1].
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        try:
            userinfo = await client.userinfo(token=token)
        except (OAuthError, httpx.HTTPError) as exc:
            logger.warning("Userinfo request failed for provider %r: %s", provider.value, exc)
            raise UpstreamProviderFailure(f"{_LABELS[provider]} profile could not be retrieved.") from exc
    userinfo = dict(userinfo)

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise UpstreamProviderFailure(f"{_LABELS[provider]} did not return an email address.")
    if not _is_verified(userinfo.get("email_verified")):
        logger.warning("OAuth login rejected: unverified email from %r", provider.value)
        raise UpstreamProviderFailure(f"{_LABELS[provider]} email address is not verified.")

    profile_url = None
    if provider is Provider.linkedin:
        profile_url = userinfo.get("profile") or f"https://linkedin.com/in/{subject}"

    return FederatedProfile(
        provider=provider,
        subject=str(subject),
        email=email,
        first_name=userinfo.get("given_name") or "",
        last_name=userinfo.get("family_name") or "",
        picture=userinfo.get("picture"),
        profile_url=profile_url,
        headline=userinfo.get("headline"),
        industry=userinfo.get("industry"),
        raw=userinfo,
    )


def _is_verified(value) -> bool:
    # Some providers send the claim as the string "true".
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)
