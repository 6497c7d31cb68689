"""
auth/federation.py -- Third-party identity federation (Google, LinkedIn).

One algorithm, parameterized by the closed Provider enum:

  1. begin_login()      -- before the provider redirect, remember which role
                           the caller asked for ("standard" or "vendor").
  2. consume_role()     -- on callback, take that role back out (the slot is
                           always cleared, even when expired).
  3. FederationBroker.complete_login()
                        -- unknown email: create the account with the
                           captured role; known email: refuse blocked
                           accounts, otherwise reuse/rotate the token exactly
                           like a password login.

The provider redirect cannot carry application state, so the intent lives in
the signed session cookie. Each intent is keyed by provider and by the OAuth
`state` value of that redirect, and carries its own expiry: two login
attempts in flight (two tabs, two providers) never read each other's role.

verify_identity() is the identity-verification flow (e.g. a reviewer proving
who they are). It shares provider plumbing with login but never reads or
writes an account.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import MutableMapping

from auth.authenticator import AuthResult
from auth.errors import BlockedAccount, DuplicateAccount, ValidationError
from auth.models import FEDERATION_PROVIDERS, Account, FederatedProfile, Provider, Role, default_status
from auth.side_effects import SideEffects, best_effort, staff_alert_data
from auth.store import AccountStore, normalize_email
from auth.tokens import establish_session, issue
from core.config import get_settings

logger = logging.getLogger("xuthority.auth.federation")

_INTENT_PREFIX = "_intent_"


# ---------------------------------------------------------------------------
# Parameter parsing
# ---------------------------------------------------------------------------


def parse_provider(name: str) -> Provider:
    """Map a path segment to a federation provider. Raises ValidationError."""
    try:
        provider = Provider(name)
    except ValueError:
        provider = None
    if provider not in FEDERATION_PROVIDERS:
        raise ValidationError(f"Unknown identity provider: {name!r}")
    return provider


def parse_role(value: str | None) -> Role:
    """Role requested at login initiation. Missing means standard."""
    if not value:
        return Role.standard
    try:
        return Role(value)
    except ValueError:
        raise ValidationError("role must be 'standard' or 'vendor'.") from None


# ---------------------------------------------------------------------------
# Role intent across the provider redirect
# ---------------------------------------------------------------------------


def _intent_key(provider: Provider, state: str) -> str:
    return f"{_INTENT_PREFIX}{provider.value}_{state}"


def _prune_expired(session: MutableMapping, now: float) -> None:
    for key in [k for k in session if k.startswith(_INTENT_PREFIX)]:
        entry = session.get(key)
        if not isinstance(entry, dict) or entry.get("expires_at", 0) <= now:
            session.pop(key, None)


def begin_login(session: MutableMapping, provider: Provider, role: str | None, now: float | None = None) -> str:
    """Store the intended role and return the OAuth state value to redirect with.

    Raises ValidationError for a role other than standard or vendor.
    """
    intended = parse_role(role)
    now = time.time() if now is None else now
    _prune_expired(session, now)
    state = secrets.token_urlsafe(24)
    session[_intent_key(provider, state)] = {
        "role": intended.value,
        "expires_at": now + get_settings().oauth_intent_ttl_seconds,
    }
    return state


def consume_role(session: MutableMapping, provider: Provider, state: str | None, now: float | None = None) -> Role:
    """Pop the intent for this redirect. Missing, expired or garbled -> standard."""
    if not state:
        return Role.standard
    now = time.time() if now is None else now
    entry = session.pop(_intent_key(provider, state), None)
    if not isinstance(entry, dict) or entry.get("expires_at", 0) <= now:
        return Role.standard
    try:
        return Role(entry.get("role"))
    except ValueError:
        return Role.standard


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


class FederationBroker:
    """Create or link local accounts from a verified provider profile."""

    def __init__(self, store: AccountStore, side_effects: SideEffects) -> None:
        self._store = store
        self._side_effects = side_effects

    async def complete_login(self, profile: FederatedProfile, role: Role) -> AuthResult:
        """Finish a federation login for a profile whose email is verified.

        `role` only matters when the account is created here; an existing
        account keeps the role (and provider tag) it was created with.
        """
        account = self._store.get_by_email(profile.email)
        if account is None:
            try:
                return await self._create(profile, role)
            except DuplicateAccount:
                # A concurrent callback for the same email created it first.
                account = self._store.get_by_email(profile.email)
                if account is None:
                    raise

        if account.is_blocked:
            logger.warning("Blocked account %s attempted %s login", account.id, profile.provider.value)
            raise BlockedAccount(get_settings().support_email)

        session = establish_session(self._store, account)
        self._store.record_event(
            account.id, "LOGIN_REFRESH_TOKEN" if session.rotated else "LOGIN", profile.provider.value
        )
        return AuthResult(account=account, token=session.token, rotated=session.rotated)

    async def _create(self, profile: FederatedProfile, role: Role) -> AuthResult:
        account = self._store.create_account(
            Account(
                email=normalize_email(profile.email),
                first_name=profile.first_name or profile.email.split("@", 1)[0],
                last_name=profile.last_name,
                role=role,
                status=default_status(role),
                auth_provider=profile.provider,
                hashed_password=None,
                # Consent is collected by the client before the provider redirect.
                accepted_terms=True,
            )
        )
        token = issue(account)
        self._store.set_access_token(account.id, token)
        account.access_token = token
        self._store.record_event(account.id, "REGISTER", profile.provider.value)
        logger.info("Created %s account %s via %s", role.value, account.id, profile.provider.value)

        await best_effort(
            self._side_effects.create_in_app_notification("welcome", account.id, {"role": role.value}),
            "welcome notification",
            account.id,
        )
        await best_effort(
            self._side_effects.send_transactional_email(
                "welcome", account.email, {"first_name": account.first_name, "role": role.value}
            ),
            "welcome email",
            account.id,
        )
        alert = "new_vendor" if role is Role.vendor else "new_account"
        await best_effort(self._side_effects.alert_staff(alert, staff_alert_data(account)), f"{alert} alert", account.id)
        return AuthResult(account=account, token=token, created=True)

    @staticmethod
    def verify_identity(profile: FederatedProfile) -> dict:
        """Return the raw provider fields for the verification workflow.

        No account is looked up or created.
        """
        return {
            "provider": profile.provider.value,
            "provider_id": profile.subject,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "email": profile.email,
            "profile_url": profile.profile_url,
            "profile_picture": profile.picture,
            "headline": profile.headline,
            "industry": profile.industry,
        }
