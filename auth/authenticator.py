"""
auth/authenticator.py -- Email/password registration and login.

Three entry points, each ending in a bearer token from auth.tokens:

  register()         -- new standard account; duplicate email is an error.
  register_vendor()  -- new vendor account; a duplicate email is NOT an
                        error when the submitted password matches: the
                        existing account's token is returned (reused or
                        rotated) and no welcome is sent again, so a
                        double-submitted signup form is idempotent. A wrong
                        password or a blocked account is refused exactly as
                        login() refuses it.
  login()            -- password check, then token reuse or rotation.

Dispatch policy:
  The welcome email on registration is proof of onboarding. If it fails the
  request fails with WelcomeEmailFailed; the account itself stays persisted
  (there is no rollback across the dispatcher boundary). The welcome in-app
  notification and the staff alert for vendors are best-effort.

Concurrency: two simultaneous registrations for one email both pass the
get_by_email() check; the store's UNIQUE(email) constraint lets exactly one
insert win and the other surfaces DuplicateAccount.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import AccountNotFound, BlockedAccount, DuplicateAccount, InvalidCredentials, WelcomeEmailFailed
from auth.models import Account, Role, default_status
from auth.side_effects import SideEffects, best_effort, staff_alert_data
from auth.store import AccountStore, normalize_email
from auth.tokens import burn_password_check, establish_session, hash_password, issue, verify_password
from core.config import get_settings
from notify.dispatcher import DispatchError

logger = logging.getLogger("xuthority.auth")


@dataclass
class Profile:
    first_name: str
    last_name: str
    accepted_marketing: bool = False


@dataclass
class CompanyProfile:
    company_name: str
    company_email: str
    industry: str
    company_size: str


@dataclass
class AuthResult:
    """What every successful authentication path returns.

    created is True only when this call inserted the account; the API layer
    uses it to pick 201 versus 200.
    """

    account: Account
    token: str
    created: bool = False
    rotated: bool = True


class CredentialAuthenticator:
    """Password-based onboarding and login against the AccountStore."""

    def __init__(self, store: AccountStore, side_effects: SideEffects) -> None:
        self._store = store
        self._side_effects = side_effects

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, email: str, password: str, profile: Profile, accepted_terms: bool) -> AuthResult:
        """Create a standard account. Raises DuplicateAccount if the email exists."""
        if self._store.get_by_email(email) is not None:
            raise DuplicateAccount()
        account = self._insert(email, password, profile, accepted_terms, Role.standard)
        self._store.record_event(account.id, "REGISTER")
        logger.info("Registered standard account %s", account.id)
        await self._welcome(account)
        return AuthResult(account=account, token=account.access_token, created=True)

    async def register_vendor(
        self,
        email: str,
        password: str,
        profile: Profile,
        company: CompanyProfile,
        accepted_terms: bool,
    ) -> AuthResult:
        """Create a vendor account, or return the existing account's session.

        The existing-account path requires the account's own password and an
        unblocked status, so it never hands out a session login() would refuse.
        """
        existing = self._store.get_by_email(email)
        if existing is not None:
            self._check_credentials(existing, password)
            session = establish_session(self._store, existing)
            action = "REGISTER_VENDOR_REFRESH_TOKEN" if session.rotated else "REGISTER_VENDOR_EXISTING"
            self._store.record_event(existing.id, action)
            logger.info("Repeated vendor registration for account %s (rotated=%s)", existing.id, session.rotated)
            return AuthResult(account=existing, token=session.token, created=False, rotated=session.rotated)

        try:
            account = self._insert(email, password, profile, accepted_terms, Role.vendor, company)
        except DuplicateAccount:
            # Lost an insert race against an identical submission; that
            # submission owns the welcome, this one just gets a session.
            winner = self._store.get_by_email(email)
            if winner is None:
                raise
            self._check_credentials(winner, password)
            session = establish_session(self._store, winner)
            self._store.record_event(winner.id, "REGISTER_VENDOR_EXISTING")
            return AuthResult(account=winner, token=session.token, created=False, rotated=session.rotated)

        self._store.record_event(account.id, "REGISTER_VENDOR")
        logger.info("Registered vendor account %s (status=%s)", account.id, account.status.value)
        await self._welcome(account)
        await best_effort(
            self._side_effects.alert_staff("new_vendor", staff_alert_data(account)),
            "new_vendor alert",
            account.id,
        )
        return AuthResult(account=account, token=account.access_token, created=True)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> AuthResult:
        """Check the password and hand out the stored token or a rotated one.

        No side effects are dispatched on login. Rotation is audited as
        LOGIN_REFRESH_TOKEN so a materially expired session is visible in the
        audit trail.
        """
        account = self._store.get_by_email(email)
        if account is None:
            burn_password_check(password)
            raise AccountNotFound()
        self._check_credentials(account, password)

        session = establish_session(self._store, account)
        self._store.record_event(account.id, "LOGIN_REFRESH_TOKEN" if session.rotated else "LOGIN")
        return AuthResult(account=account, token=session.token, rotated=session.rotated)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_name(self, account: Account, first_name: str, last_name: str) -> Account:
        """Rename an account; the store regenerates its slug."""
        renamed = self._store.rename(account.id, first_name, last_name)
        if renamed is None:
            raise AccountNotFound()
        return renamed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_credentials(account: Account, password: str) -> None:
        """Raise InvalidCredentials or BlockedAccount. The password is checked first."""
        if not verify_password(password, account.hashed_password):
            raise InvalidCredentials()
        if account.is_blocked:
            raise BlockedAccount(get_settings().support_email)

    def _insert(
        self,
        email: str,
        password: str,
        profile: Profile,
        accepted_terms: bool,
        role: Role,
        company: CompanyProfile | None = None,
    ) -> Account:
        account = Account(
            email=normalize_email(email),
            first_name=profile.first_name,
            last_name=profile.last_name,
            hashed_password=hash_password(password),
            role=role,
            status=default_status(role),
            accepted_terms=accepted_terms,
            accepted_marketing=profile.accepted_marketing,
        )
        if company is not None:
            account.company_name = company.company_name
            account.company_email = normalize_email(company.company_email)
            account.industry = company.industry
            account.company_size = company.company_size
        created = self._store.create_account(account)
        token = issue(created)
        self._store.set_access_token(created.id, token)
        created.access_token = token
        return created

    async def _welcome(self, account: Account) -> None:
        """In-app welcome (best-effort), then the welcome email (load-bearing)."""
        await best_effort(
            self._side_effects.create_in_app_notification("welcome", account.id, {"role": account.role.value}),
            "welcome notification",
            account.id,
        )
        try:
            await self._side_effects.send_transactional_email(
                "welcome",
                account.email,
                {"first_name": account.first_name, "role": account.role.value},
            )
        except DispatchError as exc:
            logger.error("Welcome email failed for account %s; reporting registration as failed", account.id)
            raise WelcomeEmailFailed() from exc

