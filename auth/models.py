"""
auth/models.py -- Domain dataclasses and enums for identity entities.

Pattern: Data class (pure data container, near-zero logic). The store owns
persistence, the services own behaviour.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    standard = "standard"
    vendor = "vendor"


class AccountStatus(str, Enum):
    approved = "approved"
    pending = "pending"
    blocked = "blocked"


class Provider(str, Enum):
    """Closed set of federation providers. `none` marks password accounts."""

    none = "none"
    google = "google"
    linkedin = "linkedin"


FEDERATION_PROVIDERS: tuple[Provider, ...] = (Provider.google, Provider.linkedin)


def default_status(role: Role) -> AccountStatus:
    """Vendors wait for staff approval; standard accounts are usable at once."""
    return AccountStatus.pending if role is Role.vendor else AccountStatus.approved


@dataclass
class Account:
    """A persisted identity.

    hashed_password is None for federation-only accounts. auth_provider
    records how the account was first created and is never rewritten by a
    later login through a different door.

    The reset_* fields form the reset artifact. reset_token_hash and
    reset_expires_at are always written and cleared together.

    id and slug are None until the store inserts the record.
    """

    email: str
    first_name: str
    last_name: str
    role: Role = Role.standard
    status: AccountStatus = AccountStatus.approved
    auth_provider: Provider = Provider.none
    id: int | None = None
    slug: str | None = None
    hashed_password: str | None = None  # None = federation-only
    company_name: str | None = None
    company_email: str | None = None
    industry: str | None = None
    company_size: str | None = None
    accepted_terms: bool = False
    accepted_marketing: bool = False
    access_token: str | None = None
    reset_token_hash: str | None = None
    reset_expires_at: str | None = None  # ISO 8601
    reset_attempts: int = 0
    reset_last_attempt: str | None = None  # ISO 8601
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def is_blocked(self) -> bool:
        return self.status is AccountStatus.blocked

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or "Unknown User"


@dataclass
class AuditEvent:
    """One line of the account audit trail (logins, registrations, resets)."""

    account_id: int
    action: str
    method: str = "email"  # "email", "google", "linkedin"
    id: int | None = None
    created_at: str | None = None


@dataclass
class FederatedProfile:
    """Provider profile normalized across Google and LinkedIn.

    Only the login flow turns this into an Account. The identity-verification
    flow hands the raw fields back to the caller untouched.
    """

    provider: Provider
    subject: str
    email: str
    first_name: str = ""
    last_name: str = ""
    picture: str | None = None
    profile_url: str | None = None
    headline: str | None = None
    industry: str | None = None
    raw: dict = field(default_factory=dict)
