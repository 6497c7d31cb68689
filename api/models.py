"""
API request and response models for Xuthority REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The wire format is camelCase (firstName, accessToken, ...). Every model uses
to_camel as its alias generator and accepts snake_case names too, so tests
and internal callers can construct them either way.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from auth.models import Account
from auth.tokens import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = BCRYPT_MAX_BYTES

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = _REQUEST_CONFIG

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    accepted_terms: bool
    accepted_marketing: bool = False

    @field_validator("accepted_terms")
    @classmethod
    def terms_must_be_accepted(cls, value: bool) -> bool:
        if not value:
            raise ValueError("Terms and conditions must be accepted.")
        return value

    @field_validator("password")
    @classmethod
    def password_fits_hash(cls, value: str) -> str:
        return _check_password_bytes(value)


class RegisterVendorRequest(RegisterRequest):
    """Request body for POST /api/v1/auth/register-vendor."""

    company_name: str = Field(min_length=1, max_length=200)
    company_email: EmailStr
    industry: str = Field(min_length=1, max_length=100)
    company_size: str = Field(min_length=1, max_length=50)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = _REQUEST_CONFIG

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = _REQUEST_CONFIG

    email: EmailStr


class VerifyResetTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-reset-token."""

    model_config = _REQUEST_CONFIG

    token: str = Field(min_length=1, max_length=256)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password.

    The confirmation check lives here, so a mismatch is a 422 validation
    error and never reaches the reset controller.
    """

    model_config = _REQUEST_CONFIG

    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_new_password: str

    @field_validator("new_password")
    @classmethod
    def password_fits_hash(cls, value: str) -> str:
        return _check_password_bytes(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("New password and confirmation do not match.")
        return self


class UpdateProfileRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/me."""

    model_config = _REQUEST_CONFIG

    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Sanitized account: no password hash, bearer token or reset artifact."""

    model_config = _RESPONSE_CONFIG

    id: int
    email: str
    slug: Optional[str]
    first_name: str
    last_name: str
    role: str
    status: str
    auth_provider: str
    company_name: Optional[str] = None
    company_email: Optional[str] = None
    industry: Optional[str] = None
    company_size: Optional[str] = None
    accepted_terms: bool
    accepted_marketing: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Build the public view of an Account (Factory Method)."""
        return cls(
            id=account.id,
            email=account.email,
            slug=account.slug,
            first_name=account.first_name,
            last_name=account.last_name,
            role=account.role.value,
            status=account.status.value,
            auth_provider=account.auth_provider.value,
            company_name=account.company_name,
            company_email=account.company_email,
            industry=account.industry,
            company_size=account.company_size,
            accepted_terms=account.accepted_terms,
            accepted_marketing=account.accepted_marketing,
            created_at=account.created_at,
            last_login=account.last_login,
        )


class RegisterResponse(BaseModel):
    """Response for the register endpoints: {user, accessToken}."""

    model_config = _RESPONSE_CONFIG

    user: AccountResponse
    access_token: str


class LoginResponse(BaseModel):
    """Response for password and federation login: {user, token}."""

    model_config = _RESPONSE_CONFIG

    user: AccountResponse
    token: str


class ResetTicketResponse(BaseModel):
    """Response for POST /api/v1/auth/verify-reset-token."""

    model_config = _RESPONSE_CONFIG

    user_id: int
    first_name: str
    last_name: str
    email: str
    expires_at: datetime


class VerifiedIdentityResponse(BaseModel):
    """Raw provider fields from the identity-verification flow."""

    model_config = _RESPONSE_CONFIG

    provider: str
    provider_id: str
    first_name: str
    last_name: str
    email: str
    profile_url: Optional[str] = None
    profile_picture: Optional[str] = None
    headline: Optional[str] = None
    industry: Optional[str] = None


class MessageResponse(BaseModel):
    """Plain acknowledgement."""

    model_config = _RESPONSE_CONFIG

    message: str


class ProviderInfo(BaseModel):
    model_config = _RESPONSE_CONFIG

    name: str
    label: str


class ProvidersResponse(BaseModel):
    """Response for GET /api/v1/auth/providers."""

    model_config = _RESPONSE_CONFIG

    providers: list[ProviderInfo]


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str | dict | list] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
