"""
auth/errors.py -- Error taxonomy for the identity core.

Every failure the auth services can report is an AuthError subclass with a
stable machine-readable code, a human message and the HTTP status the API
layer should use. The services raise these; api/main.py renders them into
the shared ErrorResponse envelope. Nothing here knows about FastAPI.

Storage errors never leak past auth/store.py: a UNIQUE(email) violation is
translated into DuplicateAccount there.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for every caller-visible identity failure."""

    code = "auth_error"
    status_code = 400
    message = "Authentication failed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.message
        self.details = details or {}
        super().__init__(self.message)


class DuplicateAccount(AuthError):
    code = "duplicate_account"
    status_code = 400
    message = "An account with that email already exists."


class AccountNotFound(AuthError):
    code = "account_not_found"
    status_code = 404
    message = "No account exists for that email."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class BlockedAccount(AuthError):
    """Raised before any token is issued for an account with status=blocked.

    Kept distinct from InvalidCredentials so clients can render the support
    message instead of a generic login failure.
    """

    code = "account_blocked"
    status_code = 403
    message = "Your account has been blocked. Please contact admin for assistance."

    def __init__(self, support_email: str) -> None:
        super().__init__(
            f"{self.message} Support: {support_email}",
            details={"supportEmail": support_email, "reason": "account_blocked"},
        )


class FederationResetNotAllowed(AuthError):
    code = "federation_reset_not_allowed"
    status_code = 400
    message = "Password reset is not available for social login accounts. Please use your login provider."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_or_expired_token"
    status_code = 400
    message = "Password reset token is invalid or has expired."


class SamePasswordNotAllowed(AuthError):
    code = "same_password_not_allowed"
    status_code = 400
    message = "New password must be different from the current password."


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 422
    message = "Request validation failed."


class UpstreamProviderFailure(AuthError):
    code = "upstream_provider_failure"
    status_code = 502
    message = "The identity provider could not complete the login."


class WelcomeEmailFailed(AuthError):
    """The account was created but the onboarding email could not be sent."""

    code = "welcome_email_failed"
    status_code = 502
    message = "Registration could not be completed because the welcome email failed to send."
