"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the identity service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected. JWT signing and the
       reset-token HMAC both depend on key entropy.

  [M7] Without DEBUG=true a missing SECRET_KEY is a hard startup failure.
       A random key in production would invalidate every bearer token and
       every pending reset link on restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or notify/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("xuthority.config")

_SEVEN_DAYS = 7 * 24 * 60 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field has a default so Settings() can be built in tests without a
    real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    app_name: str = "Xuthority"
    support_email: str = "support@xuthority.com"
    # Base URL of the web client. Used for reset links and for the
    # redirect-with-error on federation failures.
    frontend_url: str = "http://localhost:3000"
    database_url: str = ""

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------

    token_expire_seconds: int = _SEVEN_DAYS
    # A stored token with less than this much validity left is rotated on
    # the next login instead of being reused.
    token_refresh_threshold_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Passwords and resets
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    reset_token_ttl_seconds: int = 60 * 60
    reset_max_attempts: int = 5
    reset_attempt_window_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Federation
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    linkedin_client_id: str = ""
    linkedin_client_secret: str = ""
    # Lifetime of the role captured before the provider redirect.
    oauth_intent_ttl_seconds: int = 600
    session_max_age: int = 3600

    # ------------------------------------------------------------------
    # Email (empty host = log-only delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@xuthority.com"
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "10/minute"
    reset_rate_limit: str = "5/minute"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens and reset links will not survive a restart.

        Production mode: refuse to start without SECRET_KEY.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.token_refresh_threshold_seconds >= self.token_expire_seconds:
            raise ValueError("TOKEN_REFRESH_THRESHOLD_SECONDS must be shorter than TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
