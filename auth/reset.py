"""
auth/reset.py -- Password reset: request -> verify -> consume.

Per account the reset artifact moves through

  absent --request--> pending --consume--> absent
                         |
                         +--(expiry passes)--> expired (lazy: the artifact
                                               stays until the next request
                                               overwrites it)

Only HMAC-SHA256(SECRET_KEY, token) is stored. The plaintext token exists in
this process exactly once, inside the reset email payload. It is never
logged, returned, or persisted.

Enumeration: request_reset() answers identically for unknown, blocked and
rate-limited emails. The one deliberate exception is a federation-only
account, which is told to sign in with its provider instead.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.errors import FederationResetNotAllowed, InvalidOrExpiredToken, SamePasswordNotAllowed
from auth.models import Account
from auth.side_effects import SideEffects, best_effort
from auth.store import AccountStore
from auth.tokens import generate_reset_token, hash_password, hash_reset_token, verify_password
from core.config import get_settings

logger = logging.getLogger("xuthority.auth.reset")


@dataclass
class ResetTicket:
    """What verify_reset() reveals about a pending reset."""

    account_id: int
    first_name: str
    last_name: str
    email: str
    expires_at: datetime


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ResetFlowController:
    """Issues, validates and consumes password-reset artifacts."""

    def __init__(self, store: AccountStore, side_effects: SideEffects) -> None:
        self._store = store
        self._side_effects = side_effects

    async def request_reset(self, email: str, now: datetime | None = None) -> None:
        """Start a reset for `email` if one is allowed.

        Returns normally for unknown emails, blocked accounts and requests
        over the attempt limit. Raises FederationResetNotAllowed for accounts
        without a password.
        """
        now = now or datetime.now(timezone.utc)
        account = self._store.get_by_email(email)
        if account is None:
            logger.debug("Reset requested for unknown email")
            return
        if account.hashed_password is None:
            raise FederationResetNotAllowed()
        if account.is_blocked:
            logger.info("Reset request ignored for blocked account %s", account.id)
            return

        cfg = get_settings()
        attempts = self._attempts_in_window(account, now, cfg.reset_attempt_window_seconds)
        if attempts >= cfg.reset_max_attempts:
            logger.warning("Reset request dropped for account %s: %d attempts in window", account.id, attempts)
            return

        token = generate_reset_token()
        expires_at = now + timedelta(seconds=cfg.reset_token_ttl_seconds)
        self._store.store_reset_artifact(
            account.id,
            hash_reset_token(token),
            expires_at.isoformat(),
            attempts + 1,
            now.isoformat(),
        )
        self._store.record_event(account.id, "PASSWORD_RESET_REQUESTED")
        logger.info("Reset token issued for account %s", account.id)

        await best_effort(
            self._side_effects.send_transactional_email(
                "password_reset",
                account.email,
                {
                    "first_name": account.first_name,
                    "token": token,
                    "expires_in_minutes": cfg.reset_token_ttl_seconds // 60,
                },
            ),
            "password_reset email",
            account.id,
        )

    def verify_reset(self, token: str, now: datetime | None = None) -> ResetTicket:
        """Read-only check of a reset token. Raises InvalidOrExpiredToken."""
        account, expires_at = self._pending(token, now)
        return ResetTicket(
            account_id=account.id,
            first_name=account.first_name,
            last_name=account.last_name,
            email=account.email,
            expires_at=expires_at,
        )

    async def consume_reset(self, token: str, new_password: str, now: datetime | None = None) -> Account:
        """Replace the password and retire the token.

        Raises:
            InvalidOrExpiredToken: unknown, expired, or already consumed token.
            SamePasswordNotAllowed: new_password equals the current password.
        """
        account, _ = self._pending(token, now)
        if verify_password(new_password, account.hashed_password):
            raise SamePasswordNotAllowed()

        if not self._store.complete_password_reset(account.id, hash_reset_token(token), hash_password(new_password)):
            # Another request consumed (or a new request replaced) the token
            # between the lookup and the update.
            raise InvalidOrExpiredToken()
        self._store.record_event(account.id, "PASSWORD_RESET")
        logger.info("Password reset completed for account %s", account.id)

        await best_effort(
            self._side_effects.send_transactional_email(
                "password_changed", account.email, {"first_name": account.first_name}
            ),
            "password_changed email",
            account.id,
        )
        await best_effort(
            self._side_effects.create_in_app_notification(
                "password_changed", account.id, {"role": account.role.value}
            ),
            "password_changed notification",
            account.id,
        )
        return self._store.get_by_id(account.id) or account

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _pending(self, token: str, now: datetime | None) -> tuple[Account, datetime]:
        now = now or datetime.now(timezone.utc)
        if not token:
            raise InvalidOrExpiredToken()
        account = self._store.get_by_reset_hash(hash_reset_token(token))
        if account is None:
            raise InvalidOrExpiredToken()
        expires_at = _parse_ts(account.reset_expires_at)
        if expires_at is None or expires_at <= now:
            raise InvalidOrExpiredToken()
        return account, expires_at

    @staticmethod
    def _attempts_in_window(account: Account, now: datetime, window_seconds: int) -> int:
        last = _parse_ts(account.reset_last_attempt)
        if last is None or now - last > timedelta(seconds=window_seconds):
            return 0
        return account.reset_attempts
