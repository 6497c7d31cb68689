"""
auth/side_effects.py -- Glue between the auth services and the dispatcher.

The services depend on the SideEffects protocol, not on notify.Dispatcher,
so tests can inject a recording fake. best_effort() wraps the dispatch calls
whose failure must be logged and absorbed; load-bearing calls await the
dispatcher directly and let DispatchError propagate to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import Protocol

from auth.models import Account
from notify.dispatcher import DispatchError

logger = logging.getLogger("xuthority.auth")


class SideEffects(Protocol):
    async def send_transactional_email(self, kind: str, recipient: str, data: dict) -> None: ...

    async def create_in_app_notification(self, kind: str, account_id: int, data: dict) -> None: ...

    async def alert_staff(self, kind: str, data: dict) -> None: ...


async def best_effort(call: Awaitable[None], what: str, account_id: int | None = None) -> bool:
    """Await a dispatch call, logging and absorbing DispatchError.

    Returns True if the call succeeded. Only DispatchError is absorbed; a
    programming error inside the dispatcher still surfaces.
    """
    try:
        await call
    except DispatchError:
        logger.warning("Best-effort dispatch %s failed for account %s", what, account_id, exc_info=True)
        return False
    return True


def staff_alert_data(account: Account) -> dict:
    """Payload for new-account staff alerts."""
    return {
        "account_id": account.id,
        "role": account.role.value,
        "email": account.email,
        "name": account.display_name,
    }
