"""
notify/dispatcher.py -- The side-effect boundary used by the auth services.

The auth core decides *whether* to notify; this module owns *how*. The
services see three awaitables:

  send_transactional_email(kind, recipient, data)  -- SMTP via notify.mailer
  create_in_app_notification(kind, account_id, data) -- per-account inbox
  alert_staff(kind, data)                           -- back-office alert

Each raises DispatchError on failure and nothing else. Whether that failure
fails the request is the caller's policy, not this module's: the welcome
email on password registration is load-bearing, everything else is
best-effort.

Tests replace Dispatcher with a recording fake exposing the same methods.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging

from core.config import Settings
from notify.mailer import Mailer, MailerError
from notify.store import Notification, NotificationStore

logger = logging.getLogger("xuthority.notify")


class DispatchError(Exception):
    """A notification or email could not be delivered."""

    def __init__(self, channel: str, kind: str, cause: Exception | None = None) -> None:
        self.channel = channel
        self.kind = kind
        super().__init__(f"{channel} dispatch of {kind!r} failed" + (f": {cause}" if cause else ""))


# kind -> role -> (title, message, action_url). "*" applies to every role.
_ACCOUNT_NOTIFICATIONS: dict[str, dict[str, tuple[str, str, str]]] = {
    "welcome": {
        "standard": (
            "Welcome to {app_name}!",
            "Welcome to {app_name}! Start exploring and add your reviews today.",
            "/",
        ),
        "vendor": (
            "Welcome to {app_name}!",
            "Welcome to {app_name}! Start exploring and add your products today.",
            "/dashboard",
        ),
    },
    "password_changed": {
        "*": ("Password Changed", "Your password has been changed successfully.", "/profile"),
    },
}

_STAFF_ALERTS: dict[str, tuple[str, str, str]] = {
    "new_account": (
        "New User Joined",
        "A new user {name} signed up on the platform as {role_label}. View their profile in the user management panel.",
        "users",
    ),
    "new_vendor": (
        "New Vendor Application",
        "A new user {name} signed up on the platform as {role_label}. View their profile in the user management panel.",
        "vendors",
    ),
}


class Dispatcher:
    """Production dispatcher backed by Mailer and NotificationStore."""

    def __init__(self, settings: Settings, mailer: Mailer, notifications: NotificationStore) -> None:
        self._settings = settings
        self._mailer = mailer
        self._notifications = notifications

    async def send_transactional_email(self, kind: str, recipient: str, data: dict) -> None:
        try:
            await self._mailer.send(kind, recipient, data)
        except MailerError as exc:
            raise DispatchError("email", kind, exc) from exc

    async def create_in_app_notification(self, kind: str, account_id: int, data: dict) -> None:
        variants = _ACCOUNT_NOTIFICATIONS.get(kind)
        if variants is None:
            raise DispatchError("in_app", kind, ValueError("unknown notification kind"))
        role = data.get("role", "standard")
        title, message, action_url = variants.get(role) or variants.get("*") or variants["standard"]
        notification = Notification(
            audience="account",
            account_id=account_id,
            kind=kind,
            title=title.format(app_name=self._settings.app_name),
            message=message.format(app_name=self._settings.app_name),
            action_url=action_url,
        )
        await self._store(notification)

    async def alert_staff(self, kind: str, data: dict) -> None:
        template = _STAFF_ALERTS.get(kind)
        if template is None:
            raise DispatchError("staff", kind, ValueError("unknown alert kind"))
        title, message, action_url = template
        role = data.get("role", "standard")
        notification = Notification(
            audience="staff",
            kind=kind,
            title=title,
            message=message.format(name=data.get("name") or "Unknown User", role_label=role.capitalize()),
            action_url=action_url,
            meta=data,
        )
        await self._store(notification)

    async def _store(self, notification: Notification) -> None:
        try:
            await asyncio.to_thread(self._notifications.add, notification)
        except Exception as exc:
            raise DispatchError(notification.audience, notification.kind, exc) from exc
        logger.debug("Stored %s notification %r", notification.audience, notification.kind)
