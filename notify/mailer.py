"""
notify/mailer.py -- Transactional email rendering and SMTP delivery.

Templates live in notify/templates/ and are rendered with Jinja2 (autoescape
on for .html). Each email kind has a subject line and an HTML template; the
plain-text alternative is rendered from the same context.

Delivery uses smtplib in a worker thread (asyncio.to_thread) so the event
loop is never blocked on SMTP. When SMTP_HOST is empty the mailer runs in
log-only mode: it records recipient and subject and returns without sending.
Email bodies are never logged -- the password_reset body carries a live
reset link.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings

logger = logging.getLogger("xuthority.notify.mailer")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

# kind -> subject format string. {app_name} is filled from Settings.
_SUBJECTS: dict[str, str] = {
    "welcome": "Welcome to {app_name}!",
    "password_reset": "Password Reset Request - {app_name}",
    "password_changed": "Password Changed - {app_name}",
}


class MailerError(Exception):
    """Raised when a message cannot be rendered or delivered."""


class Mailer:
    """Render and deliver transactional emails."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    @property
    def log_only(self) -> bool:
        return not self._settings.smtp_host

    def render(self, kind: str, data: dict) -> EmailMessage:
        """Build the EmailMessage for `kind` (recipient headers not yet set)."""
        if kind not in _SUBJECTS:
            raise MailerError(f"Unknown email kind: {kind!r}")
        context = {
            "app_name": self._settings.app_name,
            "support_email": self._settings.support_email,
            "frontend_url": self._settings.frontend_url.rstrip("/"),
            **data,
        }
        msg = EmailMessage()
        msg["Subject"] = _SUBJECTS[kind].format(app_name=self._settings.app_name)
        msg["From"] = self._settings.smtp_from
        msg.set_content(self._env.get_template(f"{kind}.txt").render(**context))
        msg.add_alternative(self._env.get_template(f"{kind}.html").render(**context), subtype="html")
        return msg

    async def send(self, kind: str, recipient: str, data: dict) -> None:
        """Render and deliver one email. Raises MailerError on any failure."""
        msg = self.render(kind, data)
        msg["To"] = recipient
        if self.log_only:
            logger.info("SMTP not configured; email %r to %s not delivered (subject=%r)", kind, recipient, msg["Subject"])
            return
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"SMTP delivery of {kind!r} failed: {exc}") from exc
        logger.info("Email %r sent to %s", kind, recipient)

    def _deliver(self, msg: EmailMessage) -> None:
        s = self._settings
        with smtplib.SMTP(host=s.smtp_host, port=s.smtp_port, timeout=30) as conn:
            if s.smtp_use_tls:
                conn.starttls()
            if s.smtp_username:
                conn.login(s.smtp_username, s.smtp_password)
            conn.send_message(msg)
