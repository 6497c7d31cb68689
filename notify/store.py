"""
notify/store.py -- SQLAlchemy Core persistence for in-app notifications.

Two audiences share one table:
  account -- shown to a single account (welcome, password changed)
  staff   -- operational alerts for the back office (new account, new vendor);
             account_id is NULL and meta carries the subject account

Same Repository + Data Mapper shape as auth/store.py.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'xuthority_notify.db'}"

_metadata = MetaData()

_notifications = Table(
    "notifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, index=True),  # NULL for staff alerts
    Column("audience", String(20), nullable=False),  # "account" | "staff"
    Column("kind", String(50), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("action_url", String(255)),
    Column("meta", Text),  # JSON
    Column("created_at", String(32), nullable=False),
    Column("is_read", Integer, nullable=False, server_default="0"),
)


@dataclass
class Notification:
    audience: str
    kind: str
    title: str
    message: str
    account_id: int | None = None
    action_url: str | None = None
    meta: dict = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None
    is_read: bool = False


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class NotificationStore:
    """Repository for Notification records."""

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def add(self, notification: Notification) -> int:
        """Insert a notification and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _notifications.insert().values(
                    account_id=notification.account_id,
                    audience=notification.audience,
                    kind=notification.kind,
                    title=notification.title,
                    message=notification.message,
                    action_url=notification.action_url,
                    meta=json.dumps(notification.meta) if notification.meta else None,
                    created_at=datetime.now(timezone.utc).isoformat(),
                    is_read=0,
                )
            )
            return result.inserted_primary_key[0]

    def list_for_account(self, account_id: int) -> list[Notification]:
        """Return an account's notifications, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _notifications.select()
                .where((_notifications.c.account_id == account_id) & (_notifications.c.audience == "account"))
                .order_by(_notifications.c.id.desc())
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def list_staff(self) -> list[Notification]:
        """Return staff alerts, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _notifications.select()
                .where(_notifications.c.audience == "staff")
                .order_by(_notifications.c.id.desc())
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        account_id=row.account_id,
        audience=row.audience,
        kind=row.kind,
        title=row.title,
        message=row.message,
        action_url=row.action_url,
        meta=json.loads(row.meta) if row.meta else {},
        created_at=row.created_at,
        is_read=bool(row.is_read),
    )
