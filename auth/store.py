"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_audit_event are the mappers. Service and route
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Invariants enforced here rather than in the services:
  UNIQUE(email) -- the duplicate-registration race is settled by the
      database. The loser's IntegrityError is translated into
      DuplicateAccount, never leaked as a raw storage error.
  UNIQUE(slug) -- slug collisions are retried with the next numeric suffix.
  Reset artifact -- hash, expiry and counters are written in one UPDATE and
      cleared in the same UPDATE that replaces the password.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from itertools import islice
from pathlib import Path

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateAccount
from auth.models import Account, AccountStatus, AuditEvent, Provider, Role
from auth.slugs import candidates, slugify

logger = logging.getLogger("xuthority.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'xuthority_auth.db'}"

# Upper bound on slug suffix retries. Exceeding it means something other
# than a slug collision is failing the insert.
_MAX_SLUG_ATTEMPTS = 50

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("slug", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for federation-only accounts
    Column("auth_provider", String(20), nullable=False, server_default="none"),
    Column("role", String(20), nullable=False, server_default="standard"),
    Column("status", String(20), nullable=False, server_default="approved"),
    Column("company_name", String(255)),
    Column("company_email", String(255)),
    Column("industry", String(255)),
    Column("company_size", String(50)),
    Column("accepted_terms", Integer, nullable=False, server_default="0"),
    Column("accepted_marketing", Integer, nullable=False, server_default="0"),
    Column("access_token", Text),
    Column("reset_token_hash", String(64), index=True),  # HMAC-SHA256 hex
    Column("reset_expires_at", String(32)),
    Column("reset_attempts", Integer, nullable=False, server_default="0"),
    Column("reset_last_attempt", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("action", String(50), nullable=False),
    Column("method", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Columns the services may change through update_account(). email, slug and
# role are deliberately absent: email is the immutable key, slug follows
# rename(), role is fixed at creation.
_MUTABLE_FIELDS = frozenset(
    {
        "hashed_password",
        "status",
        "company_name",
        "company_email",
        "industry",
        "company_size",
        "accepted_marketing",
        "access_token",
        "last_login",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    """Emails are case-insensitive keys: compare and store them lower-cased."""
    return email.strip().lower()


def _is_unique_violation(exc: IntegrityError, column: str) -> bool:
    # SQLite: "UNIQUE constraint failed: accounts.email"
    # PostgreSQL: 'duplicate key value violates unique constraint "accounts_email_key"'
    message = str(exc.orig).lower()
    return f"accounts.{column}" in message or f"accounts_{column}_key" in message


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and AuditEvent entities.

    Usage:
        store = AccountStore()
        account = store.create_account(Account(email="a@x.com", first_name="A", last_name="B"))
        found = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account writes
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert a new account and return it as stored (id, slug, timestamps set).

        Raises DuplicateAccount if the email is already taken, including when
        a concurrent request inserted it after the caller's existence check.
        """
        email = normalize_email(account.email)
        now = _now_iso()
        base = slugify(account.first_name, account.last_name)
        for slug in islice(candidates(base), _MAX_SLUG_ATTEMPTS):
            if self._slug_taken(slug):
                continue
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _accounts.insert().values(
                            email=email,
                            slug=slug,
                            first_name=account.first_name,
                            last_name=account.last_name,
                            hashed_password=account.hashed_password,
                            auth_provider=account.auth_provider.value,
                            role=account.role.value,
                            status=account.status.value,
                            company_name=account.company_name,
                            company_email=account.company_email,
                            industry=account.industry,
                            company_size=account.company_size,
                            accepted_terms=1 if account.accepted_terms else 0,
                            accepted_marketing=1 if account.accepted_marketing else 0,
                            access_token=account.access_token,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    account_id = result.inserted_primary_key[0]
            except IntegrityError as exc:
                if _is_unique_violation(exc, "email"):
                    raise DuplicateAccount() from exc
                if _is_unique_violation(exc, "slug"):
                    # Lost a slug race with a concurrent insert; try the next suffix.
                    continue
                raise
            return self.get_by_id(account_id)
        raise RuntimeError(f"Could not allocate a unique slug for base {base!r}")

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an account. Returns False if it does not exist.

        Only keys in _MUTABLE_FIELDS are accepted; unknown keys raise
        ValueError rather than being silently ignored.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown or immutable account fields: {sorted(unknown)!r}")
        if "status" in fields and isinstance(fields["status"], AccountStatus):
            fields["status"] = fields["status"].value
        if "accepted_marketing" in fields:
            fields["accepted_marketing"] = 1 if fields["accepted_marketing"] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def set_access_token(self, account_id: int, token: str) -> None:
        """Persist a freshly issued bearer token and stamp last_login."""
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(access_token=token, last_login=now, updated_at=now)
            )

    def touch_last_login(self, account_id: int) -> None:
        """Stamp last_login on a login that reused its stored token."""
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))

    def rename(self, account_id: int, first_name: str, last_name: str) -> Account | None:
        """Change an account's name and regenerate its slug.

        The current slug is kept when the new name still produces it (or a
        suffixed variant already owned by this account).
        """
        current = self.get_by_id(account_id)
        if current is None:
            return None
        base = slugify(first_name, last_name)
        for slug in islice(candidates(base), _MAX_SLUG_ATTEMPTS):
            if slug != current.slug and self._slug_taken(slug):
                continue
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _accounts.update()
                        .where(_accounts.c.id == account_id)
                        .values(first_name=first_name, last_name=last_name, slug=slug, updated_at=_now_iso())
                    )
            except IntegrityError as exc:
                if _is_unique_violation(exc, "slug"):
                    continue
                raise
            return self.get_by_id(account_id)
        raise RuntimeError(f"Could not allocate a unique slug for base {base!r}")

    # ------------------------------------------------------------------
    # Reset artifact
    # ------------------------------------------------------------------

    def store_reset_artifact(
        self, account_id: int, token_hash: str, expires_at: str, attempts: int, attempted_at: str
    ) -> None:
        """Write a pending reset artifact, replacing any earlier one."""
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    reset_token_hash=token_hash,
                    reset_expires_at=expires_at,
                    reset_attempts=attempts,
                    reset_last_attempt=attempted_at,
                    updated_at=_now_iso(),
                )
            )

    def get_by_reset_hash(self, token_hash: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.reset_token_hash == token_hash)).fetchone()
        return _row_to_account(row) if row is not None else None

    def complete_password_reset(self, account_id: int, token_hash: str, hashed_password: str) -> bool:
        """Replace the password and clear the whole reset artifact in one UPDATE.

        The WHERE clause includes the token hash, so of two concurrent
        consumers of the same token only the first matches a row. Returns
        False when the artifact was already consumed or replaced.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.reset_token_hash == token_hash))
                .values(
                    hashed_password=hashed_password,
                    reset_token_hash=None,
                    reset_expires_at=None,
                    reset_attempts=0,
                    reset_last_attempt=None,
                    updated_at=_now_iso(),
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_slug(self, slug: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.slug == slug)).fetchone()
        return _row_to_account(row) if row is not None else None

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Account store health check failed")
            return False
        return True

    def _slug_taken(self, slug: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().with_only_columns(_accounts.c.id).where(_accounts.c.slug == slug))
            return row.fetchone() is not None

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_event(self, account_id: int, action: str, method: str = "email") -> None:
        """Append an audit event. Best-effort: failures are logged, not raised."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_events.insert().values(
                        account_id=account_id, action=action, method=method, created_at=_now_iso()
                    )
                )
        except Exception:
            logger.exception("Failed to record audit event %s for account %s", action, account_id)

    def list_events(self, account_id: int) -> list[AuditEvent]:
        """Return an account's audit events, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_events.select().where(_audit_events.c.account_id == account_id).order_by(_audit_events.c.id)
            ).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        slug=row.slug,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        auth_provider=Provider(row.auth_provider),
        role=Role(row.role),
        status=AccountStatus(row.status),
        company_name=row.company_name,
        company_email=row.company_email,
        industry=row.industry,
        company_size=row.company_size,
        accepted_terms=bool(row.accepted_terms),
        accepted_marketing=bool(row.accepted_marketing),
        access_token=row.access_token,
        reset_token_hash=row.reset_token_hash,
        reset_expires_at=row.reset_expires_at,
        reset_attempts=row.reset_attempts or 0,
        reset_last_attempt=row.reset_last_attempt,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        account_id=row.account_id,
        action=row.action,
        method=row.method,
        created_at=row.created_at,
    )
