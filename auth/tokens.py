"""
auth/tokens.py -- Bearer tokens, password hashing, and reset-token hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, email (sub), role, and expiry. decode_access_token() returns
       None on any failure -- the dependency layer turns that into a 401.

  Reuse policy: the last issued token is stored on the Account. A login
       reuses it while more than TOKEN_REFRESH_THRESHOLD_SECONDS of validity
       remain, so a burst of logins does not churn tokens, and rotates it
       once it is close to expiry. inspect_expiry() reads the exp claim
       WITHOUT verifying the signature; it feeds the reuse decision only and
       must never be used to trust a token.

  Passwords: bcrypt with a configurable cost factor (BCRYPT_ROUNDS).
       _DUMMY_HASH lets the login path run bcrypt even for unknown emails.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy. Only
       HMAC-SHA256(SECRET_KEY, raw_token) is stored, so lookup is O(1) and a
       leaked database does not yield usable reset links. bcrypt's slowness
       is unnecessary for values this long.

Layer rule: no imports from api/ or notify/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Account
    from auth.store import AccountStore

logger = logging.getLogger("xuthority.auth")

_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt refuses longer inputs outright. Request models reject such
# passwords with a 422 before they get here.
BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash using the configured cost factor.

    Raises ValueError for passwords longer than BCRYPT_MAX_BYTES in UTF-8.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password is longer than {BCRYPT_MAX_BYTES} bytes")
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    encoded = plain.encode("utf-8")
    if not hashed or len(encoded) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at import so the first unknown-email login is not measurably
# faster than later ones. A fixed low cost keeps test imports fast; the
# comparison cost is dominated by the real hashes anyway.
_DUMMY_HASH: str = bcrypt.hashpw(b"xuthority_timing_dummy", bcrypt.gensalt(rounds=4)).decode("utf-8")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded (timing equalization)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with account identity, role, and expiry.

    Args:
        user_id:        Account primary key.
        email:          Stored as the subject claim.
        role:           "standard" or "vendor".
        expire_seconds: Validity in seconds. 0 (default) uses
                        Settings.token_expire_seconds (7 days).
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


def issue(account: Account) -> str:
    """Mint a fresh bearer token for an account."""
    return create_access_token(account.id, account.email, account.role.value)


def inspect_expiry(token: str | None) -> datetime | None:
    """Return the exp claim of a token without verifying its signature.

    For the reuse decision only. Returns None for missing or malformed tokens.
    """
    if not token:
        return None
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


def should_reuse(existing: str | None, now: datetime | None = None) -> bool:
    """True iff the existing token has more than the refresh threshold left."""
    expiry = inspect_expiry(existing)
    if expiry is None:
        return False
    now = now or datetime.now(timezone.utc)
    threshold = timedelta(seconds=get_settings().token_refresh_threshold_seconds)
    return expiry - now > threshold


@dataclass
class Session:
    """Outcome of establish_session(): the token to hand out and whether it is new."""

    token: str
    rotated: bool


def establish_session(store: AccountStore, account: Account, now: datetime | None = None) -> Session:
    """Reuse the account's stored token if still fresh, otherwise rotate it.

    Rotation persists the new token on the account (and mutates the passed
    dataclass to match). Reuse writes nothing but last_login.
    """
    if should_reuse(account.access_token, now):
        store.touch_last_login(account.id)
        return Session(token=account.access_token, rotated=False)
    token = issue(account)
    store.set_access_token(account.id, token)
    account.access_token = token
    return Session(token=token, rotated=True)


# ---------------------------------------------------------------------------
# Reset token generation and hashing
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look the artifact up by hash directly.
    """
    return hmac.new(
        get_settings().secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()
