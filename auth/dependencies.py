"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Accounts authenticate with the bearer token handed out by register, login or
a federation callback:

  Authorization: Bearer <token>

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

A blocked account's tokens stop working immediately, even before they expire.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.tokens import decode_access_token


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its Bearer header.

    Returns the Account on success, None on any failure. Never raises.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if not payload or not isinstance(payload.get("user_id"), int):
        return None
    account = request.app.state.account_store.get_by_id(payload["user_id"])
    if account is None or account.is_blocked:
        return None
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account
