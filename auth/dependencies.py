"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login route.
  2. Authorization: Bearer <token> header -- API clients.

A token is accepted only if its embedded security stamp still matches the
user's stored stamp. Logout, password changes and account deletion rotate the
stamp, so tokens issued before them stop working immediately.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_owner() wraps get_current_user() and raises HTTP 403 for non-owners.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from auth.models import User
from auth.store import CredentialStore
from auth.tokens import decode_access_token


def _request_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_user(request: Request) -> User | None:
    """Resolve the session user, or None. Never raises."""
    token = _request_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    store: CredentialStore = request.app.state.credential_store
    user = store.get_by_id(payload["user_id"])
    if user is None or not user.security_stamp:
        return None
    if not hmac.compare_digest(str(payload["stamp"]), user.security_stamp):
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_owner(request: Request) -> User:
    """Require the Owner role. Raises HTTP 401 if unauthenticated, HTTP 403 otherwise."""
    user = get_current_user(request)
    if not request.app.state.roles.is_admin(user):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Owner access required."},
        )
    return user
