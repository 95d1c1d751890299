"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential locations are checked in priority order:
  1. JWT cookie ("access_token") -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() raises: HTTP 401 "unauthorized" when no credential is
present, InvalidAccessToken when one is present but expired or invalid (so the
client can tell "refresh now" from "log in").
require_admin() wraps get_current_account() and raises HTTP 403 if not admin.

Every authenticated request that identifies its session (X-Session-Id header,
or the session_id cookie for browsers) also touches that session. The touch
is best-effort and never fails the request.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidAccessToken
from auth.models import Account
from auth.sessions import SESSION_COOKIE, SESSION_HEADER
from auth.tokens import ACCESS_COOKIE


def _extract_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def get_session_id(request: Request) -> str | None:
    """The caller's session id: X-Session-Id header first, then the cookie."""
    return request.headers.get(SESSION_HEADER) or request.cookies.get(SESSION_COOKIE) or None


def _resolve(request: Request, token: str) -> Account:
    """Decode the token and load its active account. Raises InvalidAccessToken."""
    payload = request.app.state.token_issuer.decode_access_token(token)
    account = request.app.state.account_store.get_by_id(payload["account_id"])
    if account is None or not account.is_active:
        raise InvalidAccessToken(expired=False)
    session_id = get_session_id(request)
    if session_id:
        request.app.state.session_registry.touch(account, session_id)
    return account


def try_get_current_account(request: Request) -> Account | None:
    """Return the authenticated Account, or None on any failure. Never raises."""
    token = _extract_token(request)
    if token is None:
        return None
    try:
        return _resolve(request, token)
    except InvalidAccessToken:
        return None


def get_current_account(request: Request) -> Account:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return _resolve(request, token)


def require_admin(request: Request) -> Account:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    account = get_current_account(request)
    if not account.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account
