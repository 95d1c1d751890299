"""
api/routes/v1/sessions.py -- The caller's own device sessions.

Routes:
  GET    /api/v1/auth/sessions               -- active sessions, current one flagged
  GET    /api/v1/auth/sessions/stats         -- counts by state and device class
  DELETE /api/v1/auth/sessions/{session_id}  -- revoke one session (204)
  DELETE /api/v1/auth/sessions               -- revoke all; also revokes the refresh token

All routes require auth and only ever see the caller's own sessions: every
registry call is scoped by the authenticated Account, never by a path id alone.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import RevokeAllResponse, SessionResponse, SessionStatsResponse
from auth.dependencies import get_current_account, get_session_id
from auth.models import Account
from auth.sessions import SESSION_COOKIE, SessionRegistry
from auth.tokens import clear_auth_cookies

router = APIRouter()


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current: Account = Depends(get_current_account)) -> list[SessionResponse]:
    """Sessions active within the inactivity window, oldest first."""
    registry: SessionRegistry = request.app.state.session_registry
    current_id = get_session_id(request)
    return [SessionResponse.from_session(s, current_id) for s in registry.list_active(current)]


@router.get("/auth/sessions/stats", response_model=SessionStatsResponse)
def session_stats(request: Request, current: Account = Depends(get_current_account)) -> SessionStatsResponse:
    registry: SessionRegistry = request.app.state.session_registry
    return SessionStatsResponse.from_stats(registry.stats(current))


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    current: Account = Depends(get_current_account),
) -> Response:
    """Revoke one session. 404 if the caller has no session with that id."""
    registry: SessionRegistry = request.app.state.session_registry
    registry.remove(current, session_id)
    return Response(status_code=204)


@router.delete("/auth/sessions", response_model=RevokeAllResponse)
def revoke_all_sessions(request: Request, current: Account = Depends(get_current_account)) -> JSONResponse:
    """Log out everywhere: drop every session and invalidate the refresh token."""
    registry: SessionRegistry = request.app.state.session_registry
    removed = registry.remove_all(current)
    request.app.state.token_issuer.revoke(current.id)
    resp = JSONResponse(content=RevokeAllResponse(removed=removed).model_dump())
    clear_auth_cookies(resp)
    resp.delete_cookie(SESSION_COOKIE)
    return resp
