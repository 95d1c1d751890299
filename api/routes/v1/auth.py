"""
api/routes/v1/auth.py -- Signup, login, token refresh, logout and provider login.

Routes:
  POST /api/v1/auth/signup                     -- create a password account; logs in
  POST /api/v1/auth/login                      -- password login; sets cookies
  POST /api/v1/auth/refresh                    -- rotate the refresh token
  POST /api/v1/auth/logout                     -- revoke refresh token, end session
  GET  /api/v1/auth/me                         -- current account (requires auth)
  GET  /api/v1/auth/providers                  -- enabled identity providers (public)
  GET  /api/v1/auth/oauth/{provider}/login     -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback  -- provider redirect target
  GET  /api/v1/auth/oauth/status               -- provider link status (public)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] CredentialAuthenticator.authenticate() equalizes timing -- never inline
       a lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Failures are raised as AuthError subclasses and rendered by the single
  handler in api/main.py; routes do not build error bodies themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    OAuthStatusResponse,
    RefreshRequest,
    SignupRequest,
)
from auth.credentials import CredentialAuthenticator
from auth.dependencies import get_current_account, get_session_id, try_get_current_account
from auth.errors import AuthError, InvalidOAuthProfile, InvalidRefreshToken, SessionNotFound
from auth.models import Account, TokenPair
from auth.oauth import fetch_external_profile, get_enabled_providers
from auth.sessions import SESSION_COOKIE, SessionRegistry, is_valid_session_id, new_session_id
from auth.tokens import REFRESH_COOKIE, TokenIssuer, clear_auth_cookies, set_auth_cookies
from core.config import get_settings

logger = logging.getLogger("turnstile.api.auth")

# Auth policy:
# - POST /api/v1/auth/signup, /login, /refresh:   public
# - POST /api/v1/auth/logout:                     public -- clearing cookies needs no prior auth
# - GET  /api/v1/auth/providers, /oauth/*:        public
# - GET  /api/v1/auth/me:                         requires auth (get_current_account)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _start_session(request: Request, account: Account) -> tuple[str, TokenPair]:
    """Register the device session for a fresh login and mint a token pair.

    A well-formed session id presented by the client is reused, so logging in
    again from the same browser refreshes its session instead of adding one.
    """
    registry: SessionRegistry = request.app.state.session_registry
    issuer: TokenIssuer = request.app.state.token_issuer

    session_id = get_session_id(request)
    if not is_valid_session_id(session_id):
        session_id = new_session_id()
    device_id = (request.headers.get("X-Device-Id") or "")[:255] or None
    registry.add_or_update(
        account,
        session_id,
        device_id,
        request.headers.get("User-Agent"),
        _client_ip(request),
        device_label=request.headers.get("X-Device-Name"),
    )
    return session_id, issuer.issue(account)


def _set_session_cookie(response, session_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_inactivity_days * 24 * 60 * 60,
    )


def _token_response(pair: TokenPair, session_id: Optional[str], account: Optional[Account], status_code: int = 200):
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.access_expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            session_id=session_id,
            account=AccountResponse.from_account(account) if account is not None else None,
        ).model_dump(mode="json"),
    )
    set_auth_cookies(resp, pair, get_settings())
    if session_id:
        _set_session_cookie(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password flows
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=LoginResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a password account and log it in. 409 if the email is taken."""
    if not get_settings().self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    authenticator: CredentialAuthenticator = request.app.state.authenticator
    account = authenticator.register(body.email, body.password, display_name=body.display_name or "")
    session_id, pair = _start_session(request, account)
    return _token_response(pair, session_id, account, status_code=201)


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set token and session cookies.

    Wrong email and wrong password produce the same 401. A locked account gets
    423 with the minutes remaining, even for the correct password.
    """
    authenticator: CredentialAuthenticator = request.app.state.authenticator
    account = authenticator.authenticate(body.email, body.password, _client_ip(request))
    session_id, pair = _start_session(request, account)
    return _token_response(pair, session_id, account)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token (body or cookie) for a new pair.

    Reusing a token that was already rotated fails 401 with
    detail.reauthenticate=true; the handler also clears the stale cookies.
    """
    issuer: TokenIssuer = request.app.state.token_issuer
    raw = (body.refresh_token if body is not None else None) or request.cookies.get(REFRESH_COOKIE)
    pair = issuer.rotate(raw)
    return _token_response(pair, None, None)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the refresh token, drop the calling session and clear cookies.

    The caller is identified by the access token, or by the current refresh
    token (body or cookie) once the access token has expired. A refresh token
    that is no longer current identifies nobody.
    """
    account = try_get_current_account(request)
    if account is None:
        raw = (body.refresh_token if body is not None else None) or request.cookies.get(REFRESH_COOKIE)
        if raw:
            try:
                account = request.app.state.token_issuer.verify_refresh_token(raw)
            except InvalidRefreshToken:
                account = None
    if account is not None:
        request.app.state.token_issuer.revoke(account.id)
        session_id = get_session_id(request)
        if session_id:
            try:
                request.app.state.session_registry.remove(account, session_id)
            except SessionNotFound:
                pass  # already reaped or revoked elsewhere
        logger.info("Logout for account %s", account.id)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=AccountResponse)
async def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the currently authenticated account."""
    return AccountResponse.from_account(current)


# ---------------------------------------------------------------------------
# Identity providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured identity providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Empty when no provider credentials are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


@router.get("/auth/oauth/status", response_model=OAuthStatusResponse)
def oauth_status(request: Request) -> OAuthStatusResponse:
    """Which providers are available, and which the caller has linked."""
    providers = [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]
    account = try_get_current_account(request)
    if account is None:
        return OAuthStatusResponse(authenticated=False, providers=providers)
    return OAuthStatusResponse(
        authenticated=True,
        providers=providers,
        linked_providers=list(account.linked_providers),
        last_oauth_provider=account.last_oauth_provider,
    )


def _require_enabled(provider: str) -> None:
    """Reject provider names that are not configured.

    Prevents a crafted path segment from reaching authlib's client lookup.
    """
    enabled = {p["name"] for p in get_enabled_providers(get_settings())}
    if provider not in enabled:
        raise InvalidOAuthProfile(provider)


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page."""
    _require_enabled(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the provider login, issue tokens as cookies and redirect to the frontend.

    Flow:
      1. Exchange the authorization code (authlib verifies state against the session).
      2. Normalize the provider response into an ExternalProfile.
      3. OAuthIdentityLinker resolves it to one Account (match, link or create).
      4. Register the device session, set cookies, redirect to FRONTEND_URL.
    Any failure redirects to FRONTEND_URL?error=<code> instead of rendering JSON,
    since the browser is mid-navigation.
    """
    _require_enabled(provider)
    frontend = get_settings().frontend_url
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse(_with_error(frontend, "oauth_failed"), status_code=302)

    expires_at = token.get("expires_at")
    try:
        profile = await fetch_external_profile(client, provider, token)
        account = await request.app.state.identity_linker.resolve(
            provider,
            profile,
            token.get("access_token"),
            token.get("refresh_token"),
            datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )
    except AuthError as exc:
        logger.warning("Provider login via %s rejected: %s", provider, exc.code)
        return RedirectResponse(_with_error(frontend, exc.code), status_code=302)

    session_id, pair = _start_session(request, account)
    resp = RedirectResponse(frontend, status_code=302)
    set_auth_cookies(resp, pair, get_settings())
    _set_session_cookie(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _with_error(url: str, code: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}error={code}"
