"""
auth/oauth.py -- Authlib provider registry and profile normalization.

authlib owns the redirect/consent flow and the code exchange (state is kept
in the Starlette session for CSRF protection). This module turns whatever a
provider returns into one ExternalProfile so OAuthIdentityLinker never sees
provider-specific shapes.

Email trust [H1]:
  ExternalProfile.email_verified is only True when the provider itself vouches
  for the address. GitHub: the /user/emails entry that is both primary and
  verified. Google / OIDC: the email_verified claim. The linker merges into an
  existing account by email only when this flag is True -- an unverified
  address could be a victim's email added by an attacker.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("turnstile.auth.oauth")

# Providers that must supply an email; the account identity depends on it.
EMAIL_REQUIRED_PROVIDERS = frozenset({"google", "oidc"})
SUPPORTED_PROVIDERS = frozenset({"github", "google", "oidc"})


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register every provider whose client ID and secret are configured."""
    oauth = OAuth()

    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            server_metadata_url=settings.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", settings.oidc_display_name)

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if settings.oidc_client_id and settings.oidc_client_secret and settings.oidc_discovery_url:
        providers.append({"name": "oidc", "label": settings.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Profile extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def fetch_external_profile(client, provider: str, token: dict) -> ExternalProfile:
    """Normalize a provider token response into an ExternalProfile.

    Missing fields are left as None; OAuthIdentityLinker decides which ones
    are required and raises InvalidOAuthProfile.

    Raises:
        ValueError: for a provider this module does not know.
    """
    if provider == "github":
        return await _github_profile(client, token)
    if provider in ("google", "oidc"):
        return _oidc_profile(provider, token)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_profile(client, token: dict) -> ExternalProfile:
    """GitHub needs two calls: /user for the stable ID, /user/emails for a verified address."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    user = resp.json()

    email: str | None = None
    verified = False
    emails_resp = await client.get("user/emails", token=token)
    if emails_resp.status_code == 200:
        for entry in emails_resp.json():
            if entry.get("primary") and entry.get("verified"):
                email, verified = entry.get("email"), True
                break
    else:
        logger.warning("GitHub /user/emails returned %d; continuing without email", emails_resp.status_code)
    if email is None and user.get("email"):
        email = user["email"]

    external_id = user.get("id")
    return ExternalProfile(
        provider="github",
        external_id=str(external_id) if external_id is not None else None,
        email=email,
        email_verified=verified,
        display_name=user.get("name"),
        username=user.get("login"),
        profile_url=user.get("html_url"),
        avatar_url=user.get("avatar_url"),
    )


def _oidc_profile(provider: str, token: dict) -> ExternalProfile:
    """Google and generic OIDC carry the profile in the id_token userinfo claims."""
    userinfo = token.get("userinfo") or {}
    return ExternalProfile(
        provider=provider,
        external_id=userinfo.get("sub"),
        email=userinfo.get("email"),
        email_verified=bool(userinfo.get("email_verified", False)),
        display_name=userinfo.get("name"),
        username=userinfo.get("preferred_username"),
        profile_url=userinfo.get("profile"),
        avatar_url=userinfo.get("picture"),
    )
