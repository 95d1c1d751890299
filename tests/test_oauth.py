"""
tests/test_oauth.py -- Provider registry and profile normalization.

The authlib client is replaced by an AsyncMock whose get() returns canned
responses; no network calls are made.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from auth.oauth import build_oauth_registry, fetch_external_profile, get_enabled_providers
from conftest import make_settings


def _response(status_code: int, payload) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def _github_client(user: dict, emails, emails_status: int = 200) -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(side_effect=[_response(200, user), _response(emails_status, emails)])
    return client


GITHUB_USER = {
    "id": 123,
    "login": "octocat",
    "name": "The Octocat",
    "email": "public@example.com",
    "html_url": "https://github.com/octocat",
    "avatar_url": "https://avatars.example.com/u/123",
}


class TestEnabledProviders:
    def test_none_configured(self) -> None:
        assert get_enabled_providers(make_settings()) == []

    def test_partial_credentials_are_ignored(self) -> None:
        settings = make_settings(github_client_id="id-only", oidc_client_id="x", oidc_client_secret="y")
        assert get_enabled_providers(settings) == []

    def test_all_configured(self) -> None:
        settings = make_settings(
            github_client_id="gh",
            github_client_secret="gh-secret",
            google_client_id="g",
            google_client_secret="g-secret",
            oidc_client_id="o",
            oidc_client_secret="o-secret",
            oidc_discovery_url="https://sso.example.com/.well-known/openid-configuration",
            oidc_display_name="Corp SSO",
        )
        assert get_enabled_providers(settings) == [
            {"name": "github", "label": "GitHub"},
            {"name": "google", "label": "Google"},
            {"name": "oidc", "label": "Corp SSO"},
        ]

    def test_registry_only_registers_configured_providers(self) -> None:
        oauth = build_oauth_registry(make_settings(github_client_id="gh", github_client_secret="gh-secret"))
        assert oauth.create_client("github") is not None
        assert oauth.create_client("google") is None


class TestGithubProfile:
    def test_primary_verified_email_is_trusted(self) -> None:
        emails = [
            {"email": "old@example.com", "primary": False, "verified": True},
            {"email": "main@example.com", "primary": True, "verified": True},
        ]
        client = _github_client(GITHUB_USER, emails)
        profile = asyncio.run(fetch_external_profile(client, "github", {"access_token": "t"}))
        assert profile.external_id == "123"
        assert profile.email == "main@example.com"
        assert profile.email_verified is True
        assert profile.username == "octocat"
        assert profile.display_name == "The Octocat"
        assert profile.profile_url == "https://github.com/octocat"

    def test_unverified_primary_falls_back_to_public_email(self) -> None:
        emails = [{"email": "main@example.com", "primary": True, "verified": False}]
        client = _github_client(GITHUB_USER, emails)
        profile = asyncio.run(fetch_external_profile(client, "github", {"access_token": "t"}))
        assert profile.email == "public@example.com"
        assert profile.email_verified is False

    def test_emails_endpoint_failure_is_tolerated(self) -> None:
        user = {**GITHUB_USER, "email": None}
        client = _github_client(user, {"message": "Forbidden"}, emails_status=403)
        profile = asyncio.run(fetch_external_profile(client, "github", {"access_token": "t"}))
        assert profile.email is None
        assert profile.email_verified is False
        assert profile.username == "octocat"


class TestOidcProfile:
    def test_userinfo_claims(self) -> None:
        token = {
            "access_token": "t",
            "userinfo": {
                "sub": "abc-1",
                "email": "grace@example.com",
                "email_verified": True,
                "name": "Grace Hopper",
                "preferred_username": "grace",
            },
        }
        profile = asyncio.run(fetch_external_profile(MagicMock(), "google", token))
        assert profile.provider == "google"
        assert profile.external_id == "abc-1"
        assert profile.email_verified is True
        assert profile.display_name == "Grace Hopper"

    def test_missing_verification_claim_means_unverified(self) -> None:
        token = {"userinfo": {"sub": "abc-2", "email": "x@example.com"}}
        profile = asyncio.run(fetch_external_profile(MagicMock(), "oidc", token))
        assert profile.email_verified is False

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError):
            asyncio.run(fetch_external_profile(MagicMock(), "myspace", {}))
