"""
tests/test_linking.py -- OAuthIdentityLinker resolution: match, link, create.

resolve() is a coroutine; each test drives it with asyncio.run().
"""

from __future__ import annotations

import asyncio

import pytest

from auth.credentials import CredentialAuthenticator
from auth.errors import AccountExists, InvalidCredentials, InvalidOAuthProfile
from auth.linking import OAuthIdentityLinker
from auth.models import ExternalProfile
from auth.store import AccountStore


def _github(external_id="123", email="a@x.com", verified=True, username="octo", name=None) -> ExternalProfile:
    return ExternalProfile(
        provider="github",
        external_id=external_id,
        email=email,
        email_verified=verified,
        display_name=name,
        username=username,
        profile_url=f"https://github.com/{username}" if username else None,
    )


def _google(external_id="g-1", email="g@x.com", verified=True, name=None) -> ExternalProfile:
    return ExternalProfile(provider="google", external_id=external_id, email=email, email_verified=verified, display_name=name)


@pytest.fixture
def linker(store: AccountStore) -> OAuthIdentityLinker:
    return OAuthIdentityLinker(store)


def _resolve(linker: OAuthIdentityLinker, provider: str, profile: ExternalProfile, access="at", refresh="rt"):
    return asyncio.run(linker.resolve(provider, profile, access, refresh))


class TestLinkToExistingAccount:
    def test_verified_email_links_instead_of_creating(
        self, linker: OAuthIdentityLinker, authenticator: CredentialAuthenticator, store: AccountStore
    ) -> None:
        existing = authenticator.register("a@x.com", "password123")
        account = _resolve(linker, "github", _github())
        assert account.id == existing.id
        assert store.count_accounts() == 1
        assert account.linked_providers == ["github"]
        assert account.external_identities["github"].external_id == "123"
        assert account.is_email_verified
        assert account.has_usable_password  # the password keeps working

    def test_unverified_email_is_not_trusted(
        self, linker: OAuthIdentityLinker, authenticator: CredentialAuthenticator, store: AccountStore
    ) -> None:
        authenticator.register("a@x.com", "password123")
        with pytest.raises(AccountExists):
            _resolve(linker, "github", _github(verified=False))
        assert store.get_by_external_identity("github", "123") is None


class TestCreateAccount:
    def test_new_github_account_without_email_uses_noreply(self, linker: OAuthIdentityLinker) -> None:
        account = _resolve(linker, "github", _github(email=None, verified=False))
        assert account.email == "octo@users.noreply.github.com"
        assert account.display_name == "octo"
        assert not account.has_usable_password
        assert account.hashed_password  # random, never None
        assert not account.is_email_verified
        assert account.last_oauth_provider == "github"
        assert account.login_count == 1

    def test_new_google_account_defaults(self, linker: OAuthIdentityLinker) -> None:
        account = _resolve(linker, "google", _google())
        assert account.email == "g@x.com"
        assert account.display_name == "Google User"
        assert account.is_email_verified
        assert account.external_identities["google"].access_token == "at"
        assert account.external_identities["google"].refresh_token == "rt"

    def test_profile_name_wins_over_defaults(self, linker: OAuthIdentityLinker) -> None:
        account = _resolve(linker, "google", _google(name="Grace Hopper"))
        assert account.display_name == "Grace Hopper"


class TestIdempotency:
    def test_same_identity_resolves_to_same_account(self, linker: OAuthIdentityLinker, store: AccountStore) -> None:
        first = _resolve(linker, "github", _github(), access="at1")
        second = _resolve(linker, "github", _github(), access="at2", refresh=None)
        assert first.id == second.id
        assert store.count_accounts() == 1
        assert second.login_count == 2
        identity = second.external_identities["github"]
        assert identity.access_token == "at2"
        assert identity.refresh_token == "rt"

    def test_concurrent_link_is_resolved_by_reread(
        self,
        linker: OAuthIdentityLinker,
        authenticator: CredentialAuthenticator,
        store: AccountStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """The loser of a link race hits the UNIQUE constraint and returns the winner's account."""
        authenticator.register("a@x.com", "password123")
        before_link = store.get_by_email("a@x.com")
        winner = _resolve(linker, "github", _github())

        # Replay the loser's view: both lookups ran before the winner committed.
        real_lookup = store.get_by_external_identity
        calls = {"n": 0}

        def stale_first_lookup(provider, external_id):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_lookup(provider, external_id)

        monkeypatch.setattr(store, "get_by_external_identity", stale_first_lookup)
        monkeypatch.setattr(store, "get_by_email", lambda email: before_link)
        loser = _resolve(linker, "github", _github())
        assert loser.id == winner.id
        assert calls["n"] == 2
        assert store.count_accounts() == 1


class TestProfileValidation:
    @pytest.mark.parametrize(
        "provider, profile, missing",
        [
            ("github", _github(external_id=None), "id"),
            ("github", _github(username=None), "username"),
            ("google", _google(email=None), "email"),
            ("oidc", ExternalProfile(provider="oidc", external_id="sub-1"), "email"),
        ],
    )
    def test_missing_required_field(self, linker: OAuthIdentityLinker, provider, profile, missing) -> None:
        with pytest.raises(InvalidOAuthProfile) as exc_info:
            _resolve(linker, provider, profile)
        assert exc_info.value.missing == missing
        assert exc_info.value.status_code == 400

    def test_unknown_provider(self, linker: OAuthIdentityLinker) -> None:
        with pytest.raises(InvalidOAuthProfile) as exc_info:
            _resolve(linker, "myspace", ExternalProfile(provider="myspace", external_id="1", email="m@x.com"))
        assert "Unsupported" in exc_info.value.message


class TestInactiveAccounts:
    def test_deactivated_account_is_refused(self, linker: OAuthIdentityLinker, store: AccountStore) -> None:
        account = _resolve(linker, "github", _github())
        store.update_account(account.id, is_active=False)
        with pytest.raises(InvalidCredentials):
            _resolve(linker, "github", _github())
