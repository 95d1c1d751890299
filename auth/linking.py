"""
auth/linking.py -- Resolve a provider login to exactly one Account.

Resolution order:
  1. (provider, external_id) already linked   -> that account
  2. verified email matches an existing account -> link provider into it
  3. otherwise                                  -> create a provider-only account

Step 2 only fires when the provider vouches for the email [H1]. An unverified
email that collides with an existing account is refused with AccountExists;
the owner can sign in with their password instead.

Idempotency: the store enforces UNIQUE(provider, external_id). When two
callbacks for the same identity race, the loser's insert fails with
IntegrityError and it re-reads the winner's account.

The store is synchronous; resolve() runs the whole resolution in a worker
thread so the event loop is never blocked on SQLite.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.credentials import generate_unusable_password_hash
from auth.errors import AccountExists, InvalidCredentials, InvalidOAuthProfile
from auth.models import Account, ExternalIdentity, ExternalProfile
from auth.oauth import EMAIL_REQUIRED_PROVIDERS, SUPPORTED_PROVIDERS

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("turnstile.auth.linking")

_DEFAULT_DISPLAY_NAMES = {"google": "Google User", "oidc": "SSO User"}


class OAuthIdentityLinker:
    """Map an ExternalProfile onto an Account, creating or linking as needed.

    Usage:
        linker = OAuthIdentityLinker(store)
        account = await linker.resolve("github", profile, access_token, refresh_token)
    """

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    async def resolve(
        self,
        provider: str,
        profile: ExternalProfile,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None = None,
    ) -> Account:
        """Return the Account for this provider identity.

        Raises:
            InvalidOAuthProfile: unknown provider or a required field is missing.
            InvalidCredentials: the resolved account is deactivated.
            AccountExists: an unverified email collides with an existing account.
        """
        self._validate(provider, profile)
        return await asyncio.to_thread(
            self._resolve, provider, profile, access_token, refresh_token, token_expires_at
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(provider: str, profile: ExternalProfile) -> None:
        if provider not in SUPPORTED_PROVIDERS:
            raise InvalidOAuthProfile(provider)
        if not profile.external_id:
            raise InvalidOAuthProfile(provider, "id")
        if provider in EMAIL_REQUIRED_PROVIDERS and not profile.email:
            raise InvalidOAuthProfile(provider, "email")
        if provider == "github" and not profile.username:
            raise InvalidOAuthProfile(provider, "username")

    def _resolve(
        self,
        provider: str,
        profile: ExternalProfile,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> Account:
        now = datetime.now(timezone.utc)

        # 1. Known identity
        account = self.store.get_by_external_identity(provider, profile.external_id)
        if account is not None:
            return self._login(account, provider, access_token, refresh_token, token_expires_at, now)

        identity = ExternalIdentity(
            provider=provider,
            external_id=profile.external_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            username=profile.username,
            profile_url=profile.profile_url,
            linked_at=now,
        )

        # 2. Existing account with the same email
        email = profile.email or f"{profile.username}@users.noreply.github.com"
        existing = self.store.get_by_email(email)
        if existing is not None:
            linked = existing.external_identities.get(provider)
            if linked is not None and linked.external_id == profile.external_id:
                # Linked by a concurrent request since our first lookup.
                return self._login(existing, provider, access_token, refresh_token, token_expires_at, now)
            if not profile.email_verified or linked is not None:
                logger.warning("Refusing to link %s identity to %s (email not trusted)", provider, existing.email)
                raise AccountExists()
            try:
                self.store.link_external_identity(existing.id, identity, email_verified=True)
            except IntegrityError:
                return self._reread(provider, profile)
            logger.info("Linked %s identity to existing account %s", provider, existing.email)
            return self._login(existing, provider, access_token, refresh_token, token_expires_at, now)

        # 3. New provider-only account
        account = Account(
            email=email,
            display_name=profile.display_name or profile.username or _DEFAULT_DISPLAY_NAMES.get(provider, ""),
            hashed_password=generate_unusable_password_hash(),
            has_usable_password=False,
            is_email_verified=profile.email_verified,
            last_oauth_provider=provider,
            login_count=1,
            last_login=now,
            external_identities={provider: identity},
            created_at=now,
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError:
            return self._reread(provider, profile)
        logger.info("Created account %s from %s login", email, provider)
        return self.store.get_by_id(account_id)

    def _login(
        self,
        account: Account,
        provider: str,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        now: datetime,
    ) -> Account:
        if not account.is_active:
            raise InvalidCredentials()
        self.store.record_provider_login(
            account.id,
            provider,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at,
            now=now,
        )
        return self.store.get_by_id(account.id) or account

    def _reread(self, provider: str, profile: ExternalProfile) -> Account:
        """A concurrent request won the insert; return the account it created or linked."""
        account = self.store.get_by_external_identity(provider, profile.external_id)
        if account is None:
            # The collision was on the email, not on the identity.
            raise AccountExists()
        logger.debug("Concurrent %s link resolved by re-read", provider)
        if not account.is_active:
            raise InvalidCredentials()
        return account
