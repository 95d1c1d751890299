"""
auth/tokens.py -- Access/refresh JWT issuance, rotation, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       different secrets and carry a "type" claim, so neither can stand in for
       the other even if a client swaps cookies.

  Single active refresh token: the account row stores HMAC-SHA256(refresh
       secret, raw token) of the one currently valid refresh token. Minting a
       new one overwrites the digest, which invalidates every earlier token.
       Each refresh token carries a random jti so two tokens minted in the
       same second still differ.

  Rotation: rotate() swaps the stored digest with compare-and-set. A replayed
       (already rotated) token no longer matches the stored digest and fails
       InvalidRefreshToken, and of two concurrent rotations of the same token
       exactly one wins.

  Error shape: decode failures raise typed errors. Expired and malformed
       access tokens are distinguished for client messaging only; both are 401.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import InvalidAccessToken, InvalidRefreshToken
from auth.models import Account, TokenPair

if TYPE_CHECKING:
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("turnstile.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


class TokenIssuer:
    """Mint, validate and rotate access/refresh token pairs.

    Usage:
        issuer = TokenIssuer(store, settings)
        pair = issuer.issue(account)
        claims = issuer.decode_access_token(pair.access_token)
        pair = issuer.rotate(pair.refresh_token)
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self._access_secret = settings.secret_key
        self._refresh_secret = settings.refresh_secret_key
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds
        self.rotation_enabled = settings.refresh_token_rotation

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint_access_token(self, account: Account) -> str:
        """Encode a short-lived access JWT with an identity and permission snapshot."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(account.id),
            "account_id": account.id,
            "role": account.role,
            "permissions": list(account.permissions),
            "is_admin": account.is_admin,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(seconds=self.access_ttl),
        }
        return jwt.encode(payload, self._access_secret, algorithm=_ALGORITHM)

    def mint_refresh_token(self, account: Account) -> str:
        """Encode a refresh JWT and make it the account's only valid refresh token."""
        token, expires_at = self._encode_refresh(account.id)
        self.store.set_refresh_token(account.id, self.hash_token(token), expires_at)
        return token

    def issue(self, account: Account) -> TokenPair:
        """Mint a fresh access + refresh pair (login, provider login)."""
        return TokenPair(
            access_token=self.mint_access_token(account),
            refresh_token=self.mint_refresh_token(account),
            access_expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def decode_access_token(self, token: str) -> dict:
        """Verify an access JWT and return its claims.

        Raises InvalidAccessToken(expired=True) for an expired token and
        InvalidAccessToken(expired=False) for anything else that fails.
        """
        try:
            payload = jwt.decode(token, self._access_secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidAccessToken(expired=True) from exc
        except JWTError as exc:
            raise InvalidAccessToken(expired=False) from exc
        if payload.get("type") != "access" or not isinstance(payload.get("account_id"), int):
            raise InvalidAccessToken(expired=False)
        return payload

    def decode_refresh_token(self, token: str) -> dict:
        try:
            payload = jwt.decode(token, self._refresh_secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidRefreshToken("expired") from exc
        except JWTError as exc:
            raise InvalidRefreshToken("invalid") from exc
        if payload.get("type") != "refresh" or not isinstance(payload.get("account_id"), int):
            raise InvalidRefreshToken("invalid")
        return payload

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, refresh_token: str | None) -> TokenPair:
        """Exchange a valid refresh token for a new pair.

        Checks, in order: presence, signature and TTL, type claim, account
        exists and is active, value matches the stored digest and the stored
        expiry has not passed. The digest swap is compare-and-set, so reuse of
        an already rotated token fails even under concurrency.

        With rotation disabled the refresh token is kept and only a new access
        token is minted.
        """
        account, presented_hash = self._verify_refresh(refresh_token)
        now = datetime.now(timezone.utc)

        if not self.rotation_enabled:
            return TokenPair(
                access_token=self.mint_access_token(account),
                refresh_token=refresh_token,
                access_expires_in=self.access_ttl,
                refresh_expires_in=max(0, int((account.refresh_token_expires_at - now).total_seconds()))
                if account.refresh_token_expires_at
                else self.refresh_ttl,
            )

        new_token, expires_at = self._encode_refresh(account.id)
        if not self.store.swap_refresh_token(account.id, presented_hash, self.hash_token(new_token), expires_at):
            logger.warning("Concurrent rotation lost for account %s", account.id)
            raise InvalidRefreshToken("superseded")

        logger.info("Rotated refresh token for account %s", account.id)
        return TokenPair(
            access_token=self.mint_access_token(account),
            refresh_token=new_token,
            access_expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    def revoke(self, account_id: int) -> None:
        """Invalidate the account's refresh token (logout, logout everywhere)."""
        self.store.clear_refresh_token(account_id)

    def verify_refresh_token(self, refresh_token: str | None) -> Account:
        """Return the account whose current refresh token this is.

        Same checks as rotate(), without swapping anything. Logout uses it when
        the access token has already expired.
        """
        account, _digest = self._verify_refresh(refresh_token)
        return account

    def _verify_refresh(self, refresh_token: str | None) -> tuple[Account, str]:
        if not refresh_token:
            raise InvalidRefreshToken("missing")
        payload = self.decode_refresh_token(refresh_token)
        account = self.store.get_by_id(payload["account_id"])
        if account is None or not account.is_active:
            raise InvalidRefreshToken("invalid")

        presented_hash = self.hash_token(refresh_token)
        stored_hash = account.refresh_token_hash
        if stored_hash is None or not hmac.compare_digest(presented_hash, stored_hash):
            logger.warning("Refresh token reuse or superseded token for account %s", account.id)
            raise InvalidRefreshToken("superseded")
        if account.refresh_token_expires_at is not None and account.refresh_token_expires_at <= datetime.now(
            timezone.utc
        ):
            raise InvalidRefreshToken("expired")
        return account, presented_hash

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def hash_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(refresh secret, raw_token) as hex.

        Deterministic, so the stored digest can be compared directly. Without
        the secret, a leaked database row cannot be turned back into a token.
        """
        return hmac.new(self._refresh_secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()

    def _encode_refresh(self, account_id: int) -> tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=self.refresh_ttl)
        payload = {
            "sub": str(account_id),
            "account_id": account_id,
            "type": "refresh",
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=_ALGORITHM), expires_at


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, settings: Settings) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: COOKIE_MAX_AGE_SECONDS, or each token's own TTL when that is 0.
    """
    fixed = settings.cookie_max_age_seconds
    for name, value, ttl in (
        (ACCESS_COOKIE, pair.access_token, pair.access_expires_in),
        (REFRESH_COOKIE, pair.refresh_token, pair.refresh_expires_in),
    ):
        response.set_cookie(
            name,
            value=value,
            httponly=True,
            samesite="lax",
            secure=settings.secure_cookies,
            max_age=fixed if fixed > 0 else ttl,
        )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
