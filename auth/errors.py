"""
auth/errors.py -- Typed failures raised by the authentication core.

Every failure the core surfaces to a caller is an AuthError subclass carrying
a stable machine-readable code, an HTTP status hint, and a user-safe message.
api/main.py registers a single exception handler for AuthError and renders
to_dict() into the standard error envelope -- no route translates these by
hand, and no internal detail (stack, SQL, token contents) is ever attached.

Security:
  InvalidCredentials never says whether the email or the password was wrong.
  ProviderLoginRequired is the one deliberate exception: an account created by
  a provider login has no password the user knows, and telling them which
  provider to use is more useful than a generic failure.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class for all authentication and session failures."""

    status_code: int = 400
    default_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return the error payload for the API envelope."""
        return {
            "code": self.code,
            "message": self.message,
            "detail": self.details or None,
        }


class InvalidCredentials(AuthError):
    status_code = 401
    default_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password.", code: str | None = None, details=None) -> None:
        super().__init__(message, code, details)


class ProviderLoginRequired(InvalidCredentials):
    """The account was created by a provider login and has no usable password."""

    default_code = "provider_login_required"

    def __init__(self, providers: list[str]) -> None:
        names = ", ".join(p.capitalize() for p in providers) or "your identity provider"
        super().__init__(
            f"This account uses external sign-in. Please log in with {names}.",
            details={"providers": list(providers)},
        )
        self.providers = list(providers)


class AccountLocked(AuthError):
    status_code = 423
    default_code = "account_locked"

    def __init__(self, minutes_remaining: int) -> None:
        unit = "minute" if minutes_remaining == 1 else "minutes"
        super().__init__(
            f"Account is locked due to too many failed login attempts. Try again in {minutes_remaining} {unit}.",
            details={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class InvalidAccessToken(AuthError):
    """Expired and malformed tokens are distinguished only for client messaging."""

    status_code = 401

    def __init__(self, expired: bool = False) -> None:
        if expired:
            super().__init__("Access token has expired.", code="token_expired")
        else:
            super().__init__("Invalid access token.", code="invalid_token")
        self.expired = expired


class InvalidRefreshToken(AuthError):
    """Refresh token expired, badly signed, or superseded by a rotation.

    reason is one of "expired", "invalid", "superseded", "missing". Every
    reason asks the client to re-authenticate; the message is explicit so an
    expired refresh never looks like a silent failure.
    """

    status_code = 401
    default_code = "invalid_refresh_token"

    _MESSAGES = {
        "expired": "Your session has expired. Please log in again.",
        "superseded": "This refresh token is no longer valid. Please log in again.",
        "missing": "No refresh token provided. Please log in again.",
    }

    def __init__(self, reason: str = "invalid") -> None:
        message = self._MESSAGES.get(reason, "Invalid refresh token. Please log in again.")
        super().__init__(message, details={"reason": reason, "reauthenticate": True})
        self.reason = reason


class InvalidOAuthProfile(AuthError):
    status_code = 400
    default_code = "invalid_oauth_profile"

    def __init__(self, provider: str, missing: str | None = None) -> None:
        if missing is None:
            message = f"Unsupported identity provider: {provider}."
        else:
            message = f"{provider} profile is missing required field: {missing}."
        super().__init__(message, details={"provider": provider, "missing": missing})
        self.provider = provider
        self.missing = missing


class SessionNotFound(AuthError):
    status_code = 404
    default_code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        # The id is not echoed back; session ids are bearer-like secrets.
        super().__init__("Session not found.")
        self.session_id = session_id


class AccountExists(AuthError):
    status_code = 409
    default_code = "account_exists"

    def __init__(self) -> None:
        super().__init__("An account with that email already exists.")
