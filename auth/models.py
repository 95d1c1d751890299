"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Dataclasses own the domain shape; the store maps rows to
them and the components do the work. The only logic here is derived state
that every caller would otherwise recompute (lock status, minutes remaining).

All datetimes are timezone-aware UTC.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class DeviceClass(str, Enum):
    desktop = "desktop"
    mobile = "mobile"
    tablet = "tablet"
    unknown = "unknown"


@dataclass
class Session:
    """One authenticated device/browser, tracked independently of token lifetime.

    session_id is 256 bits from secrets.token_hex -- unguessable, and treated
    like a bearer secret (never logged in full).
    """

    session_id: str
    device_id: str
    device_label: str
    device_class: DeviceClass
    user_agent: str
    source_ip: str
    last_activity: datetime
    created_at: datetime
    active: bool = True


@dataclass
class ExternalIdentity:
    """An Account's link to one external identity provider."""

    provider: str  # "github", "google", "oidc"
    external_id: str  # provider's stable user ID
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    username: str | None = None
    profile_url: str | None = None
    linked_at: datetime | None = None


@dataclass
class Account:
    """The authenticated principal.

    hashed_password is None only for accounts that have at least one
    external identity. Accounts created by a provider login carry a random
    hash instead (has_usable_password=False) so the invariant holds and a
    password attempt can be answered with "use provider login".

    refresh_token_hash is HMAC-SHA256 of the single currently valid refresh
    token. The raw value is never persisted.
    """

    email: str
    id: int | None = None
    display_name: str = ""
    hashed_password: str | None = None
    has_usable_password: bool = True
    role: str = "user"  # "user", "admin"
    permissions: list[str] = field(default_factory=list)
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    login_count: int = 0
    last_login: datetime | None = None
    last_login_ip: str | None = None
    linked_providers: list[str] = field(default_factory=list)
    external_identities: dict[str, ExternalIdentity] = field(default_factory=dict)
    last_oauth_provider: str | None = None
    is_email_verified: bool = False
    is_active: bool = True
    refresh_token_hash: str | None = None
    refresh_token_expires_at: datetime | None = None
    sessions: list[Session] = field(default_factory=list)
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_locked(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.locked_until is not None and self.locked_until > now

    def lock_minutes_remaining(self, now: datetime | None = None) -> int:
        """Whole minutes until the lock lifts, rounded up. 0 when not locked."""
        if self.locked_until is None:
            return 0
        now = now or datetime.now(timezone.utc)
        remaining = (self.locked_until - now).total_seconds()
        return max(0, math.ceil(remaining / 60))

    def get_session(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.session_id == session_id:
                return session
        return None


@dataclass
class ExternalProfile:
    """Provider-neutral view of an identity provider's user profile.

    email_verified is the provider's own claim. The linker only trusts an
    email for account matching when this is True.
    """

    provider: str
    external_id: str | None
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None
    username: str | None = None
    profile_url: str | None = None
    avatar_url: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int  # seconds
    refresh_expires_in: int  # seconds
    token_type: str = "bearer"


@dataclass
class SweepStats:
    """Aggregate result of one reaper sweep."""

    accounts_scanned: int = 0
    sessions_removed: int = 0
    accounts_updated: int = 0
    errors: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    skipped: bool = False


@dataclass
class SessionStats:
    total_sessions: int = 0
    active_sessions: int = 0
    inactive_sessions: int = 0
    unique_ips: int = 0
    device_classes: dict[str, int] = field(default_factory=dict)
    recent_activity: int = 0  # sessions active in the last 24 hours
