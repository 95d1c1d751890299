"""
API request and response models for Turnstile REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.credentials import password_policy_errors
from auth.models import Account, Session, SessionStats, SweepStats

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
# Deliverability is the identity provider's or the operator's problem.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DeviceClassEnum(str, Enum):
    desktop = "desktop"
    mobile = "mobile"
    tablet = "tablet"
    unknown = "unknown"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def fold_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        errors = password_policy_errors(value)
        if errors:
            raise ValueError("; ".join(errors))
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Device details travel in the X-Device-Id / X-Device-Name headers, not
    here, so browser and API clients identify devices the same way.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh. Falls back to the refresh_token cookie."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. No password hash, lock state or token digest."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: str
    role: str
    permissions: list[str]
    is_admin: bool
    is_email_verified: bool
    has_usable_password: bool
    linked_providers: list[str]
    last_oauth_provider: Optional[str]
    login_count: int
    last_login: Optional[datetime]
    created_at: Optional[datetime]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            role=account.role,
            permissions=list(account.permissions),
            is_admin=account.is_admin,
            is_email_verified=account.is_email_verified,
            has_usable_password=account.has_usable_password,
            linked_providers=list(account.linked_providers),
            last_oauth_provider=account.last_oauth_provider,
            login_count=account.login_count,
            last_login=account.last_login,
            created_at=account.created_at,
        )


class LoginResponse(BaseModel):
    """Response body for signup, login and refresh.

    The tokens are also set as httpOnly cookies; browser clients can ignore
    the body copies.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: Optional[str] = None
    account: Optional[AccountResponse] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    """One configured identity provider, as shown on the login page."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class OAuthStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/oauth/status."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    providers: list[OAuthProviderInfo]
    linked_providers: list[str] = []
    last_oauth_provider: Optional[str] = None


class SessionResponse(BaseModel):
    """One device session. current=True marks the session of the calling request."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    device_id: str
    device_label: str
    device_class: DeviceClassEnum
    source_ip: str
    last_activity: datetime
    created_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            device_id=session.device_id,
            device_label=session.device_label,
            device_class=DeviceClassEnum(session.device_class.value),
            source_ip=session.source_ip,
            last_activity=session.last_activity,
            created_at=session.created_at,
            current=session.session_id == current_id,
        )


class SessionStatsResponse(BaseModel):
    """Response for GET /api/v1/auth/sessions/stats."""

    model_config = ConfigDict(frozen=True)

    total_sessions: int
    active_sessions: int
    inactive_sessions: int
    unique_ips: int
    device_classes: dict[str, int]
    recent_activity: int

    @classmethod
    def from_stats(cls, stats: SessionStats) -> "SessionStatsResponse":
        return cls(
            total_sessions=stats.total_sessions,
            active_sessions=stats.active_sessions,
            inactive_sessions=stats.inactive_sessions,
            unique_ips=stats.unique_ips,
            device_classes=dict(stats.device_classes),
            recent_activity=stats.recent_activity,
        )


class RevokeAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    removed: int


class SweepStatsResponse(BaseModel):
    """Aggregate result of one reaper sweep."""

    model_config = ConfigDict(frozen=True)

    accounts_scanned: int
    sessions_removed: int
    accounts_updated: int
    errors: int
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    skipped: bool

    @classmethod
    def from_stats(cls, stats: SweepStats) -> "SweepStatsResponse":
        return cls(
            accounts_scanned=stats.accounts_scanned,
            sessions_removed=stats.sessions_removed,
            accounts_updated=stats.accounts_updated,
            errors=stats.errors,
            started_at=stats.started_at,
            finished_at=stats.finished_at,
            skipped=stats.skipped,
        )


class ReaperStatusResponse(BaseModel):
    """Response for GET /api/v1/admin/sessions/sweep."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    running: bool
    interval_seconds: int
    inactivity_days: int
    last_run: Optional[SweepStatsResponse] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    accounts: Optional[int] = None
