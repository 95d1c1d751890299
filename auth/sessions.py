"""
auth/sessions.py -- Per-account device sessions.

A session is one browser or device's ongoing presence, tracked independently
of token lifetime: tokens expire and rotate, the session row persists until
the user revokes it or the reaper finds it idle past the inactivity window.

Device classification is a pure heuristic over the user-agent string with an
explicit precedence: tablet markers are checked before mobile markers (iPad
and Android tablet user-agents also contain mobile-OS tokens), mobile before
desktop, and anything unmatched is "unknown" -- a legitimate result, not an
error.

touch() runs on every authenticated request carrying X-Session-Id. It is
best-effort: storage failures are logged and swallowed so bookkeeping can
never fail the request it rides on.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.errors import SessionNotFound
from auth.models import Account, DeviceClass, Session, SessionStats

if TYPE_CHECKING:
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("turnstile.auth.sessions")

# Clients send the session id back in this header; browsers get it as a cookie.
SESSION_HEADER = "X-Session-Id"
SESSION_COOKIE = "session_id"
_SESSION_ID_LENGTH = 64

# ---------------------------------------------------------------------------
# Device classification
# ---------------------------------------------------------------------------

# Checked in order; first match wins. Lower-case substrings.
_TABLET_MARKERS = ("ipad", "tablet", "kindle", "silk/", "playbook", "nexus 7", "nexus 10", "sm-t")
_MOBILE_MARKERS = (
    "mobi",
    "iphone",
    "ipod",
    "android",
    "blackberry",
    "bb10",
    "windows phone",
    "opera mini",
    "iemobile",
)
_DESKTOP_MARKERS = ("windows nt", "macintosh", "mac os x", "x11", "linux", "cros")

_BROWSERS = (
    ("edg/", "Edge"),
    ("opr/", "Opera"),
    ("firefox/", "Firefox"),
    ("fxios/", "Firefox"),
    ("crios/", "Chrome"),
    ("chrome/", "Chrome"),
    ("safari/", "Safari"),
    ("curl/", "curl"),
)
_OPERATING_SYSTEMS = (
    ("ipad", "iPadOS"),
    ("iphone", "iOS"),
    ("android", "Android"),
    ("windows phone", "Windows Phone"),
    ("windows nt", "Windows"),
    ("cros", "ChromeOS"),
    ("mac os x", "macOS"),
    ("macintosh", "macOS"),
    ("linux", "Linux"),
)


def classify_device(user_agent: str | None) -> DeviceClass:
    """Return the device class for a user-agent string. Pure function."""
    ua = (user_agent or "").lower()
    if not ua.strip():
        return DeviceClass.unknown
    if any(marker in ua for marker in _TABLET_MARKERS):
        return DeviceClass.tablet
    # Android tablets omit "mobile"; Android phones include it.
    if "android" in ua and "mobile" not in ua:
        return DeviceClass.tablet
    if any(marker in ua for marker in _MOBILE_MARKERS):
        return DeviceClass.mobile
    if any(marker in ua for marker in _DESKTOP_MARKERS):
        return DeviceClass.desktop
    return DeviceClass.unknown


def describe_device(user_agent: str | None) -> str:
    """Human-readable label such as "Chrome on Windows". Pure function."""
    ua = (user_agent or "").lower()
    browser = next((name for marker, name in _BROWSERS if marker in ua), None)
    system = next((name for marker, name in _OPERATING_SYSTEMS if marker in ua), None)
    if browser and system:
        return f"{browser} on {system}"
    return browser or system or "Unknown device"


def new_session_id() -> str:
    """256 bits of randomness as 64 hex chars."""
    return secrets.token_hex(_SESSION_ID_LENGTH // 2)


def is_valid_session_id(value: str | None) -> bool:
    """True for a well-formed id as produced by new_session_id()."""
    if not value or len(value) != _SESSION_ID_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Add, refresh, list and remove an account's device sessions.

    Every mutation is a single-row statement in AccountStore, so concurrent
    requests for the same account never lose a session entry.
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self.expiry_window = timedelta(days=settings.session_inactivity_days)

    def add_or_update(
        self,
        account: Account,
        session_id: str,
        device_id: str | None,
        user_agent: str | None,
        source_ip: str | None,
        device_label: str | None = None,
    ) -> Session:
        """Register a login on a device, or refresh the session if the id is known.

        Adding the same session_id twice updates the existing entry in place.
        """
        now = datetime.now(timezone.utc)
        user_agent = (user_agent or "")[:512]
        session = Session(
            session_id=session_id,
            device_id=device_id or secrets.token_hex(16),
            device_label=(device_label or describe_device(user_agent))[:255],
            device_class=classify_device(user_agent),
            user_agent=user_agent,
            source_ip=source_ip or "",
            last_activity=now,
            created_at=now,
        )
        created = self.store.upsert_session(account.id, session)
        if created:
            logger.info(
                "New %s session for account %s (%s)", session.device_class.value, account.id, session.device_label
            )
        return self.get(account, session_id) or session

    def get(self, account: Account, session_id: str) -> Session | None:
        for session in self.store.get_sessions(account.id):
            if session.session_id == session_id:
                return session
        return None

    def remove(self, account: Account, session_id: str) -> None:
        """Revoke one session. Raises SessionNotFound if it does not exist."""
        if not self.store.delete_session(account.id, session_id):
            raise SessionNotFound(session_id)
        logger.info("Session removed for account %s", account.id)

    def remove_all(self, account: Account) -> int:
        """Revoke every session of the account. Returns the number removed."""
        removed = self.store.delete_all_sessions(account.id)
        logger.info("All sessions (%d) removed for account %s", removed, account.id)
        return removed

    def list_active(
        self,
        account: Account,
        expiry_window: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[Session]:
        """Sessions flagged active whose last activity falls inside the window."""
        cutoff = (now or datetime.now(timezone.utc)) - (expiry_window or self.expiry_window)
        return [s for s in self.store.get_sessions(account.id) if s.active and s.last_activity > cutoff]

    def touch(self, account: Account, session_id: str) -> bool:
        """Stamp last_activity on a session. Never raises.

        Returns True if a session was updated, False if it does not exist or
        the write failed.
        """
        try:
            return self.store.touch_session(account.id, session_id, datetime.now(timezone.utc))
        except Exception:
            logger.exception("Session touch failed for account %s", account.id)
            return False

    def stats(self, account: Account) -> SessionStats:
        sessions = self.store.get_sessions(account.id)
        active = self.list_active(account)
        day_ago = datetime.now(timezone.utc) - timedelta(hours=24)
        classes = Counter(s.device_class.value for s in sessions)
        return SessionStats(
            total_sessions=len(sessions),
            active_sessions=len(active),
            inactive_sessions=len(sessions) - len(active),
            unique_ips=len({s.source_ip for s in sessions if s.source_ip}),
            device_classes={c.value: classes.get(c.value, 0) for c in DeviceClass},
            recent_activity=sum(1 for s in sessions if s.last_activity > day_ago),
        )
