"""
auth/credentials.py -- Password hashing, local registration and the lockout policy.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Cost factor makes offline
       brute force expensive. The _DUMMY_HASH constant enables timing
       equalization so response time does not reveal whether an email is
       registered [C1].

  Lockout: one consistent policy. After max_failed_login_attempts consecutive
       failures the account is locked for lockout_minutes. While locked, even
       the correct password fails with AccountLocked. Once locked_until has
       passed, the next attempt clears the lock first, so a correct password
       unlocks immediately -- there is no separate unlock step.

  Atomicity: the failure counter and lock fields are only ever written via
       AccountStore's conditional statements (increment-with-guard and
       compare-and-set). Two concurrent wrong passwords both count; a correct
       password racing a locking failure cannot silently undo the lock.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import AccountExists, AccountLocked, InvalidCredentials, ProviderLoginRequired
from auth.models import Account
from auth.store import normalize_email

if TYPE_CHECKING:
    from auth.store import AccountStore
    from core.config import Settings

logger = logging.getLogger("turnstile.auth.credentials")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API caps passwords at 128
    characters, and anything longer than 72 bytes is still accepted.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as an error.
        return False


def generate_unusable_password_hash() -> str:
    """Hash 256 random bits nobody knows.

    Used for accounts created by a provider login so the "password hash
    present" invariant holds without giving the account a guessable password.
    """
    return hash_password(secrets.token_hex(32))


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("turnstile_timing_dummy")

# ---------------------------------------------------------------------------
# Password strength policy
#
# Applied where a new password enters the system (signup, the operator CLI).
# Login never checks it, so accounts created under an older policy keep working.
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{};':\"\\|,.<>/?~`")

_FORBIDDEN_SUBSTRINGS = (
    "password", "123456", "qwerty", "abc123", "admin", "user", "test", "welcome",
    "hello", "monkey", "dragon", "master", "letmein", "freedom", "whatever",
    "qazwsx", "trustno1", "654321", "jordan23", "harley", "shadow", "superman",
    "michael", "football", "iloveyou",
)
_COMMON_PASSWORDS = frozenset(
    {
        "123456789", "1234567890", "password1", "qwerty123", "123123", "111111",
        "000000", "123321", "1234567", "12345678", "qwertyui", "asdfgh", "zxcvbn",
        "qwerty1234", "password12", "admin123", "root", "toor",
    }
)
_SEQUENCES = re.compile(r"123|abc|qwe|asd|zxc|456|def|rty|fgh|vbn|789|ghi|uio|jkl|mno", re.IGNORECASE)
_KEYBOARD_RUNS = re.compile(r"qwerty|asdfgh|zxcvbn|qazwsx|edcrfv|tgbyhn", re.IGNORECASE)
_REPEATS = re.compile(r"(.)\1{2,}")


def password_policy_errors(password: str) -> list[str]:
    """Return every rule the password breaks; empty means it is acceptable."""
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be no more than {PASSWORD_MAX_LENGTH} characters long")
    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter (A-Z)")
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter (a-z)")
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number (0-9)")
    if not any(c in _SPECIAL_CHARS for c in password):
        errors.append("Password must contain at least one special character")

    lowered = password.lower()
    pattern = next((p for p in _FORBIDDEN_SUBSTRINGS if p in lowered), None)
    if pattern is not None:
        errors.append(f'Password cannot contain common patterns like "{pattern}"')
    if lowered in _COMMON_PASSWORDS:
        errors.append("Password is too common and easily guessable")
    if _REPEATS.search(password):
        errors.append("Password should not contain repeated characters (e.g., aaa, 111)")
    if _SEQUENCES.search(password):
        errors.append("Password should not contain sequential characters (e.g., 123, abc)")
    if _KEYBOARD_RUNS.search(password):
        errors.append("Password should not contain keyboard patterns")
    return errors


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class CredentialAuthenticator:
    """Verify email/password logins and apply the lockout policy.

    Usage:
        authenticator = CredentialAuthenticator(store, settings)
        account = authenticator.authenticate("a@x.com", "hunter22", "203.0.113.7")
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self.max_attempts = settings.max_failed_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_minutes)

    def authenticate(self, email: str, password: str, source_ip: str | None = None) -> Account:
        """Return the Account on success.

        Raises:
            InvalidCredentials: unknown email, wrong password, inactive account.
            ProviderLoginRequired: account only has a provider-generated password.
            AccountLocked: account is locked, or this failure just locked it.
        """
        account = self.store.get_by_email(email)
        if account is None or account.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, _DUMMY_HASH)
            if account is not None and account.linked_providers:
                raise ProviderLoginRequired(account.linked_providers)
            raise InvalidCredentials()

        now = datetime.now(timezone.utc)

        if account.is_locked(now):
            verify_password(password, _DUMMY_HASH)
            logger.info("Login refused for locked account %s", account.email)
            raise AccountLocked(account.lock_minutes_remaining(now))

        if account.locked_until is not None:
            # Lock has elapsed: clear it before evaluating this attempt.
            self.store.clear_expired_lock(account.id, account.locked_until)
            logger.info("Lockout expired for %s; counters reset", account.email)

        if not account.has_usable_password:
            verify_password(password, _DUMMY_HASH)
            raise ProviderLoginRequired(account.linked_providers)

        if not verify_password(password, account.hashed_password):
            self._register_failure(account, now)
            # _register_failure raises AccountLocked when this attempt locked it.
            raise InvalidCredentials()

        if not account.is_active:
            raise InvalidCredentials()

        if not self.store.record_successful_login(account.id, source_ip, now):
            # A concurrent failure locked the account after our check.
            fresh = self.store.get_by_id(account.id)
            minutes = fresh.lock_minutes_remaining(now) if fresh is not None else 0
            raise AccountLocked(max(minutes, 1))

        logger.info("Successful login for %s from %s", account.email, source_ip or "unknown")
        return self.store.get_by_id(account.id) or account

    def _register_failure(self, account: Account, now: datetime) -> None:
        attempts, locked_until = self.store.register_failed_login(
            account.id, self.max_attempts, now + self.lockout_duration
        )
        if locked_until is not None and locked_until > now:
            logger.warning(
                "Account %s locked after %d failed attempts (until %s)",
                account.email,
                attempts,
                locked_until.isoformat(),
            )
            minutes = max(1, math.ceil((locked_until - now).total_seconds() / 60))
            raise AccountLocked(minutes)
        logger.info("Failed login for %s (%d/%d)", account.email, attempts, self.max_attempts)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: str = "", role: str = "user") -> Account:
        """Create a local password account.

        Raises AccountExists when the case-folded email is already registered,
        including when a concurrent signup wins the UNIQUE constraint.
        """
        email = normalize_email(email)
        if self.store.get_by_email(email) is not None:
            raise AccountExists()
        account = Account(
            email=email,
            display_name=display_name or email.split("@", 1)[0],
            hashed_password=hash_password(password),
            role=role,
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError as exc:
            raise AccountExists() from exc
        logger.info("Registered account %s (role=%s)", email, role)
        return self.store.get_by_id(account_id)
