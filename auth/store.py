"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and sessions.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_session / _row_to_identity are the mappers.
Components never touch SQL directly.

Concurrency model:
  Concurrent logins and session touches for one account are normal (several
  tabs, several devices). Every read-modify-write on shared per-account state
  is therefore a single conditional statement inside one transaction rather
  than load-mutate-save:
    - failed login counter: increment-with-guard (register_failed_login)
    - lock fields: compare-and-set on the observed locked_until
      (clear_expired_lock, record_successful_login)
    - refresh token: compare-and-set on the stored digest (swap_refresh_token)
    - sessions: one row each, upserted on UNIQUE(account_id, session_id);
      the reaper deletes only rows that are still stale at delete time
  create_account() is the only whole-document write, and it only inserts.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision always
  present) so SQL string comparison orders them chronologically. Plain
  isoformat() drops the fraction when microsecond == 0, which breaks that.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens are stored as HMAC digests; the raw value never reaches disk.
  Emails are case-folded on every write and lookup.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    delete,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Account, DeviceClass, ExternalIdentity, Session

logger = logging.getLogger("turnstile.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # case-folded
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL only when an external identity exists
    Column("has_usable_password", Integer, nullable=False, server_default="1"),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("login_count", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("last_login_ip", String(45)),
    Column("last_oauth_provider", String(30)),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("refresh_token_hash", String(64)),  # HMAC-SHA256 hex of the current refresh token
    Column("refresh_token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_identities = Table(
    "external_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("external_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("token_expires_at", String(32)),
    Column("username", String(255)),
    Column("profile_url", Text),
    Column("linked_at", String(32), nullable=False),
    UniqueConstraint("provider", "external_id", name="uq_identity_provider_external_id"),
    UniqueConstraint("account_id", "provider", name="uq_identity_account_provider"),
)

_sessions = Table(
    "account_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion order
    Column("account_id", Integer, nullable=False, index=True),
    Column("session_id", String(64), nullable=False),
    Column("device_id", String(255), nullable=False),
    Column("device_label", String(255), nullable=False),
    Column("device_class", String(10), nullable=False, server_default="unknown"),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("source_ip", String(45), nullable=False, server_default=""),
    Column("last_activity", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    UniqueConstraint("account_id", "session_id", name="uq_session_account_session_id"),
)

# Fields update_account() will write. Counters, lock fields, the refresh
# digest and sessions have dedicated atomic methods and are excluded.
_MUTABLE_ACCOUNT_FIELDS = {
    "display_name",
    "hashed_password",
    "has_usable_password",
    "role",
    "permissions",
    "is_email_verified",
    "is_active",
    "last_oauth_provider",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so reads proceed while a write is in flight."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, ExternalIdentity and Session entities.

    Usage:
        store = AccountStore("sqlite:///turnstile.db")
        account_id = store.create_account(Account(email="a@x.com", hashed_password=...))
        account = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Whole-document create / read
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert an account with its identities and sessions; return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the email or one of the
        (provider, external_id) pairs is already taken. Callers translate
        that into AccountExists or a re-read, depending on context.
        """
        created_at = account.created_at or _now()
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(_accounts).values(
                    email=normalize_email(account.email),
                    display_name=account.display_name,
                    hashed_password=account.hashed_password,
                    has_usable_password=1 if account.has_usable_password else 0,
                    role=account.role,
                    permissions=json.dumps(account.permissions),
                    failed_login_attempts=account.failed_login_attempts,
                    locked_until=_to_db(account.locked_until),
                    login_count=account.login_count,
                    last_login=_to_db(account.last_login),
                    last_login_ip=account.last_login_ip,
                    last_oauth_provider=account.last_oauth_provider,
                    is_email_verified=1 if account.is_email_verified else 0,
                    is_active=1 if account.is_active else 0,
                    refresh_token_hash=account.refresh_token_hash,
                    refresh_token_expires_at=_to_db(account.refresh_token_expires_at),
                    created_at=_to_db(created_at),
                )
            )
            account_id = result.inserted_primary_key[0]
            for identity in account.external_identities.values():
                conn.execute(_identity_insert(account_id, identity))
            for session in account.sessions:
                conn.execute(_session_insert(account_id, session))
        return account_id

    def get_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_accounts).where(_accounts.c.id == account_id)).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by case-folded email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_accounts).where(_accounts.c.email == normalize_email(email))).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def get_by_external_identity(self, provider: str, external_id: str) -> Account | None:
        """Look up the account linked to (provider, external_id). O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_accounts)
                .join(_identities, _identities.c.account_id == _accounts.c.id)
                .where((_identities.c.provider == provider) & (_identities.c.external_id == external_id))
            ).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def list_account_ids_with_sessions(self) -> list[int]:
        """Return IDs of every account holding at least one session row."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_sessions.c.account_id).distinct().order_by(_sessions.c.account_id)
            ).fetchall()
        return [r.account_id for r in rows]

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing account.

        Accepted fields: see _MUTABLE_ACCOUNT_FIELDS. Unknown keys raise
        ValueError rather than being silently ignored. Returns True if a row
        was updated, False if account_id was not found.
        """
        unknown = set(fields) - _MUTABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown or non-mutable account fields: {sorted(unknown)!r}")
        if not fields:
            return False
        for flag in ("has_usable_password", "is_email_verified", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "permissions" in fields:
            fields["permissions"] = json.dumps(list(fields["permissions"]))
        with self.engine.begin() as conn:
            result = conn.execute(update(_accounts).where(_accounts.c.id == account_id).values(**fields))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout counters -- atomic primitives
    # ------------------------------------------------------------------

    def register_failed_login(
        self, account_id: int, threshold: int, locked_until: datetime
    ) -> tuple[int, datetime | None]:
        """Atomically count a failed password attempt.

        failed_login_attempts is incremented in SQL, and locked_until is set
        in the same statement only when the new count reaches threshold and no
        lock is already in place (a concurrent failure that locked first keeps
        its deadline). SET expressions read pre-update column values.

        Returns (attempts, locked_until) as committed.
        """
        new_count = _accounts.c.failed_login_attempts + 1
        with self.engine.begin() as conn:
            conn.execute(
                update(_accounts)
                .where(_accounts.c.id == account_id)
                .values(
                    failed_login_attempts=new_count,
                    locked_until=case(
                        (
                            and_(new_count >= threshold, _accounts.c.locked_until.is_(None)),
                            _to_db(locked_until),
                        ),
                        else_=_accounts.c.locked_until,
                    ),
                )
            )
            row = conn.execute(
                select(_accounts.c.failed_login_attempts, _accounts.c.locked_until).where(
                    _accounts.c.id == account_id
                )
            ).fetchone()
        if row is None:
            return 0, None
        return row.failed_login_attempts, _from_db(row.locked_until)

    def clear_expired_lock(self, account_id: int, observed_locked_until: datetime) -> bool:
        """Compare-and-set: clear the lock only if it is still the one we observed.

        Returns False when another request already cleared or replaced it.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_accounts)
                .where(
                    (_accounts.c.id == account_id) & (_accounts.c.locked_until == _to_db(observed_locked_until))
                )
                .values(failed_login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    def record_successful_login(self, account_id: int, source_ip: str | None, now: datetime) -> bool:
        """Reset lockout state and stamp login metadata in one guarded statement.

        The WHERE clause requires the account not to be locked at `now`. If a
        concurrent failed attempt locked it between our check and this write,
        nothing is updated and False is returned so the caller can report the
        lock instead of silently undoing it.
        """
        now_db = _to_db(now)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_accounts)
                .where(
                    (_accounts.c.id == account_id)
                    & or_(_accounts.c.locked_until.is_(None), _accounts.c.locked_until <= now_db)
                )
                .values(
                    failed_login_attempts=0,
                    locked_until=None,
                    login_count=_accounts.c.login_count + 1,
                    last_login=now_db,
                    last_login_ip=source_ip,
                )
            )
        return result.rowcount > 0

    def reset_lockout(self, account_id: int) -> bool:
        """Operator unlock. Not used by the login flow, which unlocks on expiry."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_accounts)
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=0, locked_until=None)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh token -- single active token per account
    # ------------------------------------------------------------------

    def set_refresh_token(self, account_id: int, token_hash: str, expires_at: datetime) -> None:
        """Unconditionally make token_hash the account's only valid refresh token."""
        with self.engine.begin() as conn:
            conn.execute(
                update(_accounts)
                .where(_accounts.c.id == account_id)
                .values(refresh_token_hash=token_hash, refresh_token_expires_at=_to_db(expires_at))
            )

    def swap_refresh_token(
        self, account_id: int, expected_hash: str, new_hash: str, expires_at: datetime
    ) -> bool:
        """Compare-and-set the refresh digest. False if expected_hash is no longer current.

        Two concurrent rotations of the same token race on this statement;
        exactly one sees rowcount == 1.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_accounts)
                .where((_accounts.c.id == account_id) & (_accounts.c.refresh_token_hash == expected_hash))
                .values(refresh_token_hash=new_hash, refresh_token_expires_at=_to_db(expires_at))
            )
        return result.rowcount > 0

    def clear_refresh_token(self, account_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(_accounts)
                .where(_accounts.c.id == account_id)
                .values(refresh_token_hash=None, refresh_token_expires_at=None)
            )

    # ------------------------------------------------------------------
    # External identities
    # ------------------------------------------------------------------

    def link_external_identity(self, account_id: int, identity: ExternalIdentity, *, email_verified: bool) -> None:
        """Attach a provider identity to an existing account.

        Raises IntegrityError if (provider, external_id) is already linked,
        which the linker treats as "a concurrent request won; re-read".
        email_verified only ever upgrades the flag, never clears it.
        """
        values: dict = {"last_oauth_provider": identity.provider}
        if email_verified:
            values["is_email_verified"] = 1
        with self.engine.begin() as conn:
            conn.execute(_identity_insert(account_id, identity))
            conn.execute(update(_accounts).where(_accounts.c.id == account_id).values(**values))

    def record_provider_login(
        self,
        account_id: int,
        provider: str,
        *,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        now: datetime,
    ) -> None:
        """Store fresh provider tokens and stamp the login, in one transaction.

        A provider that omits a refresh token on a repeat login keeps the
        previously stored one.
        """
        identity_values: dict = {}
        if access_token:
            identity_values["access_token"] = access_token
            identity_values["token_expires_at"] = _to_db(token_expires_at)
        if refresh_token:
            identity_values["refresh_token"] = refresh_token
        with self.engine.begin() as conn:
            if identity_values:
                conn.execute(
                    update(_identities)
                    .where((_identities.c.account_id == account_id) & (_identities.c.provider == provider))
                    .values(**identity_values)
                )
            conn.execute(
                update(_accounts)
                .where(_accounts.c.id == account_id)
                .values(
                    last_oauth_provider=provider,
                    login_count=_accounts.c.login_count + 1,
                    last_login=_to_db(now),
                )
            )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def upsert_session(self, account_id: int, session: Session) -> bool:
        """Refresh an existing session row or insert a new one.

        Returns True if a row was inserted, False if an existing one was
        refreshed. A concurrent insert of the same session_id hits the UNIQUE
        constraint; the loser falls back to the refresh path, so the same id
        never produces two rows.
        """
        refresh = {
            "last_activity": _to_db(session.last_activity),
            "source_ip": session.source_ip,
            "is_active": 1,
        }
        with self.engine.begin() as conn:
            if self._refresh_session(conn, account_id, session.session_id, refresh):
                return False
        try:
            with self.engine.begin() as conn:
                conn.execute(_session_insert(account_id, session))
            return True
        except IntegrityError:
            logger.debug("Concurrent insert for account %s session; refreshing instead", account_id)
            with self.engine.begin() as conn:
                self._refresh_session(conn, account_id, session.session_id, refresh)
            return False

    def touch_session(self, account_id: int, session_id: str, now: datetime) -> bool:
        """Update last_activity only. Returns False if the session does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_sessions)
                .where((_sessions.c.account_id == account_id) & (_sessions.c.session_id == session_id))
                .values(last_activity=_to_db(now))
            )
        return result.rowcount > 0

    def get_sessions(self, account_id: int) -> list[Session]:
        with self.engine.connect() as conn:
            return self._load_sessions(conn, account_id)

    def delete_session(self, account_id: int, session_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(_sessions).where((_sessions.c.account_id == account_id) & (_sessions.c.session_id == session_id))
            )
        return result.rowcount > 0

    def delete_all_sessions(self, account_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.account_id == account_id))
        return result.rowcount

    def delete_sessions_if_stale(self, account_id: int, session_ids: list[str], cutoff: datetime) -> int:
        """Delete the given sessions, but only those still stale at delete time.

        A session counts as stale when it is flagged inactive or its
        last_activity is at or before cutoff. A touch that lands between the
        reaper's read and this delete moves last_activity past cutoff and the
        row survives.
        """
        if not session_ids:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(_sessions).where(
                    (_sessions.c.account_id == account_id)
                    & _sessions.c.session_id.in_(session_ids)
                    & or_(_sessions.c.is_active == 0, _sessions.c.last_activity <= _to_db(cutoff))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _refresh_session(conn: Connection, account_id: int, session_id: str, values: dict) -> bool:
        result = conn.execute(
            update(_sessions)
            .where((_sessions.c.account_id == account_id) & (_sessions.c.session_id == session_id))
            .values(**values)
        )
        return result.rowcount > 0

    @staticmethod
    def _load_sessions(conn: Connection, account_id: int) -> list[Session]:
        rows = conn.execute(
            select(_sessions).where(_sessions.c.account_id == account_id).order_by(_sessions.c.id)
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def _hydrate(self, conn: Connection, row) -> Account:
        identity_rows = conn.execute(
            select(_identities).where(_identities.c.account_id == row.id).order_by(_identities.c.id)
        ).fetchall()
        identities = [_row_to_identity(r) for r in identity_rows]
        return _row_to_account(row, identities, self._load_sessions(conn, row.id))


# ---------------------------------------------------------------------------
# Insert builders
# ---------------------------------------------------------------------------


def _identity_insert(account_id: int, identity: ExternalIdentity):
    return insert(_identities).values(
        account_id=account_id,
        provider=identity.provider,
        external_id=identity.external_id,
        access_token=identity.access_token,
        refresh_token=identity.refresh_token,
        token_expires_at=_to_db(identity.token_expires_at),
        username=identity.username,
        profile_url=identity.profile_url,
        linked_at=_to_db(identity.linked_at or _now()),
    )


def _session_insert(account_id: int, session: Session):
    return insert(_sessions).values(
        account_id=account_id,
        session_id=session.session_id,
        device_id=session.device_id,
        device_label=session.device_label,
        device_class=session.device_class.value,
        user_agent=session.user_agent,
        source_ip=session.source_ip,
        last_activity=_to_db(session.last_activity),
        created_at=_to_db(session.created_at),
        is_active=1 if session.active else 0,
    )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, identities: list[ExternalIdentity], sessions: list[Session]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        display_name=row.display_name or "",
        hashed_password=row.hashed_password,
        has_usable_password=bool(row.has_usable_password),
        role=row.role,
        permissions=json.loads(row.permissions or "[]"),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_from_db(row.locked_until),
        login_count=row.login_count,
        last_login=_from_db(row.last_login),
        last_login_ip=row.last_login_ip,
        linked_providers=[i.provider for i in identities],
        external_identities={i.provider: i for i in identities},
        last_oauth_provider=row.last_oauth_provider,
        is_email_verified=bool(row.is_email_verified),
        is_active=bool(row.is_active),
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expires_at=_from_db(row.refresh_token_expires_at),
        sessions=sessions,
        created_at=_from_db(row.created_at),
    )


def _row_to_identity(row) -> ExternalIdentity:
    return ExternalIdentity(
        provider=row.provider,
        external_id=row.external_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=_from_db(row.token_expires_at),
        username=row.username,
        profile_url=row.profile_url,
        linked_at=_from_db(row.linked_at),
    )


def _row_to_session(row) -> Session:
    try:
        device_class = DeviceClass(row.device_class)
    except ValueError:
        device_class = DeviceClass.unknown
    return Session(
        session_id=row.session_id,
        device_id=row.device_id,
        device_label=row.device_label,
        device_class=device_class,
        user_agent=row.user_agent,
        source_ip=row.source_ip,
        last_activity=_from_db(row.last_activity),
        created_at=_from_db(row.created_at),
        active=bool(row.is_active),
    )
