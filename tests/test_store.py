"""
tests/test_store.py -- Unit tests for AccountStore (auth/store.py).

Covers the atomic primitives that the lockout, rotation and session logic
rely on. Each test gets a fresh named in-memory database via the store
fixture in conftest.py.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Account, DeviceClass, ExternalIdentity, Session
from auth.store import AccountStore, _to_db


def _new_account(store: AccountStore, email: str = "a@x.com", **kwargs) -> int:
    return store.create_account(Account(email=email, hashed_password="$2b$12$placeholder", **kwargs))


def _session(session_id: str, last_activity: datetime, active: bool = True) -> Session:
    return Session(
        session_id=session_id,
        device_id="dev-" + session_id,
        device_label="Firefox on Linux",
        device_class=DeviceClass.desktop,
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0",
        source_ip="203.0.113.7",
        last_activity=last_activity,
        created_at=last_activity,
        active=active,
    )


class TestAccounts:
    def test_email_lookup_is_case_insensitive(self, store: AccountStore) -> None:
        account_id = _new_account(store, "Alice@Example.COM")
        found = store.get_by_email("  alice@example.com ")
        assert found is not None
        assert found.id == account_id
        assert found.email == "alice@example.com"

    def test_duplicate_email_raises_integrity_error(self, store: AccountStore) -> None:
        _new_account(store, "a@x.com")
        with pytest.raises(IntegrityError):
            _new_account(store, "A@X.COM")

    def test_missing_account_returns_none(self, store: AccountStore) -> None:
        assert store.get_by_id(999) is None
        assert store.get_by_email("nobody@x.com") is None

    def test_update_account_rejects_unknown_fields(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        with pytest.raises(ValueError):
            store.update_account(account_id, failed_login_attempts=0)

    def test_update_account_writes_profile_fields(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        assert store.update_account(account_id, display_name="Alice", role="admin", permissions=["sessions:sweep"])
        account = store.get_by_id(account_id)
        assert account.display_name == "Alice"
        assert account.is_admin
        assert account.permissions == ["sessions:sweep"]

    def test_count_accounts(self, store: AccountStore) -> None:
        assert store.count_accounts() == 0
        _new_account(store, "a@x.com")
        _new_account(store, "b@x.com")
        assert store.count_accounts() == 2


class TestLockoutPrimitives:
    def test_failed_login_increments_and_locks_at_threshold(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        until = datetime.now(timezone.utc) + timedelta(minutes=15)
        for expected in (1, 2):
            attempts, locked = store.register_failed_login(account_id, 3, until)
            assert attempts == expected
            assert locked is None
        attempts, locked = store.register_failed_login(account_id, 3, until)
        assert attempts == 3
        assert locked == until

    def test_existing_lock_deadline_is_not_extended(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        first = datetime.now(timezone.utc) + timedelta(minutes=15)
        store.register_failed_login(account_id, 1, first)
        _, locked = store.register_failed_login(account_id, 1, first + timedelta(minutes=5))
        assert locked == first

    def test_clear_expired_lock_is_compare_and_set(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        until = datetime.now(timezone.utc) - timedelta(minutes=1)
        store.register_failed_login(account_id, 1, until)
        assert not store.clear_expired_lock(account_id, until + timedelta(seconds=1))
        assert store.clear_expired_lock(account_id, until)
        account = store.get_by_id(account_id)
        assert account.locked_until is None
        assert account.failed_login_attempts == 0

    def test_successful_login_refused_while_locked(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        store.register_failed_login(account_id, 1, now + timedelta(minutes=15))
        assert not store.record_successful_login(account_id, "203.0.113.7", now)
        assert store.get_by_id(account_id).login_count == 0

    def test_successful_login_resets_counters(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        store.register_failed_login(account_id, 5, now + timedelta(minutes=15))
        assert store.record_successful_login(account_id, "203.0.113.7", now)
        account = store.get_by_id(account_id)
        assert account.failed_login_attempts == 0
        assert account.login_count == 1
        assert account.last_login_ip == "203.0.113.7"
        assert account.last_login == now

    def test_reset_lockout(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        store.register_failed_login(account_id, 1, datetime.now(timezone.utc) + timedelta(minutes=15))
        assert store.reset_lockout(account_id)
        assert not store.get_by_id(account_id).is_locked()


class TestRefreshTokenPrimitives:
    def test_swap_requires_current_digest(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        expires = datetime.now(timezone.utc) + timedelta(days=7)
        store.set_refresh_token(account_id, "old", expires)
        assert store.swap_refresh_token(account_id, "old", "new", expires)
        assert not store.swap_refresh_token(account_id, "old", "newer", expires)
        assert store.get_by_id(account_id).refresh_token_hash == "new"

    def test_clear_refresh_token(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        store.set_refresh_token(account_id, "digest", datetime.now(timezone.utc) + timedelta(days=7))
        store.clear_refresh_token(account_id)
        account = store.get_by_id(account_id)
        assert account.refresh_token_hash is None
        assert account.refresh_token_expires_at is None


class TestExternalIdentities:
    def test_lookup_by_identity(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        store.link_external_identity(
            account_id, ExternalIdentity(provider="github", external_id="123", username="octo"), email_verified=True
        )
        account = store.get_by_external_identity("github", "123")
        assert account is not None
        assert account.id == account_id
        assert account.linked_providers == ["github"]
        assert account.is_email_verified
        assert account.external_identities["github"].username == "octo"

    def test_same_identity_cannot_link_twice(self, store: AccountStore) -> None:
        first = _new_account(store, "a@x.com")
        second = _new_account(store, "b@x.com")
        identity = ExternalIdentity(provider="github", external_id="123")
        store.link_external_identity(first, identity, email_verified=False)
        with pytest.raises(IntegrityError):
            store.link_external_identity(second, identity, email_verified=False)

    def test_provider_login_keeps_refresh_token_when_omitted(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        store.link_external_identity(
            account_id,
            ExternalIdentity(provider="google", external_id="g-1", access_token="at1", refresh_token="rt1"),
            email_verified=True,
        )
        store.record_provider_login(
            account_id, "google", access_token="at2", refresh_token=None, token_expires_at=None,
            now=datetime.now(timezone.utc),
        )
        account = store.get_by_id(account_id)
        identity = account.external_identities["google"]
        assert identity.access_token == "at2"
        assert identity.refresh_token == "rt1"
        assert account.login_count == 1
        assert account.last_oauth_provider == "google"


class TestSessions:
    def test_upsert_is_idempotent_per_session_id(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        assert store.upsert_session(account_id, _session("s1", now - timedelta(hours=1)))
        assert not store.upsert_session(account_id, _session("s1", now))
        sessions = store.get_sessions(account_id)
        assert len(sessions) == 1
        assert sessions[0].last_activity == now

    def test_sessions_are_returned_oldest_first(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        for sid in ("s1", "s2", "s3"):
            store.upsert_session(account_id, _session(sid, now))
        assert [s.session_id for s in store.get_sessions(account_id)] == ["s1", "s2", "s3"]
        assert store.list_account_ids_with_sessions() == [account_id]

    def test_conditional_delete_spares_touched_session(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        old = now - timedelta(days=40)
        store.upsert_session(account_id, _session("stale", old))
        store.upsert_session(account_id, _session("touched", old))
        # A request touches "touched" after the reaper decided it was stale.
        store.touch_session(account_id, "touched", now)
        removed = store.delete_sessions_if_stale(account_id, ["stale", "touched"], now - timedelta(days=30))
        assert removed == 1
        assert [s.session_id for s in store.get_sessions(account_id)] == ["touched"]

    def test_inactive_session_counts_as_stale(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        store.upsert_session(account_id, _session("off", now, active=False))
        assert store.delete_sessions_if_stale(account_id, ["off"], now - timedelta(days=30)) == 1

    def test_touch_unknown_session_returns_false(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        assert not store.touch_session(account_id, "missing", datetime.now(timezone.utc))

    def test_delete_all_sessions(self, store: AccountStore) -> None:
        account_id = _new_account(store)
        now = datetime.now(timezone.utc)
        store.upsert_session(account_id, _session("s1", now))
        store.upsert_session(account_id, _session("s2", now))
        assert store.delete_all_sessions(account_id) == 2
        assert store.get_sessions(account_id) == []


class TestTimestampEncoding:
    def test_whole_second_timestamps_keep_fraction(self) -> None:
        """Fixed-width encoding keeps SQL string comparison chronological."""
        whole = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        later = whole + timedelta(microseconds=1)
        assert _to_db(whole) == "2024-01-01T12:00:00.000000+00:00"
        assert _to_db(whole) < _to_db(later)
