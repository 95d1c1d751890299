"""
auth/reaper.py -- Periodic removal of inactive sessions.

A sweep walks every account that holds at least one session, recomputes the
active set with SessionRegistry.list_active() and deletes the rest. Deletion
is conditional on the row still being stale (see
AccountStore.delete_sessions_if_stale), so a user who touches a session while
the sweep runs keeps it.

Only one sweep runs at a time. A trigger that arrives while a sweep is in
progress (timer and admin endpoint, or two admin calls) returns immediately
with SweepStats(skipped=True) instead of queueing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from auth.models import SweepStats

if TYPE_CHECKING:
    from auth.sessions import SessionRegistry

logger = logging.getLogger("turnstile.auth.reaper")


class SessionReaper:
    """Sweep stale sessions across all accounts.

    Usage:
        reaper = SessionReaper(registry)
        stats = reaper.sweep()
        task = asyncio.create_task(reaper.run_forever(6 * 60 * 60))
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self.store = registry.store
        self.last_stats: SweepStats | None = None
        self._running = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def sweep(self) -> SweepStats:
        """Run one pass. Never raises for a single account's failure."""
        now = datetime.now(timezone.utc)
        if not self._running.acquire(blocking=False):
            logger.info("Session sweep already in progress; skipping")
            return SweepStats(started_at=now, finished_at=now, skipped=True)
        try:
            stats = SweepStats(started_at=now)
            cutoff = now - self.registry.expiry_window
            for account_id in self.store.list_account_ids_with_sessions():
                stats.accounts_scanned += 1
                try:
                    removed = self._sweep_account(account_id, now, cutoff)
                except Exception:
                    stats.errors += 1
                    logger.exception("Session sweep failed for account %s", account_id)
                    continue
                if removed:
                    stats.sessions_removed += removed
                    stats.accounts_updated += 1
            stats.finished_at = datetime.now(timezone.utc)
            self.last_stats = stats
            logger.info(
                "Session sweep: %d accounts scanned, %d sessions removed from %d accounts, %d errors",
                stats.accounts_scanned,
                stats.sessions_removed,
                stats.accounts_updated,
                stats.errors,
            )
            return stats
        finally:
            self._running.release()

    def _sweep_account(self, account_id: int, now: datetime, cutoff: datetime) -> int:
        account = self.store.get_by_id(account_id)
        if account is None:
            return 0
        active_ids = {s.session_id for s in self.registry.list_active(account, now=now)}
        stale_ids = [s.session_id for s in account.sessions if s.session_id not in active_ids]
        if not stale_ids:
            return 0
        return self.store.delete_sessions_if_stale(account_id, stale_ids, cutoff)

    async def run_forever(self, interval: float) -> None:
        """Sweep every `interval` seconds until cancelled.

        The sweep itself runs in a worker thread. CancelledError raised by
        task.cancel() at shutdown propagates out of asyncio.sleep.
        """
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Scheduled session sweep failed")
