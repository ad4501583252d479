from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from src.copilot.clock import Clock, utcnow
from src.copilot.config import settings
from src.copilot.errors import ConflictError, SessionBusyError, SessionNotFoundError
from src.copilot.services.conversation.locks import SessionLockRegistry, session_locks
from src.copilot.services.scheduling import PeriodicTask
from src.copilot.services.sessions.store import SessionStore, session_store

logger = logging.getLogger(__name__)


@dataclass
class ReaperReport:
    expired: int = 0
    purged: int = 0
    skipped: int = 0


class SessionReaper:
    """Soft-expires inactive sessions, then purges them after a grace window.

    Each expiry or purge runs while holding the session's turn lock, so a
    session with a turn or generation in flight is skipped for this pass.
    Expiry keeps updated_at, the session's last activity.
    """

    def __init__(
        self,
        store: SessionStore,
        locks: SessionLockRegistry,
        *,
        ttl: Optional[timedelta] = None,
        purge_after: Optional[timedelta] = None,
        batch_size: Optional[int] = None,
        interval_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._locks = locks
        self._ttl = ttl or timedelta(days=settings.session_ttl_days)
        self._purge_after = purge_after or timedelta(days=settings.session_purge_after_days)
        self._batch_size = batch_size or settings.reaper_batch_size
        self._interval = interval_seconds or settings.reaper_interval_seconds
        self._clock = clock
        self._task: Optional[PeriodicTask] = None

    def run_once(self, now: Optional[datetime] = None) -> ReaperReport:
        now = now or self._clock()
        report = ReaperReport()
        self._expire_stale(now - self._ttl, now, report)
        self._purge_expired(now - self._purge_after, report)
        if report.expired or report.purged or report.skipped:
            logger.info(
                "Reaper pass: expired=%s purged=%s skipped=%s",
                report.expired,
                report.purged,
                report.skipped,
            )
        return report

    def _expire_stale(self, cutoff: datetime, now: datetime, report: ReaperReport) -> None:
        # Expired sessions drop out of the query; only skipped ones shift the window.
        offset = 0
        while True:
            batch = self._store.list_stale(cutoff, limit=self._batch_size, offset=offset)
            for session in batch:
                try:
                    with self._locks.exclusive(session.id):
                        self._store.expire(session, now)
                except SessionBusyError:
                    report.skipped += 1
                    offset += 1
                    continue
                except (ConflictError, SessionNotFoundError):
                    # Touched since the listing; it is no longer a candidate.
                    report.skipped += 1
                    continue
                report.expired += 1
                logger.info("Soft-expired session %s (last updated %s)", session.id, session.updated_at.isoformat())
            if len(batch) < self._batch_size:
                return

    def _purge_expired(self, cutoff: datetime, report: ReaperReport) -> None:
        offset = 0
        while True:
            batch = self._store.list_expired(cutoff, limit=self._batch_size, offset=offset)
            for session in batch:
                try:
                    with self._locks.exclusive(session.id):
                        self._store.delete(session.id)
                except SessionBusyError:
                    report.skipped += 1
                    offset += 1
                    continue
                report.purged += 1
                logger.info("Purged session %s (expired %s)", session.id, session.expired_at.isoformat())
            if len(batch) < self._batch_size:
                return

    def start(self) -> None:
        if self._task is None:
            self._task = PeriodicTask("session-reaper", self._interval, self.run_once)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()


session_reaper = SessionReaper(session_store, session_locks)
