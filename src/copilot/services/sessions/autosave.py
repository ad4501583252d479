from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import RLock
from typing import Callable, Dict, List, Optional

from src.copilot.clock import Clock, utcnow
from src.copilot.config import settings
from src.copilot.domain.models.conversation_session import ConversationSession
from src.copilot.errors import ConflictError, SessionBusyError, SessionNotFoundError, StorageError
from src.copilot.services.conversation.locks import SessionLockRegistry, session_locks
from src.copilot.services.scheduling import PeriodicTask
from src.copilot.services.sessions.store import SessionStore, session_store

logger = logging.getLogger(__name__)


class AutoSaveStatus(str, Enum):
    SAVED = "saved"
    STALE = "stale"
    MISSING = "missing"
    FAILED = "failed"


@dataclass
class AutoSaveOutcome:
    session_id: str
    status: AutoSaveStatus
    revision: Optional[int] = None
    # Newest stored copy when the working copy went stale.
    latest: Optional[ConversationSession] = None
    error: Optional[str] = None


@dataclass
class AutoSaveState:
    session_id: str
    tracked: bool
    dirty: bool = False
    stale: bool = False
    revision: Optional[int] = None
    latest_revision: Optional[int] = None


@dataclass
class _WorkingCopy:
    session: ConversationSession
    touched_at: datetime
    dirty: bool = False
    stale: bool = False
    latest: Optional[ConversationSession] = None


class AutoSaveCoordinator:
    """Periodically persists dirty in-memory working copies of sessions.

    A revision conflict never overwrites the newer stored data: the
    coordinator reloads it, marks the working copy stale and reports a
    ``stale`` outcome. The caller decides what to do via ``resolve``.
    Clean copies untouched for ``idle_after`` are dropped on the next tick.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        interval_seconds: Optional[float] = None,
        idle_after: Optional[timedelta] = None,
        locks: Optional[SessionLockRegistry] = None,
        on_stale: Optional[Callable[[AutoSaveOutcome], None]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._interval = interval_seconds or settings.autosave_interval_seconds
        self._idle_after = idle_after or timedelta(minutes=settings.autosave_idle_minutes)
        self._locks = locks
        self._on_stale = on_stale
        self._clock = clock
        self._copies: Dict[str, _WorkingCopy] = {}
        self._guard = RLock()
        self._task: Optional[PeriodicTask] = None

    def track(self, session: ConversationSession) -> None:
        with self._guard:
            self._copies[session.id] = _WorkingCopy(session=session.model_copy(deep=True), touched_at=self._clock())

    def observe(self, saved: ConversationSession) -> None:
        """Adopt a copy someone else just saved, unless local edits are pending.

        Pending or stale edits are kept; the next tick reports them stale
        against the newer revision.
        """

        with self._guard:
            copy = self._copies.get(saved.id)
            if copy is not None and (copy.dirty or copy.stale):
                return
            self.track(saved)

    def update(self, session: ConversationSession) -> None:
        """Replace the working copy and mark it for the next tick."""

        with self._guard:
            copy = self._copies.get(session.id)
            if copy is None:
                raise SessionNotFoundError(session.id)
            if copy.stale:
                raise ConflictError(session.id, session.revision, copy.latest.revision if copy.latest else None)
            copy.session = session.model_copy(deep=True)
            copy.dirty = True
            copy.touched_at = self._clock()

    def untrack(self, session_id: str) -> None:
        with self._guard:
            self._copies.pop(session_id, None)

    def working_copy(self, session_id: str) -> Optional[ConversationSession]:
        with self._guard:
            copy = self._copies.get(session_id)
            return copy.session.model_copy(deep=True) if copy else None

    def is_stale(self, session_id: str) -> bool:
        with self._guard:
            copy = self._copies.get(session_id)
            return bool(copy and copy.stale)

    def state(self, session_id: str) -> AutoSaveState:
        with self._guard:
            copy = self._copies.get(session_id)
            if copy is None:
                return AutoSaveState(session_id, tracked=False)
            return AutoSaveState(
                session_id,
                tracked=True,
                dirty=copy.dirty,
                stale=copy.stale,
                revision=copy.session.revision,
                latest_revision=copy.latest.revision if copy.latest else None,
            )

    def resolve(self, session_id: str) -> ConversationSession:
        """Adopt the newer stored revision as the working copy, dropping local edits."""

        with self._guard:
            copy = self._copies.get(session_id)
            if copy is None:
                raise SessionNotFoundError(session_id)
            latest = copy.latest or self._store.load(session_id)
            self.track(latest)
            return latest.model_copy(deep=True)

    def tick(self) -> List[AutoSaveOutcome]:
        outcomes: List[AutoSaveOutcome] = []
        idle_cutoff = self._clock() - self._idle_after
        with self._guard:
            for session_id, copy in list(self._copies.items()):
                if not copy.dirty and not copy.stale and copy.touched_at < idle_cutoff:
                    del self._copies[session_id]
                    logger.debug("Stopped tracking idle session %s", session_id)
                    continue
                if not copy.dirty or copy.stale:
                    continue
                try:
                    outcomes.append(self._save_locked(session_id, copy))
                except SessionBusyError:
                    # The running turn saves the session itself.
                    continue
        for outcome in outcomes:
            if outcome.status == AutoSaveStatus.STALE and self._on_stale is not None:
                self._on_stale(outcome)
        return outcomes

    def _save_locked(self, session_id: str, copy: _WorkingCopy) -> AutoSaveOutcome:
        if self._locks is None:
            return self._save(session_id, copy)
        with self._locks.exclusive(session_id):
            return self._save(session_id, copy)

    def _save(self, session_id: str, copy: _WorkingCopy) -> AutoSaveOutcome:
        try:
            saved = self._store.save(copy.session)
        except ConflictError:
            try:
                latest = self._store.load(session_id)
            except SessionNotFoundError:
                del self._copies[session_id]
                return AutoSaveOutcome(session_id, AutoSaveStatus.MISSING)
            copy.stale = True
            copy.latest = latest
            logger.warning(
                "Autosave of session %s skipped: revision %s is stale, store has %s",
                session_id,
                copy.session.revision,
                latest.revision,
            )
            return AutoSaveOutcome(session_id, AutoSaveStatus.STALE, revision=latest.revision, latest=latest)
        except SessionNotFoundError:
            del self._copies[session_id]
            logger.info("Autosave dropped session %s: no longer stored", session_id)
            return AutoSaveOutcome(session_id, AutoSaveStatus.MISSING)
        except StorageError as exc:
            logger.error("Autosave of session %s failed: %s", session_id, exc)
            return AutoSaveOutcome(session_id, AutoSaveStatus.FAILED, revision=copy.session.revision, error=str(exc))
        copy.session = saved
        copy.dirty = False
        logger.debug("Autosaved session %s at revision %s", session_id, saved.revision)
        return AutoSaveOutcome(session_id, AutoSaveStatus.SAVED, revision=saved.revision)

    def start(self) -> None:
        if self._task is None:
            self._task = PeriodicTask("autosave", self._interval, self.tick)
        self._task.start()

    def stop(self) -> None:
        if self._task is not None:
            self._task.stop()


session_autosave = AutoSaveCoordinator(session_store, locks=session_locks)
