from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Set

from src.copilot.errors import GenerationInProgressError, SessionBusyError


class SessionLockRegistry:
    """Non-blocking per-session locks.

    Turn locks enforce the "one message turn per session" rule with a reject
    policy: a second concurrent turn fails fast with SessionBusyError instead
    of queueing. Generation locks additionally guarantee at most one
    generation run per session. Unrelated sessions never contend.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._turns: Set[str] = set()
        self._generations: Set[str] = set()

    @contextmanager
    def turn(self, session_id: str) -> Iterator[None]:
        with self._guard:
            if session_id in self._turns:
                raise SessionBusyError(session_id)
            self._turns.add(session_id)
        try:
            yield
        finally:
            with self._guard:
                self._turns.discard(session_id)

    @contextmanager
    def generation(self, session_id: str) -> Iterator[None]:
        with self._guard:
            if session_id in self._generations:
                raise GenerationInProgressError(session_id)
            self._generations.add(session_id)
        try:
            yield
        finally:
            with self._guard:
                self._generations.discard(session_id)

    @contextmanager
    def exclusive(self, session_id: str) -> Iterator[None]:
        """Hold the turn lock for maintenance work; busy if a turn or generation runs."""

        with self._guard:
            if session_id in self._turns or session_id in self._generations:
                raise SessionBusyError(session_id)
            self._turns.add(session_id)
        try:
            yield
        finally:
            with self._guard:
                self._turns.discard(session_id)

    def is_generating(self, session_id: str) -> bool:
        with self._guard:
            return session_id in self._generations

    def is_locked(self, session_id: str) -> bool:
        with self._guard:
            return session_id in self._turns or session_id in self._generations


session_locks = SessionLockRegistry()
