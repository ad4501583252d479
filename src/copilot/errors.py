from __future__ import annotations

from typing import Optional
from uuid import uuid4


class CopilotError(Exception):
    """Base class for errors raised by the course copilot services."""


class InvalidRequestError(CopilotError):
    """Malformed request at the session boundary; nothing was mutated."""


class SessionNotFoundError(CopilotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class SessionExpiredError(CopilotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} has expired")
        self.session_id = session_id


class ConflictError(CopilotError):
    """Optimistic-lock miss: the stored revision moved since the caller loaded it."""

    def __init__(self, session_id: str, expected_revision: int, actual_revision: Optional[int] = None) -> None:
        super().__init__(
            f"Session {session_id} was modified concurrently "
            f"(expected revision {expected_revision}, found {actual_revision})"
        )
        self.session_id = session_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class TransientStorageError(CopilotError):
    """Storage failure that may succeed when retried (lost connection, lock timeout)."""


class StorageError(CopilotError):
    """Non-recoverable storage failure, tagged with a correlation id for support."""

    def __init__(self, message: str, *, correlation_id: Optional[str] = None) -> None:
        self.correlation_id = correlation_id or uuid4().hex
        super().__init__(f"{message} (correlation_id={self.correlation_id})")


class SessionBusyError(CopilotError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Another message is already being processed for session {session_id}")
        self.session_id = session_id


class GenerationInProgressError(CopilotError):
    def __init__(self, session_id: Optional[str] = None) -> None:
        suffix = f" for session {session_id}" if session_id else ""
        super().__init__(f"Course generation is in progress{suffix}")
        self.session_id = session_id


class InvalidTransitionError(InvalidRequestError):
    def __init__(self, stage: str, event: str) -> None:
        super().__init__(f"Cannot apply {event} while the session is {stage}")
        self.stage = stage
        self.event = event


class AIUnavailableError(CopilotError):
    """The AI gateway kept failing after the retry policy gave up.

    The session has already been persisted (with its stage moved to Failed
    when there was no draft to fall back to) by the time this is raised.
    """

    def __init__(self, session_id: str, stage: str, reason: str) -> None:
        super().__init__(f"AI service unavailable: {reason}")
        self.session_id = session_id
        self.stage = stage
        self.reason = reason
