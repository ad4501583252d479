from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from src.copilot.domain.models.conversation_session import ConversationSession
from src.copilot.domain.models.generation import GenerationTransaction


class SessionRepository(ABC):
    """Row/document store for conversation sessions.

    Implementations raise ``TransientStorageError`` for failures worth
    retrying and let the session store translate anything else.
    """

    @abstractmethod
    def insert(self, session: ConversationSession) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> Optional[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def compare_and_swap(self, session: ConversationSession, *, expected_revision: int) -> None:
        """Replace the stored session only if its revision equals ``expected_revision``.

        Raises ``ConflictError`` when the revision moved and
        ``SessionNotFoundError`` when the row no longer exists.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int,
        offset: int = 0,
        include_expired: bool = False,
    ) -> List[ConversationSession]:
        """Return the owner's sessions ordered by ``updated_at`` descending."""
        raise NotImplementedError

    @abstractmethod
    def list_stale(self, updated_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        """Non-expired sessions last updated before ``updated_before``."""
        raise NotImplementedError

    @abstractmethod
    def list_expired(self, expired_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        """Soft-expired sessions whose ``expired_at`` is before ``expired_before``."""
        raise NotImplementedError


class GenerationTransactionRepository(ABC):
    @abstractmethod
    def get(self, idempotency_key: str) -> Optional[GenerationTransaction]:
        raise NotImplementedError

    @abstractmethod
    def save(self, transaction: GenerationTransaction) -> None:
        raise NotImplementedError
