from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional

from src.copilot.domain.models.conversation_session import ConversationSession
from src.copilot.domain.models.generation import GenerationTransaction
from src.copilot.errors import ConflictError, SessionNotFoundError
from src.copilot.infra.db.repositories import GenerationTransactionRepository, SessionRepository


class InMemorySessionRepository(SessionRepository):
    """Process-local session storage for tests and single-node development.

    Sessions are deep-copied on the way in and out so callers never share
    mutable state with the store; the lock makes compare-and-swap atomic.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ConversationSession] = {}
        self._lock = Lock()

    def insert(self, session: ConversationSession) -> None:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already exists")
            self._sessions[session.id] = session.model_copy(deep=True)

    def get(self, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            stored = self._sessions.get(session_id)
            return stored.model_copy(deep=True) if stored is not None else None

    def compare_and_swap(self, session: ConversationSession, *, expected_revision: int) -> None:
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is None:
                raise SessionNotFoundError(session.id)
            if stored.revision != expected_revision:
                raise ConflictError(session.id, expected_revision, stored.revision)
            self._sessions[session.id] = session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int,
        offset: int = 0,
        include_expired: bool = False,
    ) -> List[ConversationSession]:
        with self._lock:
            matches = [
                s
                for s in self._sessions.values()
                if s.owner_id == owner_id and (include_expired or not s.is_expired)
            ]
            matches.sort(key=lambda s: s.updated_at, reverse=True)
            return [s.model_copy(deep=True) for s in matches[offset : offset + limit]]

    def list_stale(self, updated_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        with self._lock:
            matches = [s for s in self._sessions.values() if not s.is_expired and s.updated_at < updated_before]
            matches.sort(key=lambda s: s.updated_at)
            return [s.model_copy(deep=True) for s in matches[offset : offset + limit]]

    def list_expired(self, expired_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        with self._lock:
            matches = [
                s
                for s in self._sessions.values()
                if s.expired_at is not None and s.expired_at < expired_before
            ]
            matches.sort(key=lambda s: s.expired_at)  # type: ignore[arg-type, return-value]
            return [s.model_copy(deep=True) for s in matches[offset : offset + limit]]


class InMemoryGenerationTransactionRepository(GenerationTransactionRepository):
    def __init__(self) -> None:
        self._transactions: Dict[str, GenerationTransaction] = {}
        self._lock = Lock()

    def get(self, idempotency_key: str) -> Optional[GenerationTransaction]:
        with self._lock:
            stored = self._transactions.get(idempotency_key)
            return stored.model_copy(deep=True) if stored is not None else None

    def save(self, transaction: GenerationTransaction) -> None:
        with self._lock:
            self._transactions[transaction.idempotency_key] = transaction.model_copy(deep=True)


session_repository: SessionRepository = InMemorySessionRepository()
generation_transaction_repository: GenerationTransactionRepository = InMemoryGenerationTransactionRepository()
