from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from src.copilot.clock import Clock, utcnow
from src.copilot.config import settings
from src.copilot.domain.models.conversation_session import (
    ConversationSession,
    SessionSeed,
    SessionStage,
    SessionSummary,
)
from src.copilot.errors import ConflictError, InvalidRequestError, SessionNotFoundError
from src.copilot.infra.db import inmemory as inmemory_repos
from src.copilot.infra.db.repositories import SessionRepository
from src.copilot.services.retry import RetryPolicy, call_storage, storage_retry_policy

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPORT_VERSION = "1.0"


class SessionStore:
    """Durable CRUD and optimistic-concurrency persistence for sessions.

    ``save`` only succeeds when the caller's session still carries the
    revision currently stored; the persisted copy (revision + 1) is returned
    and must be used for any further saves.
    """

    def __init__(
        self,
        repository: SessionRepository,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
        ttl: Optional[timedelta] = None,
    ) -> None:
        self._repository = repository
        self._retry_policy = retry_policy or storage_retry_policy()
        self._clock = clock
        self._ttl = ttl or timedelta(days=settings.session_ttl_days)

    def use_repository(self, repository: SessionRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> SessionRepository:
        return self._repository

    def create(self, owner_id: str, initial_data: Optional[SessionSeed] = None) -> ConversationSession:
        if not owner_id:
            raise InvalidRequestError("owner_id is required")
        seed = initial_data or SessionSeed()
        now = self._clock()
        session = ConversationSession(
            id=uuid4().hex,
            owner_id=owner_id,
            title=seed.title,
            messages=list(seed.messages),
            structure_draft=seed.structure_draft,
            stage=SessionStage.INITIAL,
            revision=0,
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
        )
        self._call(lambda: self._repository.insert(session), "insert session")
        logger.info("Created session %s for owner %s", session.id, owner_id)
        return session.model_copy(deep=True)

    def load(self, session_id: str) -> ConversationSession:
        session = self._call(lambda: self._repository.get(session_id), "load session")
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def load_for_owner(self, session_id: str, owner_id: str) -> ConversationSession:
        """Load a session, reporting other owners' sessions as not found."""

        session = self.load(session_id)
        if session.owner_id != owner_id:
            raise SessionNotFoundError(session_id)
        return session

    def save(self, session: ConversationSession) -> ConversationSession:
        now = self._clock()
        return self._swap(session, {"updated_at": now, "expires_at": now + self._ttl}, "save session")

    def expire(self, session: ConversationSession, at: datetime) -> ConversationSession:
        """Soft-expire a session, keeping updated_at as its last activity."""

        return self._swap(session, {"expired_at": at}, "expire session")

    def _swap(self, session: ConversationSession, changes: Dict[str, Any], description: str) -> ConversationSession:
        expected = session.revision
        updated = session.model_copy(update={**changes, "revision": expected + 1}, deep=True)
        try:
            self._call(
                lambda: self._repository.compare_and_swap(updated, expected_revision=expected),
                description,
            )
        except ConflictError:
            logger.info("Revision conflict on %s %s at revision %s", description, session.id, expected)
            raise
        return updated

    def delete(self, session_id: str) -> None:
        removed = self._call(lambda: self._repository.delete(session_id), "delete session")
        if removed:
            logger.info("Deleted session %s", session_id)

    def list_by_owner(
        self,
        owner_id: str,
        limit: int = 20,
        offset: int = 0,
        *,
        include_expired: bool = False,
    ) -> List[SessionSummary]:
        if limit <= 0 or offset < 0:
            raise InvalidRequestError("limit must be positive and offset non-negative")
        sessions = self._call(
            lambda: self._repository.list_by_owner(
                owner_id, limit=limit, offset=offset, include_expired=include_expired
            ),
            "list sessions",
        )
        return [s.to_summary() for s in sessions]

    def list_stale(self, updated_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        return self._call(
            lambda: self._repository.list_stale(updated_before, limit=limit, offset=offset),
            "list stale sessions",
        )

    def list_expired(self, expired_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        return self._call(
            lambda: self._repository.list_expired(expired_before, limit=limit, offset=offset),
            "list expired sessions",
        )

    def export(self, session_id: str, owner_id: str) -> Dict[str, Any]:
        """Return a self-contained export payload for backup or transfer."""

        session = self.load_for_owner(session_id, owner_id)
        payload = session.model_dump(mode="json")
        payload["export_version"] = EXPORT_VERSION
        payload["exported_at"] = self._clock().isoformat()
        payload["message_count"] = len(session.messages)
        return payload

    def _call(self, operation: Callable[[], T], description: str) -> T:
        return call_storage(self._retry_policy, operation, description)


session_store = SessionStore(inmemory_repos.session_repository)
