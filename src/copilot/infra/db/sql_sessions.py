from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from src.copilot.domain.models.conversation_session import ConversationSession
from src.copilot.domain.models.generation import GenerationTransaction
from src.copilot.errors import ConflictError, SessionNotFoundError, TransientStorageError
from src.copilot.infra.db.models import GenerationTransactionORM, SessionORM
from src.copilot.infra.db.repositories import GenerationTransactionRepository, SessionRepository
from src.copilot.infra.db.session import SessionFactory

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(getattr(exc, "connection_invalidated", False))


class _SqlRepositoryBase:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _run(self, operation: Callable[..., T]) -> T:
        """Run ``operation(db)`` in its own ORM session.

        Connection-level failures are reported as TransientStorageError so the
        session store can retry them; other database errors propagate.
        """

        db = self._session_factory()
        try:
            return operation(db)
        except DBAPIError as exc:
            db.rollback()
            if _is_transient(exc):
                logger.warning("Transient database error: %s", exc)
                raise TransientStorageError(str(exc)) from exc
            raise
        finally:
            db.close()


class SqlSessionRepository(_SqlRepositoryBase, SessionRepository):
    """SQL-backed SessionRepository.

    Compare-and-swap is a single conditional UPDATE on (id, revision), so two
    writers racing from the same revision cannot both succeed.
    """

    def insert(self, session: ConversationSession) -> None:
        def _insert(db) -> None:
            db.add(SessionORM.from_domain(session))
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValueError(f"Session {session.id} already exists") from exc

        self._run(_insert)

    def get(self, session_id: str) -> Optional[ConversationSession]:
        def _get(db) -> Optional[ConversationSession]:
            orm = db.get(SessionORM, session_id)
            return orm.to_domain() if orm is not None else None

        return self._run(_get)

    def compare_and_swap(self, session: ConversationSession, *, expected_revision: int) -> None:
        def _cas(db) -> None:
            stmt = (
                update(SessionORM)
                .where(SessionORM.id == session.id, SessionORM.revision == expected_revision)
                .values(**SessionORM.column_values(session))
            )
            result = db.execute(stmt)
            if result.rowcount == 1:
                db.commit()
                return
            db.rollback()
            current = db.execute(select(SessionORM.revision).where(SessionORM.id == session.id)).scalar_one_or_none()
            if current is None:
                raise SessionNotFoundError(session.id)
            raise ConflictError(session.id, expected_revision, current)

        self._run(_cas)

    def delete(self, session_id: str) -> bool:
        def _delete(db) -> bool:
            orm = db.get(SessionORM, session_id)
            if orm is None:
                return False
            db.delete(orm)
            db.commit()
            return True

        return self._run(_delete)

    def list_by_owner(
        self,
        owner_id: str,
        *,
        limit: int,
        offset: int = 0,
        include_expired: bool = False,
    ) -> List[ConversationSession]:
        def _list(db) -> List[ConversationSession]:
            query = select(SessionORM).where(SessionORM.owner_id == owner_id)
            if not include_expired:
                query = query.where(SessionORM.expired_at.is_(None))
            query = query.order_by(SessionORM.updated_at.desc()).offset(offset).limit(limit)
            return [orm.to_domain() for orm in db.scalars(query)]

        return self._run(_list)

    def list_stale(self, updated_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        def _list(db) -> List[ConversationSession]:
            query = (
                select(SessionORM)
                .where(SessionORM.expired_at.is_(None), SessionORM.updated_at < updated_before)
                .order_by(SessionORM.updated_at)
                .offset(offset)
                .limit(limit)
            )
            return [orm.to_domain() for orm in db.scalars(query)]

        return self._run(_list)

    def list_expired(self, expired_before: datetime, *, limit: int, offset: int = 0) -> List[ConversationSession]:
        def _list(db) -> List[ConversationSession]:
            query = (
                select(SessionORM)
                .where(SessionORM.expired_at.is_not(None), SessionORM.expired_at < expired_before)
                .order_by(SessionORM.expired_at)
                .offset(offset)
                .limit(limit)
            )
            return [orm.to_domain() for orm in db.scalars(query)]

        return self._run(_list)


class SqlGenerationTransactionRepository(_SqlRepositoryBase, GenerationTransactionRepository):
    def get(self, idempotency_key: str) -> Optional[GenerationTransaction]:
        def _get(db) -> Optional[GenerationTransaction]:
            orm = db.get(GenerationTransactionORM, idempotency_key)
            return orm.to_domain() if orm is not None else None

        return self._run(_get)

    def save(self, transaction: GenerationTransaction) -> None:
        def _save(db) -> None:
            existing = db.get(GenerationTransactionORM, transaction.idempotency_key)
            if existing is None:
                db.add(GenerationTransactionORM.from_domain(transaction))
            else:
                existing.update_from_domain(transaction)
            db.commit()

        self._run(_save)
