from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar

from src.copilot.clock import Clock, utcnow
from src.copilot.domain.models.course_structure import CourseStructureDraft
from src.copilot.domain.models.generation import (
    EntityRef,
    EntityType,
    GenerationFailure,
    GenerationResult,
    GenerationStatus,
    GenerationTransaction,
)
from src.copilot.infra.db import inmemory as inmemory_repos
from src.copilot.infra.db.repositories import GenerationTransactionRepository
from src.copilot.errors import StorageError
from src.copilot.services.generation.entity_host import EntityHost, get_entity_host_from_env
from src.copilot.services.retry import RetryPolicy, call_storage, storage_retry_policy

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPLETION_STEP = "completion record"


def idempotency_key(session_id: str, draft: CourseStructureDraft) -> str:
    """Deterministic key for one (session, draft) materialization."""

    return f"{session_id}:{draft.content_hash()}"


class _KeyedLocks:
    """One lock per idempotency key, dropped once no run holds or awaits it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class _CreationFailed(Exception):
    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(str(cause))
        self.step = step
        self.cause = cause


class GenerationPipeline:
    """Transactional creation of the course/section/lesson entity tree.

    A run either completes or leaves nothing behind: on any creation failure,
    or when the Complete record cannot be written, the entities recorded so
    far are deleted in reverse order. Runs are keyed by an idempotency key;
    once a key has a Complete transaction, later runs return it without
    touching the entity host.
    """

    def __init__(
        self,
        *,
        entity_host: EntityHost,
        transactions: GenerationTransactionRepository,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._entity_host = entity_host
        self._transactions = transactions
        self._retry_policy = retry_policy or storage_retry_policy()
        self._clock = clock
        self._key_locks = _KeyedLocks()

    def use_repository(self, transactions: GenerationTransactionRepository) -> None:
        self._transactions = transactions

    @property
    def entity_host(self) -> EntityHost:
        return self._entity_host

    def run(
        self,
        draft: CourseStructureDraft,
        *,
        owner_id: str,
        idempotency_key: str,
        session_id: Optional[str] = None,
    ) -> GenerationTransaction:
        """Materialize ``draft`` once per key.

        Raises StorageError when the run cannot even be recorded as started;
        nothing has been created in that case.
        """

        with self._key_locks.hold(idempotency_key):
            existing = self._call(lambda: self._transactions.get(idempotency_key), "load generation record")
            if existing is not None and existing.status == GenerationStatus.COMPLETE:
                logger.info("Generation %s already complete; returning cached result", idempotency_key)
                return existing

            transaction = GenerationTransaction(
                idempotency_key=idempotency_key,
                session_id=session_id or idempotency_key.split(":", 1)[0],
                owner_id=owner_id,
                status=GenerationStatus.RUNNING,
                started_at=self._clock(),
            )
            self._record(transaction, "record generation start")
            logger.info(
                "Generation %s started: %s sections, %s lessons",
                idempotency_key,
                len(draft.sections),
                draft.lesson_count,
            )

            try:
                result = self._create_tree(draft, owner_id, transaction)
            except _CreationFailed as exc:
                return self._fail(transaction, exc.step, exc.cause)

            completed = transaction.model_copy(
                update={"status": GenerationStatus.COMPLETE, "result": result, "finished_at": self._clock()}
            )
            try:
                self._record(completed, "record generation result")
            except StorageError as exc:
                return self._fail(transaction, COMPLETION_STEP, exc)
            logger.info(
                "Generation %s complete: course %s, %s entities",
                idempotency_key,
                result.course_id,
                result.entity_count,
            )
            return completed

    def _fail(self, transaction: GenerationTransaction, step: str, cause: Exception) -> GenerationTransaction:
        rolled_back, rollback_errors = self._roll_back(transaction)
        transaction.status = GenerationStatus.FAILED
        transaction.failure = GenerationFailure(
            failed_step=step,
            error=str(cause),
            rolled_back=rolled_back,
            rollback_errors=rollback_errors,
        )
        transaction.finished_at = self._clock()
        logger.error(
            "Generation %s failed at %s (%s); rolled back %s entities, %s rollback errors",
            transaction.idempotency_key,
            step,
            cause,
            rolled_back,
            rollback_errors,
        )
        try:
            self._record(transaction, "record generation failure")
        except StorageError as exc:
            # The stored record stays Running, which a later run with the same key overwrites.
            logger.error("Generation %s failure was not recorded: %s", transaction.idempotency_key, exc)
        return transaction

    def _record(self, transaction: GenerationTransaction, description: str) -> None:
        self._call(lambda: self._transactions.save(transaction), description)

    def _call(self, operation: Callable[[], T], description: str) -> T:
        return call_storage(self._retry_policy, operation, description)

    def _create(
        self,
        transaction: GenerationTransaction,
        step: str,
        entity_type: EntityType,
        parent_id: Optional[str],
        fields: Mapping[str, Any],
    ) -> str:
        try:
            entity_id = self._entity_host.create_entity(entity_type, parent_id, fields)
        except Exception as exc:
            raise _CreationFailed(step, exc) from exc
        transaction.created.append(EntityRef(entity_type=entity_type, entity_id=entity_id, parent_id=parent_id))
        return entity_id

    def _create_tree(
        self, draft: CourseStructureDraft, owner_id: str, transaction: GenerationTransaction
    ) -> GenerationResult:
        course_id = self._create(
            transaction,
            f"course '{draft.title}'",
            EntityType.COURSE,
            None,
            {"title": draft.title, "description": draft.description, "author": owner_id, "status": "draft"},
        )
        section_ids = []
        lesson_ids = []
        for section in draft.sections:
            section_id = self._create(
                transaction,
                f"section {section.order_index + 1} '{section.title}'",
                EntityType.SECTION,
                course_id,
                {"title": section.title, "description": section.description, "order_index": section.order_index},
            )
            section_ids.append(section_id)
            for lesson in section.lessons:
                lesson_ids.append(
                    self._create(
                        transaction,
                        f"lesson {section.order_index + 1}.{lesson.order_index + 1} '{lesson.title}'",
                        EntityType.LESSON,
                        section_id,
                        {"title": lesson.title, "content": lesson.content, "order_index": lesson.order_index},
                    )
                )
        return GenerationResult(
            course_id=course_id,
            section_ids=section_ids,
            lesson_ids=lesson_ids,
            section_count=len(section_ids),
            lesson_count=len(lesson_ids),
            entity_count=1 + len(section_ids) + len(lesson_ids),
        )

    def _roll_back(self, transaction: GenerationTransaction) -> tuple[int, int]:
        rolled_back = 0
        errors = 0
        for ref in reversed(transaction.created):
            try:
                self._entity_host.delete_entity(ref.entity_id)
                rolled_back += 1
            except Exception:
                errors += 1
                logger.exception("Rollback could not delete %s %s", ref.entity_type.value, ref.entity_id)
        return rolled_back, errors


generation_pipeline = GenerationPipeline(
    entity_host=get_entity_host_from_env(),
    transactions=inmemory_repos.generation_transaction_repository,
)
