from __future__ import annotations

import logging
from concurrent.futures import FIRST_COMPLETED, Future, InvalidStateError, ThreadPoolExecutor, wait
from contextlib import suppress
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from src.copilot.clock import Clock, utcnow
from src.copilot.config import settings
from src.copilot.domain.models.conversation_session import (
    ConversationSession,
    MessageRole,
    SessionStage,
    StageTransition,
)
from src.copilot.domain.models.course_structure import CourseStructureDraft
from src.copilot.domain.models.generation import GenerationStatus, GenerationTransaction
from src.copilot.errors import (
    AIUnavailableError,
    ConflictError,
    CopilotError,
    GenerationInProgressError,
    InvalidRequestError,
    SessionExpiredError,
    SessionNotFoundError,
    StorageError,
)
from src.copilot.services.ai.gateway import AIErrorKind, AIGateway, AIGatewayError, AIReply, get_ai_gateway_from_env
from src.copilot.services.ai.prompts import course_creation_prompt
from src.copilot.services.conversation.flow import FlowEvent, next_stage
from src.copilot.services.conversation.locks import SessionLockRegistry, session_locks
from src.copilot.services.generation.pipeline import GenerationPipeline, generation_pipeline, idempotency_key
from src.copilot.services.parsing.response_parser import ParseOk, ResponseParser, response_parser
from src.copilot.services.retry import RetryPolicy
from src.copilot.services.sessions.autosave import AutoSaveCoordinator, session_autosave
from src.copilot.services.sessions.store import SessionStore, session_store

logger = logging.getLogger(__name__)

CANCELLED_NOTICE = "The pending request was cancelled."
CONFIRM_AGAIN_NOTICE = "Structure accepted. Confirm again to create the course."
CREATION_CANCELLED_NOTICE = "Course creation cancelled. You can keep refining the structure."

# Self-loops worth recording: the draft changed even though the stage did not.
_DRAFT_EVENTS = (FlowEvent.STRUCTURE_PARSED, FlowEvent.DRAFT_EDITED)


class TurnRequest(BaseModel):
    session_id: Optional[str] = None
    message: str = ""
    confirm: bool = False
    cancel: bool = False


@dataclass
class TurnResult:
    session: ConversationSession
    assistant_message: str
    transitions: List[StageTransition] = field(default_factory=list)
    generation: Optional[GenerationTransaction] = None
    cancelled: bool = False


class _TurnCancelled(Exception):
    pass


class _CancelToken:
    def __init__(self) -> None:
        self.future: Future = Future()

    def cancel(self) -> None:
        with suppress(InvalidStateError):
            self.future.set_result(True)

    @property
    def cancelled(self) -> bool:
        return self.future.done()


def _default_ai_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.ai_max_attempts,
        backoff_seconds=settings.ai_backoff_seconds,
    )


class ConversationFlowEngine:
    """Drives one chat turn: AI request, structure detection, stage change, save.

    At most one turn runs per session; a concurrent turn is rejected with
    SessionBusyError. Every stage change is recorded on the session and
    persisted together with the messages of the turn that caused it.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        gateway: AIGateway,
        parser: ResponseParser,
        pipeline: GenerationPipeline,
        locks: Optional[SessionLockRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        autosave: Optional[AutoSaveCoordinator] = None,
        gateway_timeout: Optional[float] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Clock = utcnow,
        max_message_chars: Optional[int] = None,
        max_message_history: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._parser = parser
        self._pipeline = pipeline
        self._locks = locks or SessionLockRegistry()
        self._retry_policy = retry_policy or _default_ai_retry_policy()
        self._autosave = autosave
        self._timeout = gateway_timeout or settings.ai_timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.ai_workers, thread_name_prefix="ai-gateway"
        )
        self._clock = clock
        self._max_message_chars = max_message_chars or settings.max_message_chars
        self._max_message_history = max_message_history or settings.max_message_history
        self._system_prompt = system_prompt or course_creation_prompt()
        self._pending: Dict[str, _CancelToken] = {}
        self._pending_guard = Lock()

    @property
    def gateway(self) -> AIGateway:
        return self._gateway

    def use_gateway(self, gateway: AIGateway) -> None:
        self._gateway = gateway

    def handle(self, request: TurnRequest, owner_id: str) -> TurnResult:
        self._validate(request)
        if request.cancel:
            return self._cancel(request.session_id, owner_id)

        if request.session_id is None:
            session_id = self._store.create(owner_id).id
        else:
            session_id = request.session_id
            self._ensure_resumable(self._store.load_for_owner(session_id, owner_id))

        if self._locks.is_generating(session_id):
            raise GenerationInProgressError(session_id)

        with self._locks.turn(session_id):
            # Reload under the lock so the turn starts from the latest revision.
            session = self._store.load_for_owner(session_id, owner_id)
            self._ensure_resumable(session)
            try:
                if request.confirm:
                    return self._confirm(session)
                return self._converse(session, request.message.strip())
            except StorageError as exc:
                self._mark_failed(session_id, exc)
                raise

    def edit_draft(self, session_id: str, owner_id: str, revision: int, payload: Any) -> TurnResult:
        """Replace the structure draft with a user-edited one."""

        draft = self._edited_draft(session_id, payload)
        with self._locks.turn(session_id):
            session = self._store.load_for_owner(session_id, owner_id)
            self._ensure_resumable(session)
            if session.revision != revision:
                raise ConflictError(session_id, revision, session.revision)

            transitions: List[StageTransition] = []
            self._replace_draft(session, draft, transitions)
            session.append_message(MessageRole.SYSTEM, "Course structure updated manually.", self._clock())
            saved = self._save(session)
            return TurnResult(saved, "Course structure updated.", transitions)

    def autosave_draft(self, session_id: str, owner_id: str, payload: Any) -> ConversationSession:
        """Stage an in-progress draft edit in the autosave working copy.

        Nothing is written here; the next autosave tick persists the copy, or
        reports it stale when the stored session moved on in the meantime.
        """

        if self._autosave is None:
            raise InvalidRequestError("Autosave is not enabled")
        draft = self._edited_draft(session_id, payload)
        with self._locks.turn(session_id):
            session = self._autosave.working_copy(session_id)
            if session is None:
                session = self._store.load_for_owner(session_id, owner_id)
                self._autosave.track(session)
            elif session.owner_id != owner_id:
                raise SessionNotFoundError(session_id)
            self._ensure_resumable(session)
            self._replace_draft(session, draft, [])
            self._autosave.update(session)
            return session

    def cancel(self, session_id: str, owner_id: str) -> TurnResult:
        return self._cancel(session_id, owner_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _edited_draft(self, session_id: str, payload: Any) -> CourseStructureDraft:
        outcome = self._parser.validate_payload(payload)
        if not isinstance(outcome, ParseOk):
            raise InvalidRequestError(f"Invalid course structure: {outcome.reason}")
        if self._locks.is_generating(session_id):
            raise GenerationInProgressError(session_id)
        return outcome.draft

    def _replace_draft(
        self, session: ConversationSession, draft: CourseStructureDraft, transitions: List[StageTransition]
    ) -> None:
        if session.stage == SessionStage.COMPLETE:
            raise InvalidRequestError("The course has already been generated")
        session.structure_draft = draft
        session.title = f"Course: {draft.title}"
        self._apply(session, FlowEvent.DRAFT_EDITED, "structure edited by user", transitions)

    def _save(self, session: ConversationSession) -> ConversationSession:
        saved = self._store.save(session)
        if self._autosave is not None:
            self._autosave.observe(saved)
        return saved

    def _validate(self, request: TurnRequest) -> None:
        if request.confirm and request.cancel:
            raise InvalidRequestError("confirm and cancel cannot be combined")
        if request.session_id is not None and not request.session_id.strip():
            raise InvalidRequestError("session_id must not be blank")
        if request.cancel:
            if request.session_id is None:
                raise InvalidRequestError("cancel requires a session_id")
            return
        if request.confirm:
            if request.session_id is None:
                raise InvalidRequestError("confirm requires a session_id")
            return
        if not request.message.strip():
            raise InvalidRequestError("message must not be empty")
        if len(request.message) > self._max_message_chars:
            raise InvalidRequestError(
                f"message exceeds the maximum length of {self._max_message_chars} characters"
            )

    @staticmethod
    def _ensure_resumable(session: ConversationSession) -> None:
        if session.is_expired:
            raise SessionExpiredError(session.id)

    def _apply(
        self,
        session: ConversationSession,
        event: FlowEvent,
        cause: str,
        transitions: List[StageTransition],
    ) -> None:
        try:
            target = next_stage(session.stage, event, has_draft=session.structure_draft is not None)
        except GenerationInProgressError:
            raise GenerationInProgressError(session.id) from None
        if target == session.stage and event not in _DRAFT_EVENTS:
            return
        transition = StageTransition(from_stage=session.stage, to_stage=target, cause=cause, at=self._clock())
        logger.info(
            "Session %s stage %s -> %s (%s)",
            session.id,
            transition.from_stage.value,
            transition.to_stage.value,
            cause,
        )
        session.stage = target
        session.stage_history.append(transition)
        transitions.append(transition)

    def _converse(self, session: ConversationSession, message: str) -> TurnResult:
        if session.stage == SessionStage.COMPLETE:
            raise InvalidRequestError("The course has already been generated; start a new session")
        if len(session.messages) + 2 > self._max_message_history:
            raise InvalidRequestError(
                f"Session {session.id} reached the limit of {self._max_message_history} messages"
            )

        transitions: List[StageTransition] = []
        self._apply(session, FlowEvent.USER_MESSAGE, "user message", transitions)
        session.append_message(MessageRole.USER, message, self._clock())

        token = self._register_pending(session.id)
        try:
            reply = self._ask_assistant(session, token)
        except _TurnCancelled:
            logger.info("Turn for session %s cancelled by the user", session.id)
            session.append_message(MessageRole.SYSTEM, CANCELLED_NOTICE, self._clock())
            saved = self._save(session)
            return TurnResult(saved, CANCELLED_NOTICE, transitions, cancelled=True)
        except AIGatewayError as exc:
            logger.error("AI gateway gave up for session %s: %s (%s)", session.id, exc.kind.value, exc)
            self._apply(session, FlowEvent.GATEWAY_EXHAUSTED, f"ai gateway {exc.kind.value}", transitions)
            session.append_message(
                MessageRole.SYSTEM,
                f"The AI service is unavailable ({exc.kind.value}). Please try again later.",
                self._clock(),
            )
            saved = self._save(session)
            raise AIUnavailableError(saved.id, saved.stage.value, str(exc) or exc.kind.value) from exc
        finally:
            self._release_pending(session.id, token)

        session.append_message(MessageRole.ASSISTANT, reply.text, self._clock())
        outcome = self._parser.parse(reply.text)
        if isinstance(outcome, ParseOk):
            session.structure_draft = outcome.draft
            session.title = f"Course: {outcome.draft.title}"
            cause = "structure proposed (repaired)" if outcome.repaired else "structure proposed"
            self._apply(session, FlowEvent.STRUCTURE_PARSED, cause, transitions)
            assistant_message = outcome.display_text or f"Here is a proposed structure for \"{outcome.draft.title}\"."
        else:
            logger.debug("No course structure in reply for session %s: %s", session.id, outcome.reason)
            self._apply(session, FlowEvent.PLAIN_REPLY, "assistant reply", transitions)
            assistant_message = reply.text

        saved = self._save(session)
        return TurnResult(saved, assistant_message, transitions)

    def _ask_assistant(self, session: ConversationSession, token: _CancelToken) -> AIReply:
        history = list(session.messages)

        def attempt() -> AIReply:
            if token.cancelled:
                raise _TurnCancelled()
            future = self._executor.submit(self._gateway.send, self._system_prompt, history, timeout=self._timeout)
            done, _ = wait([future, token.future], timeout=self._timeout, return_when=FIRST_COMPLETED)
            if token.cancelled:
                future.cancel()
                raise _TurnCancelled()
            if future not in done:
                future.cancel()
                raise AIGatewayError(AIErrorKind.TIMEOUT, f"No reply within {self._timeout}s")
            try:
                return future.result()
            except AIGatewayError:
                raise
            except Exception as exc:
                logger.exception("AI gateway raised an unexpected error")
                raise AIGatewayError(AIErrorKind.UNKNOWN, str(exc)) from exc

        return self._retry_policy.run(
            attempt,
            retry_if=lambda exc: isinstance(exc, AIGatewayError) and exc.retry_safe,
            description=f"AI request for session {session.id}",
        )

    def _confirm(self, session: ConversationSession) -> TurnResult:
        if session.structure_draft is None:
            raise InvalidRequestError("There is no course structure to confirm yet")

        if session.stage == SessionStage.STRUCTURE_PROPOSED:
            transitions: List[StageTransition] = []
            self._apply(session, FlowEvent.CONFIRM, "structure confirmed", transitions)
            session.append_message(MessageRole.SYSTEM, CONFIRM_AGAIN_NOTICE, self._clock())
            saved = self._save(session)
            return TurnResult(saved, CONFIRM_AGAIN_NOTICE, transitions)

        if session.stage in (SessionStage.AWAITING_CONFIRMATION, SessionStage.FAILED):
            return self._generate(session)

        raise InvalidRequestError(f"Nothing to confirm while the session is {session.stage.value}")

    def _generate(self, session: ConversationSession) -> TurnResult:
        draft = session.structure_draft
        transitions: List[StageTransition] = []
        with self._locks.generation(session.id):
            self._apply(session, FlowEvent.CONFIRM, "course creation requested", transitions)
            session = self._save(session)
            key = idempotency_key(session.id, draft)
            try:
                transaction = self._pipeline.run(
                    draft, owner_id=session.owner_id, idempotency_key=key, session_id=session.id
                )
            except Exception as exc:
                logger.exception("Generation %s raised outside the pipeline's rollback", key)
                self._apply(session, FlowEvent.GENERATION_FAILED, "generation error", transitions)
                session.append_message(
                    MessageRole.SYSTEM, "Course creation failed unexpectedly. Please retry.", self._clock()
                )
                self._save(session)
                if isinstance(exc, CopilotError):
                    raise
                raise StorageError(f"Generation bookkeeping failed for session {session.id}") from exc

            if transaction.status == GenerationStatus.COMPLETE:
                result = transaction.result
                self._apply(session, FlowEvent.GENERATION_SUCCEEDED, f"course {result.course_id} created", transitions)
                message = (
                    f"Your course \"{draft.title}\" was created with "
                    f"{result.section_count} sections and {result.lesson_count} lessons."
                )
            else:
                failure = transaction.failure
                self._apply(session, FlowEvent.GENERATION_FAILED, f"generation failed at {failure.failed_step}", transitions)
                message = (
                    f"Course creation failed while creating {failure.failed_step}: {failure.error}. "
                    f"{failure.rolled_back} created items were removed. Confirm again to retry."
                )
            session.append_message(MessageRole.SYSTEM, message, self._clock())
            saved = self._save(session)
            return TurnResult(saved, message, transitions, generation=transaction)

    def _cancel(self, session_id: str, owner_id: str) -> TurnResult:
        session = self._store.load_for_owner(session_id, owner_id)
        with self._pending_guard:
            token = self._pending.get(session_id)
        if token is not None:
            token.cancel()
            return TurnResult(session, "Cancelling the pending request.", cancelled=True)

        if self._locks.is_generating(session_id) or session.stage == SessionStage.GENERATING:
            raise GenerationInProgressError(session_id)

        if session.stage != SessionStage.AWAITING_CONFIRMATION:
            return TurnResult(session, "There is nothing to cancel.")

        with self._locks.turn(session_id):
            session = self._store.load_for_owner(session_id, owner_id)
            self._ensure_resumable(session)
            transitions: List[StageTransition] = []
            self._apply(session, FlowEvent.CANCEL, "creation cancelled by user", transitions)
            session.append_message(MessageRole.SYSTEM, CREATION_CANCELLED_NOTICE, self._clock())
            saved = self._save(session)
            return TurnResult(saved, CREATION_CANCELLED_NOTICE, transitions, cancelled=True)

    def _register_pending(self, session_id: str) -> _CancelToken:
        token = _CancelToken()
        with self._pending_guard:
            self._pending[session_id] = token
        return token

    def _release_pending(self, session_id: str, token: _CancelToken) -> None:
        with self._pending_guard:
            if self._pending.get(session_id) is token:
                del self._pending[session_id]

    def _mark_failed(self, session_id: str, error: StorageError) -> None:
        try:
            session = self._store.load(session_id)
            if session.stage in (SessionStage.COMPLETE, SessionStage.FAILED):
                return
            self._apply(session, FlowEvent.FATAL_ERROR, f"storage error {error.correlation_id}", [])
            self._save(session)
        except CopilotError as exc:
            logger.warning("Could not mark session %s as failed: %s", session_id, exc)


conversation_engine = ConversationFlowEngine(
    store=session_store,
    gateway=get_ai_gateway_from_env(),
    parser=response_parser,
    pipeline=generation_pipeline,
    locks=session_locks,
    autosave=session_autosave,
)
