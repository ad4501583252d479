import threading
from datetime import timedelta

import pytest

from src.copilot.domain.models.conversation_session import MessageRole, SessionStage
from src.copilot.domain.models.generation import GenerationStatus
from src.copilot.errors import (
    AIUnavailableError,
    ConflictError,
    GenerationInProgressError,
    InvalidRequestError,
    SessionBusyError,
    SessionExpiredError,
    SessionNotFoundError,
    StorageError,
)
from src.copilot.services.ai.gateway import AIErrorKind, AIGatewayError
from src.copilot.services.conversation.engine import TurnRequest
from src.copilot.services.generation.pipeline import GenerationPipeline
from src.copilot.services.sessions.store import SessionStore
from tests.copilot.fakes import BlockingGateway, FailingEntityHost, FlakyRepository, STRUCTURE_REPLY, ScriptedGateway

OWNER = "owner-1"


def propose(engine):
    first = engine.handle(TurnRequest(message="I want a course on Python"), OWNER)
    return engine.handle(TurnRequest(session_id=first.session.id, message="Beginners, four weeks"), OWNER)


def run_in_thread(engine, request):
    outcome = {}

    def _target():
        try:
            outcome["result"] = engine.handle(request, OWNER)
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_target)
    thread.start()
    return thread, outcome


def test_full_conversation_records_every_transition(make_engine, entity_host, store):
    engine = make_engine(ScriptedGateway(["Who is the audience?", STRUCTURE_REPLY]))

    first = engine.handle(TurnRequest(message="I want a course on Python"), OWNER)
    assert first.session.stage == SessionStage.GATHERING_REQUIREMENTS
    assert first.assistant_message == "Who is the audience?"
    assert first.session.revision == 1

    second = engine.handle(TurnRequest(session_id=first.session.id, message="Beginners"), OWNER)
    assert second.session.stage == SessionStage.STRUCTURE_PROPOSED
    assert second.session.structure_draft.title == "Python Basics"
    assert second.session.title == "Course: Python Basics"
    assert second.assistant_message.startswith("Here is the outline.")

    accepted = engine.handle(TurnRequest(session_id=first.session.id, confirm=True), OWNER)
    assert accepted.session.stage == SessionStage.AWAITING_CONFIRMATION

    created = engine.handle(TurnRequest(session_id=first.session.id, confirm=True), OWNER)
    assert created.session.stage == SessionStage.COMPLETE
    assert created.generation.status == GenerationStatus.COMPLETE
    assert created.generation.result.lesson_count == 3
    assert [t.to_stage for t in created.transitions] == [SessionStage.GENERATING, SessionStage.COMPLETE]
    assert entity_host.count() == 6

    stored = store.load(first.session.id)
    assert [t.to_stage for t in stored.stage_history] == [
        SessionStage.GATHERING_REQUIREMENTS,
        SessionStage.STRUCTURE_PROPOSED,
        SessionStage.AWAITING_CONFIRMATION,
        SessionStage.GENERATING,
        SessionStage.COMPLETE,
    ]
    assert stored.stage_history[0].from_stage == SessionStage.INITIAL
    roles = [m.role for m in stored.messages]
    assert roles[:4] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT]


def test_plain_replies_keep_the_stage(make_engine):
    engine = make_engine(ScriptedGateway(["Question one?", "Question two?"]))

    first = engine.handle(TurnRequest(message="A course about baking"), OWNER)
    second = engine.handle(TurnRequest(session_id=first.session.id, message="For kids"), OWNER)

    assert second.session.stage == SessionStage.GATHERING_REQUIREMENTS
    assert second.transitions == []
    assert len(second.session.stage_history) == 1


def test_new_structure_replaces_the_draft(make_engine):
    revised = STRUCTURE_REPLY.replace("Python Basics", "Python for Data")
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY, revised]))

    proposed = propose(engine)
    again = engine.handle(TurnRequest(session_id=proposed.session.id, message="Focus on data"), OWNER)

    assert again.session.stage == SessionStage.STRUCTURE_PROPOSED
    assert again.session.structure_draft.title == "Python for Data"
    assert [t.cause for t in again.transitions] == ["structure proposed"]


def test_gateway_receives_the_full_history(make_engine):
    gateway = ScriptedGateway(["Who?", STRUCTURE_REPLY])
    engine = make_engine(gateway)

    propose(engine)

    assert [m.content for m in gateway.calls[1]] == [
        "I want a course on Python",
        "Who?",
        "Beginners, four weeks",
    ]


@pytest.mark.parametrize(
    "request_fields",
    [
        {"message": ""},
        {"message": "   "},
        {"message": "x", "confirm": True, "cancel": True},
        {"cancel": True},
        {"confirm": True},
        {"session_id": "  ", "message": "hi"},
        {"message": "x" * 51},
    ],
)
def test_invalid_requests_are_rejected_without_mutation(make_engine, store, request_fields):
    engine = make_engine(ScriptedGateway(), max_message_chars=50)

    with pytest.raises(InvalidRequestError):
        engine.handle(TurnRequest(**request_fields), OWNER)
    assert store.list_by_owner(OWNER) == []


def test_invalid_message_for_existing_session_leaves_revision_alone(make_engine, store):
    engine = make_engine(ScriptedGateway(), max_message_chars=50)
    first = engine.handle(TurnRequest(message="hello"), OWNER)

    with pytest.raises(InvalidRequestError):
        engine.handle(TurnRequest(session_id=first.session.id, message="y" * 60), OWNER)
    assert store.load(first.session.id).revision == first.session.revision


def test_history_limit(make_engine):
    engine = make_engine(ScriptedGateway(), max_message_history=3)
    first = engine.handle(TurnRequest(message="hello"), OWNER)

    with pytest.raises(InvalidRequestError):
        engine.handle(TurnRequest(session_id=first.session.id, message="again"), OWNER)


def test_retry_safe_gateway_errors_are_retried(make_engine, sleeps):
    gateway = ScriptedGateway(
        [
            AIGatewayError(AIErrorKind.SERVICE_UNAVAILABLE, "connect failed", retry_safe=True),
            AIGatewayError(AIErrorKind.SERVICE_UNAVAILABLE, "connect failed", retry_safe=True),
            "Who is the audience?",
        ]
    )
    engine = make_engine(gateway)

    result = engine.handle(TurnRequest(message="A course on chess"), OWNER)

    assert result.assistant_message == "Who is the audience?"
    assert len(gateway.calls) == 3
    assert sleeps == [0.1, 0.2]


def test_exhausted_gateway_without_draft_fails_the_session(make_engine, store):
    error = AIGatewayError(AIErrorKind.SERVICE_UNAVAILABLE, "down", retry_safe=True)
    gateway = ScriptedGateway([error, error, error])
    engine = make_engine(gateway)

    with pytest.raises(AIUnavailableError) as info:
        engine.handle(TurnRequest(message="A course on chess"), OWNER)

    assert len(gateway.calls) == 3
    assert info.value.stage == SessionStage.FAILED.value
    stored = store.load(info.value.session_id)
    assert stored.stage == SessionStage.FAILED
    assert stored.messages[-1].role == MessageRole.SYSTEM
    assert stored.messages[0].content == "A course on chess"


def test_side_effecting_gateway_errors_are_not_retried(make_engine):
    gateway = ScriptedGateway([AIGatewayError(AIErrorKind.RATE_LIMITED, "slow down")])
    engine = make_engine(gateway)

    with pytest.raises(AIUnavailableError):
        engine.handle(TurnRequest(message="A course on chess"), OWNER)
    assert len(gateway.calls) == 1


def test_exhausted_gateway_with_a_draft_keeps_the_draft(make_engine, store):
    engine = make_engine(
        ScriptedGateway(["Who?", STRUCTURE_REPLY, AIGatewayError(AIErrorKind.UNAUTHORIZED, "bad key")])
    )
    proposed = propose(engine)

    with pytest.raises(AIUnavailableError) as info:
        engine.handle(TurnRequest(session_id=proposed.session.id, message="Add a quiz section"), OWNER)

    assert info.value.stage == SessionStage.STRUCTURE_PROPOSED.value
    stored = store.load(proposed.session.id)
    assert stored.stage == SessionStage.STRUCTURE_PROPOSED
    assert stored.structure_draft == proposed.session.structure_draft


def test_unexpected_gateway_exceptions_become_unknown_errors(make_engine):
    engine = make_engine(ScriptedGateway([RuntimeError("socket exploded")]))

    with pytest.raises(AIUnavailableError, match="socket exploded"):
        engine.handle(TurnRequest(message="A course on chess"), OWNER)


def test_slow_gateway_times_out(make_engine):
    gateway = BlockingGateway()
    engine = make_engine(gateway, gateway_timeout=0.05)
    try:
        with pytest.raises(AIUnavailableError) as info:
            engine.handle(TurnRequest(message="A course on chess"), OWNER)
        assert "No reply within" in info.value.reason
    finally:
        gateway.release.set()


def test_second_concurrent_turn_is_rejected_as_busy(make_engine, store):
    gateway = BlockingGateway(reply="Noted.")
    engine = make_engine(gateway)
    session = store.create(OWNER)

    thread, outcome = run_in_thread(engine, TurnRequest(session_id=session.id, message="first"))
    try:
        assert gateway.started.wait(2)
        with pytest.raises(SessionBusyError):
            engine.handle(TurnRequest(session_id=session.id, message="second"), OWNER)
    finally:
        gateway.release.set()
        thread.join(5)

    assert outcome["result"].assistant_message == "Noted."
    assert [m.content for m in store.load(session.id).messages] == ["first", "Noted."]


def test_unrelated_sessions_do_not_block_each_other(make_engine, store):
    gateway = BlockingGateway(reply="Noted.")
    engine = make_engine(gateway)
    busy = store.create(OWNER)

    thread, _ = run_in_thread(engine, TurnRequest(session_id=busy.id, message="first"))
    try:
        assert gateway.started.wait(2)
        other_engine = make_engine(ScriptedGateway(["Hi there."]))
        result = other_engine.handle(TurnRequest(message="another course"), OWNER)
        assert result.assistant_message == "Hi there."
    finally:
        gateway.release.set()
        thread.join(5)


def test_cancel_aborts_a_pending_gateway_call(make_engine, store):
    gateway = BlockingGateway()
    engine = make_engine(gateway)
    session = store.create(OWNER)

    thread, outcome = run_in_thread(engine, TurnRequest(session_id=session.id, message="first"))
    try:
        assert gateway.started.wait(2)
        ack = engine.handle(TurnRequest(session_id=session.id, cancel=True), OWNER)
        assert ack.cancelled is True
        thread.join(5)
    finally:
        gateway.release.set()

    result = outcome["result"]
    assert result.cancelled is True
    assert result.session.stage == SessionStage.GATHERING_REQUIREMENTS
    stored = store.load(session.id)
    assert [m.role for m in stored.messages] == [MessageRole.USER, MessageRole.SYSTEM]


def test_cancel_while_awaiting_confirmation_returns_to_proposal(make_engine):
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]))
    session_id = propose(engine).session.id
    engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)

    result = engine.handle(TurnRequest(session_id=session_id, cancel=True), OWNER)

    assert result.cancelled is True
    assert result.session.stage == SessionStage.STRUCTURE_PROPOSED
    assert result.session.structure_draft is not None


def test_cancel_with_nothing_pending_is_a_no_op(make_engine, store):
    engine = make_engine(ScriptedGateway())
    session = store.create(OWNER)

    result = engine.handle(TurnRequest(session_id=session.id, cancel=True), OWNER)

    assert result.cancelled is False
    assert store.load(session.id).revision == session.revision


def test_confirm_without_a_draft_is_rejected(make_engine):
    engine = make_engine(ScriptedGateway(["Who?"]))
    first = engine.handle(TurnRequest(message="A course on chess"), OWNER)

    with pytest.raises(InvalidRequestError):
        engine.handle(TurnRequest(session_id=first.session.id, confirm=True), OWNER)


def test_failed_generation_rolls_back_and_can_be_retried(make_engine, transactions, clock):
    host = FailingEntityHost(fail_on_create=4)
    pipeline = GenerationPipeline(entity_host=host, transactions=transactions, clock=clock)
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]), pipeline=pipeline)
    session_id = propose(engine).session.id
    engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)

    failed = engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)

    assert failed.session.stage == SessionStage.FAILED
    assert failed.generation.failure.failed_step == "lesson 1.2 'Your First Script'"
    assert "lesson 1.2" in failed.assistant_message
    assert host.count() == 0

    retried = engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)

    assert retried.session.stage == SessionStage.COMPLETE
    assert retried.generation.idempotency_key == failed.generation.idempotency_key
    assert host.count() == 6


def test_messages_to_a_completed_session_are_rejected(make_engine):
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]))
    session_id = propose(engine).session.id
    engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)
    engine.handle(TurnRequest(session_id=session_id, confirm=True), OWNER)

    with pytest.raises(InvalidRequestError):
        engine.handle(TurnRequest(session_id=session_id, message="one more thing"), OWNER)


def test_turns_during_generation_are_rejected(make_engine, locks):
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]))
    session_id = propose(engine).session.id

    with locks.generation(session_id):
        with pytest.raises(GenerationInProgressError):
            engine.handle(TurnRequest(session_id=session_id, message="change it"), OWNER)
        with pytest.raises(GenerationInProgressError):
            engine.handle(TurnRequest(session_id=session_id, cancel=True), OWNER)


def test_other_owners_cannot_use_a_session(make_engine):
    engine = make_engine(ScriptedGateway(["Who?"]))
    first = engine.handle(TurnRequest(message="A course on chess"), OWNER)

    with pytest.raises(SessionNotFoundError):
        engine.handle(TurnRequest(session_id=first.session.id, message="hijack"), "intruder")


def test_expired_sessions_cannot_be_resumed(make_engine, store, clock):
    engine = make_engine(ScriptedGateway(["Who?"]))
    first = engine.handle(TurnRequest(message="A course on chess"), OWNER)
    session = store.load(first.session.id)
    session.expired_at = clock.now
    store.save(session)

    with pytest.raises(SessionExpiredError):
        engine.handle(TurnRequest(session_id=first.session.id, message="hello again"), OWNER)


def test_edit_draft_replaces_structure_and_checks_revision(make_engine):
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]))
    proposed = propose(engine)
    payload = {"title": "Hand Edited", "sections": [{"title": "Only", "lessons": [{"title": "One"}]}]}

    with pytest.raises(ConflictError):
        engine.edit_draft(proposed.session.id, OWNER, proposed.session.revision - 1, payload)

    edited = engine.edit_draft(proposed.session.id, OWNER, proposed.session.revision, payload)

    assert edited.session.structure_draft.title == "Hand Edited"
    assert edited.session.title == "Course: Hand Edited"
    assert edited.session.stage == SessionStage.STRUCTURE_PROPOSED
    assert edited.transitions[0].cause == "structure edited by user"


def test_edit_draft_rejects_invalid_structures(make_engine):
    engine = make_engine(ScriptedGateway(["Who?", STRUCTURE_REPLY]))
    proposed = propose(engine)

    with pytest.raises(InvalidRequestError):
        engine.edit_draft(proposed.session.id, OWNER, proposed.session.revision, {"title": "No sections"})


def test_storage_failure_marks_the_session_failed(make_engine, retry_policy, clock):
    repository = FlakyRepository(failures=1, error=RuntimeError("disk full"))
    store = SessionStore(repository, retry_policy=retry_policy, clock=clock, ttl=timedelta(days=30))
    engine = make_engine(ScriptedGateway(["Who?"]), store=store)

    with pytest.raises(StorageError) as info:
        engine.handle(TurnRequest(message="A course on chess"), OWNER)

    sessions = store.list_by_owner(OWNER)
    assert len(sessions) == 1
    stored = store.load(sessions[0].id)
    assert stored.stage == SessionStage.FAILED
    assert info.value.correlation_id in stored.stage_history[-1].cause
