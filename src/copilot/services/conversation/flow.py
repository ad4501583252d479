from __future__ import annotations

from enum import Enum

from src.copilot.domain.models.conversation_session import SessionStage
from src.copilot.errors import GenerationInProgressError, InvalidTransitionError


class FlowEvent(str, Enum):
    USER_MESSAGE = "user_message"
    STRUCTURE_PARSED = "structure_parsed"
    PLAIN_REPLY = "plain_reply"
    GATEWAY_EXHAUSTED = "gateway_exhausted"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    DRAFT_EDITED = "draft_edited"
    GENERATION_SUCCEEDED = "generation_succeeded"
    GENERATION_FAILED = "generation_failed"
    FATAL_ERROR = "fatal_error"


S = SessionStage
E = FlowEvent

# Transitions that do not depend on whether a draft exists.
_TRANSITIONS = {
    (S.INITIAL, E.USER_MESSAGE): S.GATHERING_REQUIREMENTS,
    (S.GATHERING_REQUIREMENTS, E.USER_MESSAGE): S.GATHERING_REQUIREMENTS,
    (S.STRUCTURE_PROPOSED, E.USER_MESSAGE): S.STRUCTURE_PROPOSED,
    (S.AWAITING_CONFIRMATION, E.USER_MESSAGE): S.AWAITING_CONFIRMATION,
    (S.FAILED, E.USER_MESSAGE): S.FAILED,
    (S.GATHERING_REQUIREMENTS, E.STRUCTURE_PARSED): S.STRUCTURE_PROPOSED,
    (S.STRUCTURE_PROPOSED, E.STRUCTURE_PARSED): S.STRUCTURE_PROPOSED,
    (S.AWAITING_CONFIRMATION, E.STRUCTURE_PARSED): S.STRUCTURE_PROPOSED,
    (S.FAILED, E.STRUCTURE_PARSED): S.STRUCTURE_PROPOSED,
    (S.GATHERING_REQUIREMENTS, E.PLAIN_REPLY): S.GATHERING_REQUIREMENTS,
    (S.STRUCTURE_PROPOSED, E.PLAIN_REPLY): S.STRUCTURE_PROPOSED,
    (S.AWAITING_CONFIRMATION, E.PLAIN_REPLY): S.AWAITING_CONFIRMATION,
    (S.STRUCTURE_PROPOSED, E.CONFIRM): S.AWAITING_CONFIRMATION,
    (S.AWAITING_CONFIRMATION, E.CONFIRM): S.GENERATING,
    (S.AWAITING_CONFIRMATION, E.CANCEL): S.STRUCTURE_PROPOSED,
    (S.STRUCTURE_PROPOSED, E.DRAFT_EDITED): S.STRUCTURE_PROPOSED,
    (S.AWAITING_CONFIRMATION, E.DRAFT_EDITED): S.STRUCTURE_PROPOSED,
    (S.FAILED, E.DRAFT_EDITED): S.STRUCTURE_PROPOSED,
    (S.INITIAL, E.DRAFT_EDITED): S.STRUCTURE_PROPOSED,
    (S.GATHERING_REQUIREMENTS, E.DRAFT_EDITED): S.STRUCTURE_PROPOSED,
    (S.GENERATING, E.GENERATION_SUCCEEDED): S.COMPLETE,
    (S.GENERATING, E.GENERATION_FAILED): S.FAILED,
}


def next_stage(current: SessionStage, event: FlowEvent, *, has_draft: bool) -> SessionStage:
    """Pure transition function of the conversation state machine.

    Raises GenerationInProgressError for anything but a generation outcome
    while Generating, and InvalidTransitionError for other illegal events.
    """

    if event == E.FATAL_ERROR:
        if current == S.COMPLETE:
            raise InvalidTransitionError(current.value, event.value)
        return S.FAILED

    if current == S.GENERATING and event not in (E.GENERATION_SUCCEEDED, E.GENERATION_FAILED):
        raise GenerationInProgressError()

    if event == E.GATEWAY_EXHAUSTED:
        if current == S.COMPLETE:
            raise InvalidTransitionError(current.value, event.value)
        # Fall back to the existing draft when there is one.
        return current if has_draft else S.FAILED

    if current == S.FAILED:
        if event == E.CONFIRM and has_draft:
            return S.GENERATING
        if event == E.PLAIN_REPLY:
            return S.STRUCTURE_PROPOSED if has_draft else S.GATHERING_REQUIREMENTS

    target = _TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(current.value, event.value)
    return target
