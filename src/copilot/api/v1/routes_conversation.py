from __future__ import annotations

from fastapi import APIRouter, Depends

from src.copilot.api.v1.errors import to_http_error
from src.copilot.api.v1.schemas import TurnResponse
from src.copilot.errors import CopilotError
from src.copilot.ownership import owner_dependency
from src.copilot.security import get_api_key
from src.copilot.services.audit.service import audit_service
from src.copilot.services.conversation.engine import TurnRequest, conversation_engine

router = APIRouter(
    prefix="/conversation",
    tags=["conversation"],
    dependencies=[Depends(get_api_key)],
)


@router.post("/turns", response_model=TurnResponse)
def submit_turn(payload: TurnRequest, owner_id: str = Depends(owner_dependency)) -> TurnResponse:
    """Process one chat turn: a message, a confirm action or a cancel action.

    Omitting ``session_id`` starts a new session. Runs in the threadpool
    because the AI call and course generation block.
    """

    action = "cancel" if payload.cancel else "confirm" if payload.confirm else "message"
    try:
        result = conversation_engine.handle(payload, owner_id)
    except CopilotError as exc:
        audit_service.log_event(
            action="turn_rejected",
            resource_type="conversation_session",
            resource_id=payload.session_id,
            owner_id=owner_id,
            extra={"action": action, "error": type(exc).__name__},
        )
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="turn",
        resource_type="conversation_session",
        resource_id=result.session.id,
        owner_id=owner_id,
        extra={
            "action": action,
            "stage": result.session.stage.value,
            "revision": result.session.revision,
            "transitions": len(result.transitions),
        },
    )
    if result.generation is not None:
        audit_service.log_event(
            action="generate_course",
            resource_type="generation_transaction",
            resource_id=result.generation.idempotency_key,
            owner_id=owner_id,
            extra={
                "status": result.generation.status.value,
                "entities": len(result.generation.created),
            },
        )

    return TurnResponse.from_result(result)
