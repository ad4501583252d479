from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, Response, status

from src.copilot.api.v1.errors import to_http_error
from src.copilot.api.v1.schemas import (
    AutoSaveStateResponse,
    CreateSessionRequest,
    EditDraftRequest,
    TurnResponse,
    WorkingDraftRequest,
)
from src.copilot.domain.models.conversation_session import ConversationSession, SessionSeed, SessionSummary
from src.copilot.errors import CopilotError
from src.copilot.ownership import owner_dependency
from src.copilot.security import get_api_key
from src.copilot.services.audit.service import audit_service
from src.copilot.services.conversation.engine import conversation_engine
from src.copilot.services.conversation.locks import session_locks
from src.copilot.services.sessions.autosave import session_autosave
from src.copilot.services.sessions.store import session_store

router = APIRouter(
    prefix="/sessions",
    tags=["sessions"],
    dependencies=[Depends(get_api_key)],
)


@router.post("/", response_model=ConversationSession, status_code=status.HTTP_201_CREATED)
def create_session(payload: CreateSessionRequest, owner_id: str = Depends(owner_dependency)) -> ConversationSession:
    try:
        session = session_store.create(owner_id, SessionSeed(title=payload.title))
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="create_session",
        resource_type="conversation_session",
        resource_id=session.id,
        owner_id=owner_id,
    )
    return session


@router.get("/", response_model=List[SessionSummary])
def list_sessions(
    owner_id: str = Depends(owner_dependency),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    include_expired: bool = False,
) -> List[SessionSummary]:
    """List the caller's sessions, most recently updated first."""

    try:
        return session_store.list_by_owner(owner_id, limit, offset, include_expired=include_expired)
    except CopilotError as exc:
        raise to_http_error(exc) from exc


@router.get("/{session_id}", response_model=ConversationSession)
def get_session(session_id: str, owner_id: str = Depends(owner_dependency)) -> ConversationSession:
    try:
        return session_store.load_for_owner(session_id, owner_id)
    except CopilotError as exc:
        raise to_http_error(exc) from exc


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str, owner_id: str = Depends(owner_dependency)) -> Response:
    try:
        session_store.load_for_owner(session_id, owner_id)
        with session_locks.exclusive(session_id):
            session_store.delete(session_id)
        session_autosave.untrack(session_id)
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="delete_session",
        resource_type="conversation_session",
        resource_id=session_id,
        owner_id=owner_id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{session_id}/draft", response_model=TurnResponse)
def edit_draft(
    session_id: str,
    payload: EditDraftRequest,
    owner_id: str = Depends(owner_dependency),
) -> TurnResponse:
    """Replace the structure draft with a user-edited one.

    ``revision`` must match the stored revision; a stale revision gets 409.
    """

    try:
        result = conversation_engine.edit_draft(session_id, owner_id, payload.revision, payload.structure)
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="edit_draft",
        resource_type="conversation_session",
        resource_id=session_id,
        owner_id=owner_id,
        extra={"revision": result.session.revision},
    )
    return TurnResponse.from_result(result)


@router.get("/{session_id}/export")
def export_session(session_id: str, owner_id: str = Depends(owner_dependency)) -> Dict[str, Any]:
    try:
        payload = session_store.export(session_id, owner_id)
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="export_session",
        resource_type="conversation_session",
        resource_id=session_id,
        owner_id=owner_id,
        extra={"message_count": payload["message_count"]},
    )
    return payload


def _autosave_state(session_id: str) -> AutoSaveStateResponse:
    working = session_autosave.working_copy(session_id)
    return AutoSaveStateResponse(
        **asdict(session_autosave.state(session_id)),
        structure_draft=working.structure_draft if working else None,
    )


@router.put("/{session_id}/working-draft", response_model=AutoSaveStateResponse)
def save_working_draft(
    session_id: str,
    payload: WorkingDraftRequest,
    owner_id: str = Depends(owner_dependency),
) -> AutoSaveStateResponse:
    """Keep an in-progress structure edit; the autosave task persists it.

    A working copy that went stale against a newer stored revision gets 409
    until it is resolved.
    """

    try:
        conversation_engine.autosave_draft(session_id, owner_id, payload.structure)
    except CopilotError as exc:
        raise to_http_error(exc) from exc
    return _autosave_state(session_id)


@router.get("/{session_id}/autosave", response_model=AutoSaveStateResponse)
def get_autosave_state(session_id: str, owner_id: str = Depends(owner_dependency)) -> AutoSaveStateResponse:
    try:
        session_store.load_for_owner(session_id, owner_id)
    except CopilotError as exc:
        raise to_http_error(exc) from exc
    return _autosave_state(session_id)


@router.post("/{session_id}/autosave/resolve", response_model=ConversationSession)
def resolve_autosave(session_id: str, owner_id: str = Depends(owner_dependency)) -> ConversationSession:
    """Drop pending working-copy edits in favour of the stored session."""

    try:
        session_store.load_for_owner(session_id, owner_id)
        latest = session_autosave.resolve(session_id)
    except CopilotError as exc:
        raise to_http_error(exc) from exc

    audit_service.log_event(
        action="resolve_autosave",
        resource_type="conversation_session",
        resource_id=session_id,
        owner_id=owner_id,
        extra={"revision": latest.revision},
    )
    return latest
