from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.copilot.domain.models.conversation_session import SessionStage, StageTransition
from src.copilot.domain.models.course_structure import CourseStructureDraft
from src.copilot.domain.models.generation import GenerationFailure, GenerationResult
from src.copilot.services.conversation.engine import TurnResult


class TurnResponse(BaseModel):
    session_id: str
    stage: SessionStage
    revision: int
    assistant_message: str
    structure_draft: Optional[CourseStructureDraft] = None
    generation_result: Optional[GenerationResult] = None
    generation_failure: Optional[GenerationFailure] = None
    transitions: List[StageTransition] = Field(default_factory=list)
    cancelled: bool = False

    @classmethod
    def from_result(cls, result: TurnResult) -> "TurnResponse":
        generation = result.generation
        return cls(
            session_id=result.session.id,
            stage=result.session.stage,
            revision=result.session.revision,
            assistant_message=result.assistant_message,
            structure_draft=result.session.structure_draft,
            generation_result=generation.result if generation else None,
            generation_failure=generation.failure if generation else None,
            transitions=result.transitions,
            cancelled=result.cancelled,
        )


class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class EditDraftRequest(BaseModel):
    revision: int
    structure: Dict[str, Any]


class WorkingDraftRequest(BaseModel):
    structure: Dict[str, Any]


class AutoSaveStateResponse(BaseModel):
    session_id: str
    tracked: bool
    dirty: bool = False
    stale: bool = False
    revision: Optional[int] = None
    latest_revision: Optional[int] = None
    structure_draft: Optional[CourseStructureDraft] = None
