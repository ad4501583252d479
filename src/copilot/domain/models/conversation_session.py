from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.copilot.domain.models.course_structure import CourseStructureDraft


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionStage(str, Enum):
    INITIAL = "Initial"
    GATHERING_REQUIREMENTS = "GatheringRequirements"
    STRUCTURE_PROPOSED = "StructureProposed"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    GENERATING = "Generating"
    COMPLETE = "Complete"
    FAILED = "Failed"


class Message(BaseModel):
    """A single chat message. Immutable once appended to a session."""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    timestamp: datetime


class StageTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_stage: SessionStage
    to_stage: SessionStage
    cause: str
    at: datetime


class ConversationSession(BaseModel):
    """A persisted course-building conversation.

    Messages are append-only; ``revision`` is owned by the session store and
    increases by exactly one on every accepted save.
    """

    id: str
    owner_id: str
    title: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    stage: SessionStage = SessionStage.INITIAL
    structure_draft: Optional[CourseStructureDraft] = None
    stage_history: List[StageTransition] = Field(default_factory=list)
    revision: int = 0
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    # Set by the reaper when the session is soft-expired.
    expired_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expired_at is not None

    def append_message(self, role: MessageRole, content: str, timestamp: datetime) -> Message:
        message = Message(role=role, content=content, timestamp=timestamp)
        self.messages.append(message)
        return message

    def to_summary(self) -> "SessionSummary":
        return SessionSummary(
            id=self.id,
            title=self.title,
            stage=self.stage,
            message_count=len(self.messages),
            revision=self.revision,
            updated_at=self.updated_at,
            expired=self.is_expired,
        )


class SessionSummary(BaseModel):
    id: str
    title: Optional[str] = None
    stage: SessionStage
    message_count: int
    revision: int
    updated_at: datetime
    expired: bool = False


class SessionSeed(BaseModel):
    """Optional initial data for a new session."""

    title: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    structure_draft: Optional[CourseStructureDraft] = None
