from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class GenerationStatus(str, Enum):
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"


class EntityType(str, Enum):
    COURSE = "course"
    SECTION = "section"
    LESSON = "lesson"


class EntityRef(BaseModel):
    entity_type: EntityType
    entity_id: str
    parent_id: Optional[str] = None


class GenerationResult(BaseModel):
    course_id: str
    section_ids: List[str] = Field(default_factory=list)
    lesson_ids: List[str] = Field(default_factory=list)
    section_count: int = 0
    lesson_count: int = 0
    entity_count: int = 0


class GenerationFailure(BaseModel):
    # Human-readable description of the creation step that failed,
    # e.g. "lesson 2.1 'Variables'".
    failed_step: str
    error: str
    rolled_back: int = 0
    rollback_errors: int = 0


class GenerationTransaction(BaseModel):
    """Record of one materialization run for an idempotency key."""

    idempotency_key: str
    session_id: str
    owner_id: str
    status: GenerationStatus = GenerationStatus.RUNNING
    created: List[EntityRef] = Field(default_factory=list)
    result: Optional[GenerationResult] = None
    failure: Optional[GenerationFailure] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
