from __future__ import annotations

import hashlib
import json
from typing import List

from pydantic import BaseModel, Field


class LessonDraft(BaseModel):
    title: str
    content: str = ""
    # Position within the parent section, assigned from array order.
    order_index: int


class SectionDraft(BaseModel):
    title: str
    description: str = ""
    order_index: int
    lessons: List[LessonDraft] = Field(default_factory=list)


class CourseStructureDraft(BaseModel):
    """Validated course/section/lesson outline derived from assistant output.

    Instances are only ever produced by the response parser (or by
    ``validate_payload`` for manual edits), so order indexes are always a
    contiguous 0-based sequence within each parent.
    """

    title: str
    description: str = ""
    sections: List[SectionDraft] = Field(default_factory=list)

    @property
    def lesson_count(self) -> int:
        return sum(len(section.lessons) for section in self.sections)

    def content_hash(self) -> str:
        """Stable SHA-256 of the draft's canonical JSON form."""

        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
