from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.copilot.domain.models.course_structure import CourseStructureDraft, LessonDraft, SectionDraft

logger = logging.getLogger(__name__)

START_MARKER = "<<<COURSE_STRUCTURE>>>"
END_MARKER = "<<<END_COURSE_STRUCTURE>>>"

_FENCE_OPEN = re.compile(r"```[A-Za-z]*[ \t]*\r?\n?")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}
_CLOSERS = {"{": "}", "[": "]"}

MAX_REPAIR_PASSES = 2


@dataclass(frozen=True)
class ParseOk:
    draft: CourseStructureDraft
    # Assistant text with the structured payload removed.
    display_text: str
    repaired: bool = False
    ok = True


@dataclass(frozen=True)
class ParseFail:
    reason: str
    ok = False


ParseOutcome = Union[ParseOk, ParseFail]


class _RawLesson(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: str = Field(min_length=1)
    content: Optional[str] = None


class _RawSection(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: str = Field(min_length=1)
    description: Optional[str] = None
    lessons: List[_RawLesson]


class _RawCourse(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: str = Field(min_length=1)
    description: Optional[str] = None
    sections: List[_RawSection] = Field(min_length=1)


class _DecodeError(Exception):
    pass


@dataclass(frozen=True)
class _Candidate:
    payload: str
    start: int
    end: int


class ResponseParser:
    """Turn raw assistant text into a validated ``CourseStructureDraft``.

    Assistant output is untrusted: the payload may be wrapped in markers, a
    fenced block or loose prose, and may carry trailing commas, raw control
    characters or be cut off mid-document. ``parse`` never raises; callers
    branch on ``ParseOk`` / ``ParseFail``.
    """

    def parse(self, text: str) -> ParseOutcome:
        try:
            return self._parse(text)
        except Exception as exc:  # pragma: no cover - last-resort guard
            logger.exception("Unexpected error while parsing assistant response")
            return ParseFail(reason=f"unexpected parser error: {exc}")

    def validate_payload(self, payload: Any) -> ParseOutcome:
        """Validate and normalise an already-decoded structure."""

        try:
            return self._validate(payload, display_text="", repaired=False)
        except Exception as exc:  # pragma: no cover - last-resort guard
            logger.exception("Unexpected error while validating structure payload")
            return ParseFail(reason=f"unexpected parser error: {exc}")

    def _parse(self, text: str) -> ParseOutcome:
        if not text or not text.strip():
            return ParseFail(reason="empty response")

        candidate = self._locate(text)
        if candidate is None:
            return ParseFail(reason="no structured payload found")

        try:
            data, repaired = self._decode(candidate.payload)
        except _DecodeError as exc:
            return ParseFail(reason=f"payload is not valid JSON: {exc}")

        display_text = (text[: candidate.start] + text[candidate.end :]).strip()
        return self._validate(data, display_text=display_text, repaired=repaired)

    # Locating the payload

    def _locate(self, text: str) -> Optional[_Candidate]:
        marker = self._between_markers(text)
        if marker is not None:
            return marker
        fenced = self._fenced_block(text)
        if fenced is not None:
            return fenced
        return self._largest_braced(text)

    @staticmethod
    def _between_markers(text: str) -> Optional[_Candidate]:
        start = text.find(START_MARKER)
        if start < 0:
            return None
        body_start = start + len(START_MARKER)
        end = text.find(END_MARKER, body_start)
        if end < 0:
            # Generation was cut off before the end marker.
            return _Candidate(text[body_start:], start, len(text))
        return _Candidate(text[body_start:end], start, end + len(END_MARKER))

    @staticmethod
    def _fenced_block(text: str) -> Optional[_Candidate]:
        for match in _FENCE_OPEN.finditer(text):
            body_start = match.end()
            if not text[body_start:].lstrip().startswith("{"):
                continue
            close = text.find("```", body_start)
            if close < 0:
                return _Candidate(text[body_start:], match.start(), len(text))
            return _Candidate(text[body_start:close], match.start(), close + 3)
        return None

    @staticmethod
    def _largest_braced(text: str) -> Optional[_Candidate]:
        spans: List[Tuple[int, int]] = []
        depth = 0
        start = -1
        in_string = False
        escaped = False
        for i, ch in enumerate(text):
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"' and depth > 0:
                in_string = True
            elif ch == "{":
                if depth == 0:
                    start = i
                depth += 1
            elif ch == "}" and depth > 0:
                depth -= 1
                if depth == 0:
                    spans.append((start, i + 1))

        best: Optional[Tuple[int, int]] = max(spans, key=lambda s: s[1] - s[0]) if spans else None
        if depth > 0:
            # Unbalanced tail, most likely a truncated payload.
            tail = (start, len(text))
            if best is None or tail[1] - tail[0] > best[1] - best[0]:
                best = tail
        if best is None:
            return None
        return _Candidate(text[best[0] : best[1]], best[0], best[1])

    # Decoding and repair

    def _decode(self, payload: str) -> Tuple[Any, bool]:
        try:
            return json.loads(payload), False
        except json.JSONDecodeError as exc:
            last_error: Exception = exc

        repaired = payload
        for pass_number in range(1, MAX_REPAIR_PASSES + 1):
            repaired = _strip_trailing_commas(_escape_control_characters(repaired))
            if pass_number == MAX_REPAIR_PASSES:
                repaired = _strip_trailing_commas(_close_truncated(repaired))
            try:
                data = json.loads(repaired)
            except json.JSONDecodeError as exc:
                last_error = exc
                continue
            logger.debug("Recovered malformed structure after %s repair pass(es)", pass_number)
            return data, True
        raise _DecodeError(str(last_error))

    # Validation and normalisation

    def _validate(self, data: Any, *, display_text: str, repaired: bool) -> ParseOutcome:
        if isinstance(data, Mapping) and set(data.keys()) == {"course"} and isinstance(data["course"], Mapping):
            data = data["course"]
        if not isinstance(data, Mapping):
            return ParseFail(reason="structure must be a JSON object")

        try:
            raw = _RawCourse.model_validate(data)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'structure'}: {err['msg']}"
                for err in exc.errors()[:5]
            )
            return ParseFail(reason=f"structure failed validation: {problems}")

        # Order is structural: indexes always come from array position.
        draft = CourseStructureDraft(
            title=raw.title,
            description=raw.description or "",
            sections=[
                SectionDraft(
                    title=section.title,
                    description=section.description or "",
                    order_index=section_index,
                    lessons=[
                        LessonDraft(title=lesson.title, content=lesson.content or "", order_index=lesson_index)
                        for lesson_index, lesson in enumerate(section.lessons)
                    ],
                )
                for section_index, section in enumerate(raw.sections)
            ],
        )
        return ParseOk(draft=draft, display_text=display_text, repaired=repaired)


def _escape_control_characters(payload: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    for ch in payload:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ord(ch) < 0x20:
                out.append(_CONTROL_ESCAPES.get(ch, f"\\u{ord(ch):04x}"))
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _strip_trailing_commas(payload: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    length = len(payload)
    for i, ch in enumerate(payload):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < length and payload[j].isspace():
                j += 1
            if j == length or payload[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def _close_truncated(payload: str) -> str:
    """Cut back to the last complete object and close whatever is still open."""

    last_close = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(payload):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "}":
            last_close = i
    if last_close < 0:
        return payload

    truncated = payload[: last_close + 1]
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in truncated:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
    return truncated + "".join(_CLOSERS[opener] for opener in reversed(stack))


response_parser = ResponseParser()
