from src.copilot.services.parsing.response_parser import END_MARKER, START_MARKER, ParseFail, ParseOk, ResponseParser
from tests.copilot.fakes import STRUCTURE_JSON, STRUCTURE_REPLY

parser = ResponseParser()


def test_parses_structure_between_markers_and_strips_it_from_display_text():
    outcome = parser.parse(STRUCTURE_REPLY)

    assert isinstance(outcome, ParseOk)
    assert outcome.repaired is False
    assert outcome.draft.title == "Python Basics"
    assert [s.title for s in outcome.draft.sections] == ["Getting Started", "Core Syntax"]
    assert outcome.draft.sections[0].lessons[0].content == "<p>Install it.</p>"
    assert outcome.draft.sections[0].lessons[1].content == ""
    assert START_MARKER not in outcome.display_text
    assert outcome.display_text.startswith("Here is the outline.")
    assert outcome.display_text.endswith("What do you think?")


def test_parses_fenced_json_block():
    text = f"Sure! Here you go:\n```json\n{STRUCTURE_JSON}\n```\nAnything else?"

    outcome = parser.parse(text)

    assert isinstance(outcome, ParseOk)
    assert outcome.draft.lesson_count == 3
    assert "```" not in outcome.display_text


def test_falls_back_to_largest_braced_span_in_prose():
    text = 'Use {"a": 1} as a hint. Proposal: ' + STRUCTURE_JSON + " Thanks."

    outcome = parser.parse(text)

    assert isinstance(outcome, ParseOk)
    assert outcome.draft.title == "Python Basics"


def test_order_indexes_come_from_array_position_not_model_fields():
    payload = """{"title": "T", "sections": [
        {"title": "B", "order": 7, "order_index": 3, "lessons": [{"title": "b2", "order_index": 9}, {"title": "b1"}]},
        {"title": "A", "order_index": 0, "lessons": [{"title": "a1", "order": 42}]}
    ]}"""

    outcome = parser.parse(payload)

    assert isinstance(outcome, ParseOk)
    assert [(s.title, s.order_index) for s in outcome.draft.sections] == [("B", 0), ("A", 1)]
    assert [(l.title, l.order_index) for l in outcome.draft.sections[0].lessons] == [("b2", 0), ("b1", 1)]
    assert outcome.draft.sections[1].lessons[0].order_index == 0


def test_repairs_trailing_commas():
    payload = '{"title": "T", "sections": [{"title": "S", "lessons": [{"title": "L",},],},],}'

    outcome = parser.parse(f"{START_MARKER}{payload}{END_MARKER}")

    assert isinstance(outcome, ParseOk)
    assert outcome.repaired is True
    assert outcome.draft.sections[0].lessons[0].title == "L"


def test_repairs_raw_control_characters_inside_strings():
    payload = '{"title": "T", "sections": [{"title": "S", "lessons": [{"title": "L", "content": "line one\nline two\tend"}]}]}'

    outcome = parser.parse(payload)

    assert isinstance(outcome, ParseOk)
    assert outcome.repaired is True
    assert outcome.draft.sections[0].lessons[0].content == "line one\nline two\tend"


def test_repairs_truncated_payload_to_last_complete_object():
    payload = (
        '{"title": "T", "sections": ['
        '{"title": "S1", "lessons": [{"title": "L1"}]}, '
        '{"title": "S2", "lessons": [{"title": "L2"'
    )

    outcome = parser.parse(f"Outline:\n{START_MARKER}\n{payload}")

    assert isinstance(outcome, ParseOk)
    assert outcome.repaired is True
    assert [s.title for s in outcome.draft.sections] == ["S1"]


def test_unwraps_course_envelope():
    outcome = parser.parse('{"course": ' + STRUCTURE_JSON + "}")

    assert isinstance(outcome, ParseOk)
    assert outcome.draft.title == "Python Basics"


def test_plain_text_is_a_parse_failure():
    outcome = parser.parse("Who is the audience for this course?")

    assert isinstance(outcome, ParseFail)
    assert outcome.ok is False
    assert "no structured payload" in outcome.reason


def test_empty_text_is_a_parse_failure():
    assert isinstance(parser.parse(""), ParseFail)
    assert isinstance(parser.parse("   \n"), ParseFail)


def test_missing_required_fields_fail_validation():
    no_title = '{"sections": [{"title": "S", "lessons": [{"title": "L"}]}]}'
    no_lessons = '{"title": "T", "sections": [{"title": "S"}]}'
    untitled_lesson = '{"title": "T", "sections": [{"title": "S", "lessons": [{"content": "x"}]}]}'
    no_sections = '{"title": "T", "sections": []}'

    for payload in (no_title, no_lessons, untitled_lesson, no_sections):
        outcome = parser.parse(payload)
        assert isinstance(outcome, ParseFail), payload
        assert "validation" in outcome.reason


def test_blank_titles_are_rejected():
    outcome = parser.parse('{"title": "   ", "sections": [{"title": "S", "lessons": [{"title": "L"}]}]}')

    assert isinstance(outcome, ParseFail)


def test_unrepairable_garbage_never_raises():
    for text in ("{{{{", "{ not json at all }", "[1, 2, 3]", '{"title": }', "}{"):
        outcome = parser.parse(text)
        assert isinstance(outcome, ParseFail), text


def test_validate_payload_accepts_decoded_structure():
    outcome = parser.validate_payload(
        {"title": "Edited", "sections": [{"title": "Only", "lessons": [{"title": "One"}, {"title": "Two"}]}]}
    )

    assert isinstance(outcome, ParseOk)
    assert outcome.draft.title == "Edited"
    assert [l.order_index for l in outcome.draft.sections[0].lessons] == [0, 1]


def test_validate_payload_rejects_non_objects():
    assert isinstance(parser.validate_payload(["title"]), ParseFail)
