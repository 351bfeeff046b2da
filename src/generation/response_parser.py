"""Parsing and structural validation of structured model output.

The steps are plain functions so each can be tested on its own:
``clean_json_response`` strips markdown fences, ``looks_truncated`` tells a
cut-off reply from ordinary malformed JSON, ``parse_question`` turns one
element into a ``GeneratedQuestion`` and ``validate_content_structure``
checks the type-specific ``content`` object.
"""

import json
import logging
import re
from typing import Any, Dict, List

from src.generation.exceptions import ResponseParseError, TruncatedResponseError
from src.models.question import Difficulty, GeneratedQuestion, GenerationResult, QuestionType

logger = logging.getLogger(__name__)

GAP_PLACEHOLDER = re.compile(r"\{(\d+)\}")

REQUIRED_QUESTION_FIELDS = ("questionText", "type", "difficulty", "content")


def clean_json_response(response: str) -> str:
    """Strip surrounding whitespace and markdown code fences."""
    cleaned = (response or "").strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]

    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]

    return cleaned.strip()


def looks_truncated(text: str) -> bool:
    """
    Heuristic for output cut off mid-document.

    True when a string literal is left open or more brackets are opened
    than closed. Balanced but malformed JSON is not considered truncated.
    """
    depth = 0
    in_string = False
    escaped = False

    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1

    return in_string or depth > 0


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _optional_text(value: Any):
    return value if isinstance(value, str) else None


def _is_array(content: Dict[str, Any], key: str) -> bool:
    return isinstance(content.get(key), list)


def _validate_fill_gap(content: Dict[str, Any]) -> None:
    if not isinstance(content.get("text"), str) or "gaps" not in content:
        raise ResponseParseError("FILL_GAP question must have 'text' and 'gaps' in content")
    gaps = content["gaps"]
    if not isinstance(gaps, list):
        raise ResponseParseError("FILL_GAP 'gaps' must be an array")
    if not gaps:
        raise ResponseParseError("FILL_GAP must have at least one gap defined")

    ids = []
    for gap in gaps:
        if not isinstance(gap, dict) or not _is_int(gap.get("id")):
            raise ResponseParseError("FILL_GAP every gap must have an integer 'id'")
        if not isinstance(gap.get("answer"), str) or not gap["answer"].strip():
            raise ResponseParseError(f"FILL_GAP gap id={gap['id']} must have a non-empty 'answer'")
        ids.append(gap["id"])

    expected = list(range(1, len(ids) + 1))
    if sorted(ids) != expected:
        raise ResponseParseError(
            f"FILL_GAP gap ids must be sequential integers starting from 1 (expected {expected}, got {sorted(ids)})"
        )

    referenced = {int(match) for match in GAP_PLACEHOLDER.findall(content["text"])}
    for gap_id in sorted(referenced):
        if gap_id not in ids:
            raise ResponseParseError(f"FILL_GAP id={gap_id} referenced in text but missing from gaps")
    for gap_id in ids:
        if gap_id not in referenced:
            raise ResponseParseError(f"FILL_GAP gap id={gap_id} is not referenced in text")


def validate_content_structure(content: Dict[str, Any], question_type: QuestionType) -> None:
    """
    Check the ``content`` object of a question against its type.

    Raises:
        ResponseParseError: Naming the type and the violated rule
    """
    if not isinstance(content, dict):
        raise ResponseParseError(f"{question_type.value} question 'content' must be an object")

    if question_type in (QuestionType.MCQ_SINGLE, QuestionType.MCQ_MULTI):
        if not _is_array(content, "options"):
            raise ResponseParseError("MCQ question must have 'options' array in content")
        for option in content["options"]:
            if (
                not isinstance(option, dict)
                or not isinstance(option.get("text"), str)
                or not isinstance(option.get("correct"), bool)
            ):
                raise ResponseParseError("MCQ option must have 'text' and boolean 'correct'")

    elif question_type == QuestionType.TRUE_FALSE:
        if not isinstance(content.get("answer"), bool):
            raise ResponseParseError("TRUE_FALSE question must have boolean 'answer' in content")

    elif question_type == QuestionType.OPEN:
        answer = content.get("answer")
        if not isinstance(answer, str) or not answer.strip():
            raise ResponseParseError("OPEN question must have non-empty 'answer' in content")

    elif question_type == QuestionType.FILL_GAP:
        _validate_fill_gap(content)

    elif question_type == QuestionType.ORDERING:
        if not _is_array(content, "items"):
            raise ResponseParseError("ORDERING question must have 'items' array in content")
        if not content["items"]:
            raise ResponseParseError("ORDERING question must have at least one item")

    elif question_type == QuestionType.MATCHING:
        if not _is_array(content, "left") or not _is_array(content, "right"):
            raise ResponseParseError("MATCHING question must have 'left' and 'right' arrays in content")

    elif question_type == QuestionType.HOTSPOT:
        if not isinstance(content.get("imageUrl"), str) or "regions" not in content:
            raise ResponseParseError("HOTSPOT question must have 'imageUrl' and 'regions' in content")
        if not _is_array(content, "regions"):
            raise ResponseParseError("HOTSPOT 'regions' must be an array")

    elif question_type == QuestionType.COMPLIANCE:
        if not _is_array(content, "statements"):
            raise ResponseParseError("COMPLIANCE question must have 'statements' array in content")


def parse_question(node: Any) -> GeneratedQuestion:
    """
    Parse one element of the ``questions`` array.

    Raises:
        ResponseParseError: If required fields are missing or invalid
    """
    if not isinstance(node, dict):
        raise ResponseParseError("Question must be a JSON object")

    missing = [field for field in REQUIRED_QUESTION_FIELDS if node.get(field) is None]
    if missing:
        raise ResponseParseError(f"Question missing required fields: {', '.join(missing)}")

    try:
        question_type = QuestionType(node["type"])
    except ValueError:
        raise ResponseParseError(f"Unknown question type: {node['type']}")
    try:
        difficulty = Difficulty(node["difficulty"])
    except ValueError:
        raise ResponseParseError(f"Unknown difficulty: {node['difficulty']}")

    content = node["content"]
    validate_content_structure(content, question_type)

    confidence = node.get("confidence")
    if confidence is not None and not isinstance(confidence, (int, float)):
        confidence = None

    return GeneratedQuestion(
        question_text=str(node["questionText"]),
        type=question_type,
        difficulty=difficulty,
        content=content,
        hint=_optional_text(node.get("hint")),
        explanation=_optional_text(node.get("explanation")),
        confidence=confidence,
    )


def parse_structured_response(raw_response: str, expected_type: QuestionType, max_tokens: int) -> GenerationResult:
    """
    Parse a raw model reply into questions.

    Elements that fail to parse become warnings. A question whose type
    differs from ``expected_type`` is kept under its actual type with a
    warning.

    Args:
        raw_response: Text returned by the model
        expected_type: Question type that was requested
        max_tokens: Output token ceiling of the call, quoted on truncation

    Returns:
        GenerationResult with at least one question

    Raises:
        TruncatedResponseError: If the reply was cut off
        ResponseParseError: If the reply is not usable at all
    """
    cleaned = clean_json_response(raw_response)

    try:
        document = json.loads(cleaned)
    except json.JSONDecodeError as e:
        if looks_truncated(cleaned):
            logger.error(f"Structured response truncated at max_tokens={max_tokens}: {e}")
            raise TruncatedResponseError(max_tokens, str(e)) from e
        raise ResponseParseError(f"Invalid JSON in structured response: {e}") from e

    if not isinstance(document, dict) or "questions" not in document:
        raise ResponseParseError("Response missing 'questions' field")

    elements = document["questions"]
    if not isinstance(elements, list):
        raise ResponseParseError("'questions' field must be an array")

    questions: List[GeneratedQuestion] = []
    warnings: List[str] = []

    for element in elements:
        try:
            question = parse_question(element)
        except ResponseParseError as e:
            warnings.append(f"Failed to parse question: {e}")
            logger.warning(f"Failed to parse individual question: {e}")
            continue

        if question.type != expected_type:
            warnings.append(f"Question type mismatch: expected {expected_type.value} but got {question.type.value}")
        questions.append(question)

    if not questions:
        raise ResponseParseError("No valid questions parsed from response")

    return GenerationResult(questions=questions, warnings=warnings, schema_valid=True)
