"""JSON schemas for structured question generation.

Each question type has its own ``content`` shape. The same schemas are sent
to the model as the response format and documented for validation tooling.
Every call builds a new dict, so callers may mutate the result freely.
"""

import logging
from typing import Any, Dict, List

from src.models.question import Difficulty, QuestionType

logger = logging.getLogger(__name__)

JSON_SCHEMA_DRAFT = "http://json-schema.org/draft-07/schema#"

QUESTION_REQUIRED_FIELDS = ["questionText", "type", "difficulty", "content"]


def _string(description: str, **constraints) -> Dict[str, Any]:
    return {"type": "string", "description": description, **constraints}


def _integer(description: str, **constraints) -> Dict[str, Any]:
    return {"type": "integer", "description": description, **constraints}


def _boolean(description: str) -> Dict[str, Any]:
    return {"type": "boolean", "description": description}


def _object(properties: Dict[str, Any], required: List[str], description: str = None) -> Dict[str, Any]:
    schema = {"type": "object", "required": list(required), "properties": properties}
    if description:
        schema["description"] = description
    return schema


def _array(items: Dict[str, Any], description: str, min_items: int = None, max_items: int = None) -> Dict[str, Any]:
    schema = {"type": "array", "description": description, "items": items}
    if min_items is not None:
        schema["minItems"] = min_items
    if max_items is not None:
        schema["maxItems"] = max_items
    return schema


def _mcq_content(multiple_correct: bool) -> Dict[str, Any]:
    option = _object(
        {
            "id": _string("Option identifier (a, b, c, ...)"),
            "text": _string("Option text"),
            "correct": _boolean("Whether this option is correct"),
        },
        required=["text", "correct"],
    )
    if multiple_correct:
        options = _array(option, "Options for MCQ_MULTI (at least 2 correct)", min_items=4, max_items=6)
    else:
        options = _array(option, "Options for MCQ_SINGLE (exactly 1 correct)", min_items=4, max_items=4)
    return _object({"options": options}, required=["options"])


def _true_false_content() -> Dict[str, Any]:
    return _object({"answer": _boolean("The correct answer (true or false)")}, required=["answer"])


def _open_content() -> Dict[str, Any]:
    return _object({"answer": _string("Model answer for the open question", minLength=1)}, required=["answer"])


def _fill_gap_content() -> Dict[str, Any]:
    gap = _object(
        {
            "id": _integer("Sequential gap ID starting from 1, referenced as {id} in text", minimum=1),
            "answer": _string("Correct answer for this gap"),
        },
        required=["id", "answer"],
    )
    return _object(
        {
            "text": _string("Text with gaps marked as {1}, {2}, ..."),
            "gaps": _array(gap, "Gaps with sequential IDs and correct answers", min_items=1),
        },
        required=["text", "gaps"],
    )


def _ordering_content() -> Dict[str, Any]:
    item = _object(
        {
            "id": _integer("Unique sequential ID for this item"),
            "text": _string("Text content of this item"),
        },
        required=["id", "text"],
    )
    return _object(
        {"items": _array(item, "Items to be ordered, listed in the correct order", min_items=2, max_items=10)},
        required=["items"],
    )


def _matching_content() -> Dict[str, Any]:
    left_item = _object(
        {
            "id": _integer("Unique ID for this left item"),
            "text": _string("Text content of left item"),
            "matchId": _integer("ID of the matching right item"),
        },
        required=["id", "text", "matchId"],
    )
    right_item = _object(
        {
            "id": _integer("Unique ID for this right item"),
            "text": _string("Text content of right item"),
        },
        required=["id", "text"],
    )
    return _object(
        {
            "left": _array(left_item, "Left items with matchId references", min_items=4),
            "right": _array(right_item, "Right items to be matched against", min_items=4),
        },
        required=["left", "right"],
    )


def _hotspot_content() -> Dict[str, Any]:
    region = _object(
        {
            "id": _integer("Unique ID for this region"),
            "x": _integer("X coordinate", minimum=0),
            "y": _integer("Y coordinate", minimum=0),
            "width": _integer("Width of the region", minimum=0),
            "height": _integer("Height of the region", minimum=0),
            "correct": _boolean("Whether this region is a correct hotspot"),
        },
        required=["id", "x", "y", "width", "height", "correct"],
    )
    return _object(
        {
            "imageUrl": _string("URL or reference to the image"),
            "regions": _array(region, "Clickable hotspot regions with unique IDs", min_items=2, max_items=6),
        },
        required=["imageUrl", "regions"],
    )


def _compliance_content() -> Dict[str, Any]:
    statement = _object(
        {
            "id": _integer("Unique ID for this statement"),
            "text": _string("The compliance statement or action"),
            "compliant": _boolean("Whether this statement is compliant"),
        },
        required=["id", "text", "compliant"],
    )
    return _object(
        {"statements": _array(statement, "Compliance statements with unique IDs", min_items=2, max_items=6)},
        required=["statements"],
    )


_CONTENT_BUILDERS = {
    QuestionType.MCQ_SINGLE: lambda: _mcq_content(multiple_correct=False),
    QuestionType.MCQ_MULTI: lambda: _mcq_content(multiple_correct=True),
    QuestionType.TRUE_FALSE: _true_false_content,
    QuestionType.OPEN: _open_content,
    QuestionType.FILL_GAP: _fill_gap_content,
    QuestionType.ORDERING: _ordering_content,
    QuestionType.MATCHING: _matching_content,
    QuestionType.HOTSPOT: _hotspot_content,
    QuestionType.COMPLIANCE: _compliance_content,
}


def _base_question_properties() -> Dict[str, Any]:
    """Envelope fields shared by every question type."""
    return {
        "questionText": _string("The question text/stem", minLength=10, maxLength=1000),
        "type": {"type": "string", "description": "Question type", "enum": [t.value for t in QuestionType]},
        "difficulty": {"type": "string", "description": "Difficulty level", "enum": [d.value for d in Difficulty]},
        "hint": _string("Optional hint text", maxLength=500),
        "explanation": _string("Explanation of the answer", maxLength=2000),
        "content": {"type": "object", "description": "Type-specific content structure"},
        "confidence": {"type": "number", "description": "Confidence score 0.0-1.0", "minimum": 0.0, "maximum": 1.0},
    }


def _envelope(item_schema: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "$schema": JSON_SCHEMA_DRAFT,
        "type": "object",
        "required": ["questions"],
        "properties": {"questions": {"type": "array", "items": item_schema}},
    }


class QuestionSchemaRegistry:
    """Stateless lookup of response schemas by question type."""

    @staticmethod
    def get_content_schema(question_type: QuestionType) -> Dict[str, Any]:
        """Schema of the ``content`` object for one question type."""
        try:
            builder = _CONTENT_BUILDERS[QuestionType(question_type)]
        except (KeyError, ValueError):
            raise ValueError(f"Unsupported question type: {question_type}")
        return builder()

    @staticmethod
    def get_schema_for_question_type(question_type: QuestionType) -> Dict[str, Any]:
        """
        Full response schema for a single-type generation call.

        Args:
            question_type: Requested question type

        Returns:
            Draft-07 schema of ``{"questions": [...]}`` with a typed ``content``
        """
        properties = _base_question_properties()
        properties["content"] = QuestionSchemaRegistry.get_content_schema(question_type)
        schema = _envelope(_object(properties, QUESTION_REQUIRED_FIELDS))
        logger.debug(f"Generated schema for question type: {question_type}")
        return schema

    @staticmethod
    def get_composite_schema() -> Dict[str, Any]:
        """Response schema accepting any question type with a generic ``content`` object."""
        return _envelope(_object(_base_question_properties(), QUESTION_REQUIRED_FIELDS))
