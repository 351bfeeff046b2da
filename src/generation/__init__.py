"""Structured question generation against the language model."""

from src.generation.exceptions import (
    AiServiceError,
    InvalidGenerationRequestError,
    ResponseParseError,
    TruncatedResponseError,
)
from src.generation.schema_registry import QuestionSchemaRegistry
from src.generation.structured_client import StructuredGenerationClient

__all__ = [
    "AiServiceError",
    "InvalidGenerationRequestError",
    "QuestionSchemaRegistry",
    "ResponseParseError",
    "StructuredGenerationClient",
    "TruncatedResponseError",
]
