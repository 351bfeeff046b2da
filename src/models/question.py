"""Question, chunk and per-task generation models."""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# ============================================================================
# Enumerations
# ============================================================================


class QuestionType(str, Enum):
    """Supported question types."""

    MCQ_SINGLE = "MCQ_SINGLE"
    MCQ_MULTI = "MCQ_MULTI"
    TRUE_FALSE = "TRUE_FALSE"
    OPEN = "OPEN"
    FILL_GAP = "FILL_GAP"
    ORDERING = "ORDERING"
    MATCHING = "MATCHING"
    HOTSPOT = "HOTSPOT"
    COMPLIANCE = "COMPLIANCE"


class Difficulty(str, Enum):
    """Question difficulty tiers, easiest first."""

    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"

    def easier(self) -> "Difficulty":
        """Return the next easier tier (EASY stays EASY)."""
        if self is Difficulty.HARD:
            return Difficulty.MEDIUM
        return Difficulty.EASY


# ============================================================================
# Document chunks
# ============================================================================


class DocumentChunk(BaseModel):
    """A bounded slice of a source document, as produced by ingestion."""

    chunk_index: int
    content: str
    chapter_title: Optional[str] = None
    chapter_number: Optional[int] = None
    section_title: Optional[str] = None
    section_number: Optional[int] = None


# ============================================================================
# Generation request / result
# ============================================================================


class GenerationRequest(BaseModel):
    """One structured generation call: a chunk, a question type and a count.

    Fields are optional at the model level so the client can reject
    malformed requests with a clear message instead of a pydantic error.
    """

    chunk_content: Optional[str] = None
    chunk_index: Optional[int] = None
    document_id: Optional[UUID] = None
    question_type: Optional[QuestionType] = None
    question_count: int = 0
    difficulty: Optional[Difficulty] = None
    language: str = "en"

    # Polled before every attempt; returning True aborts the call.
    cancellation_check: Optional[Callable[[], bool]] = Field(default=None, exclude=True)

    def is_cancelled(self) -> bool:
        return bool(self.cancellation_check and self.cancellation_check())


class GeneratedQuestion(BaseModel):
    """A parsed question record ready to be handed to quiz persistence."""

    question_text: str
    type: QuestionType
    difficulty: Difficulty
    content: Dict[str, Any]
    hint: Optional[str] = None
    explanation: Optional[str] = None
    confidence: Optional[float] = None
    chunk_index: Optional[int] = None


class GenerationResult(BaseModel):
    """Outcome of a structured generation call."""

    questions: List[GeneratedQuestion] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    tokens_used: int = 0
    schema_valid: bool = False
