"""Generation job models: lifecycle enums, request and response schemas."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from src.models.question import Difficulty, QuestionType


class GenerationStatus(str, Enum):
    """Job processing status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.CANCELLED)


class BillingState(str, Enum):
    """Billing reservation state of a job.

    Only NONE -> RESERVED -> (COMMITTED | RELEASED) is allowed.
    """

    NONE = "NONE"
    RESERVED = "RESERVED"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"

    def can_transition_to(self, target: "BillingState") -> bool:
        return target in _BILLING_TRANSITIONS[self]


_BILLING_TRANSITIONS = {
    BillingState.NONE: {BillingState.RESERVED},
    BillingState.RESERVED: {BillingState.COMMITTED, BillingState.RELEASED},
    BillingState.COMMITTED: set(),
    BillingState.RELEASED: set(),
}


class QuizScope(str, Enum):
    """Which part of the document the quiz is generated from."""

    ENTIRE_DOCUMENT = "ENTIRE_DOCUMENT"
    SPECIFIC_CHUNKS = "SPECIFIC_CHUNKS"
    SPECIFIC_CHAPTER = "SPECIFIC_CHAPTER"
    SPECIFIC_SECTION = "SPECIFIC_SECTION"


class GenerateQuizRequest(BaseModel):
    """Request to generate a quiz from a processed document."""

    document_id: UUID
    questions_per_type: Dict[QuestionType, int]
    difficulty: Difficulty = Difficulty.MEDIUM
    language: str = "en"

    quiz_scope: QuizScope = QuizScope.ENTIRE_DOCUMENT
    chunk_indices: Optional[List[int]] = None
    chapter_title: Optional[str] = None
    chapter_number: Optional[int] = None

    quiz_title: Optional[str] = None
    quiz_description: Optional[str] = None

    @field_validator("questions_per_type")
    @classmethod
    def validate_counts(cls, v: Dict[QuestionType, int]) -> Dict[QuestionType, int]:
        """Counts are per chunk; zero means the type is not requested."""
        for question_type, count in v.items():
            if count < 0:
                raise ValueError(f"Question count for {question_type.value} cannot be negative")
        if not any(count > 0 for count in v.values()):
            raise ValueError("At least one question type must have a positive count")
        return v

    @model_validator(mode="after")
    def validate_scope(self) -> "GenerateQuizRequest":
        if self.quiz_scope == QuizScope.SPECIFIC_CHUNKS and not self.chunk_indices:
            raise ValueError("Chunk indices must be specified for SPECIFIC_CHUNKS scope")
        return self

    @property
    def requested_types(self) -> Dict[QuestionType, int]:
        """Types with a positive per-chunk count, in request order."""
        return {t: c for t, c in self.questions_per_type.items() if c > 0}


class JobResponse(BaseModel):
    """Snapshot of a generation job for status polling."""

    job_id: UUID
    username: str
    document_id: UUID
    status: GenerationStatus

    total_chunks: Optional[int] = None
    processed_chunks: int = 0
    total_tasks: Optional[int] = None
    completed_tasks: int = 0
    progress_percentage: float = Field(0.0, ge=0.0, le=100.0)
    current_status_message: Optional[str] = None
    total_questions_generated: int = 0

    billing_state: BillingState = BillingState.NONE
    billing_estimated_tokens: int = 0
    billing_committed_tokens: int = 0

    generated_quiz_id: Optional[UUID] = None
    error_message: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_time_remaining_seconds: Optional[int] = None
