"""Fallback plan of a single (chunk, question type) generation task.

A task walks through at most three attempts:

    ATTEMPT         requested type at requested difficulty
    RETRY_EASIER    requested type one difficulty tier lower (skipped at EASY)
    RETRY_ALT_TYPE  schema-compatible substitute type at requested difficulty

and ends in exactly one ``TaskOutcome``: SUCCEEDED, GAVE_UP or CANCELLED.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from src.generation.exceptions import AiServiceError, InvalidGenerationRequestError, ResponseParseError
from src.generation.structured_client import CANCELLED_WARNING
from src.models.question import Difficulty, GenerationResult, QuestionType

logger = logging.getLogger(__name__)

# Substitute used when a type keeps failing for a chunk
ALTERNATIVE_TYPES = {
    QuestionType.ORDERING: QuestionType.MCQ_SINGLE,
    QuestionType.HOTSPOT: QuestionType.MCQ_SINGLE,
    QuestionType.TRUE_FALSE: QuestionType.MCQ_SINGLE,
    QuestionType.MCQ_MULTI: QuestionType.MCQ_SINGLE,
    QuestionType.COMPLIANCE: QuestionType.TRUE_FALSE,
    QuestionType.OPEN: QuestionType.TRUE_FALSE,
    QuestionType.MCQ_SINGLE: QuestionType.TRUE_FALSE,
    QuestionType.FILL_GAP: QuestionType.OPEN,
}


class TaskStep(str, Enum):
    """Position of an attempt in the fallback plan."""

    ATTEMPT = "ATTEMPT"
    RETRY_EASIER = "RETRY_EASIER"
    RETRY_ALT_TYPE = "RETRY_ALT_TYPE"


class OutcomeKind(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    GAVE_UP = "GAVE_UP"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class TaskAttempt:
    step: TaskStep
    question_type: QuestionType
    difficulty: Difficulty


@dataclass
class TaskOutcome:
    """Terminal result of one task."""

    kind: OutcomeKind
    attempts: List[TaskAttempt] = field(default_factory=list)
    result: Optional[GenerationResult] = None
    errors: List[str] = field(default_factory=list)
    # Across all attempts, including rejected ones
    tokens_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCEEDED

    @property
    def final_attempt(self) -> Optional[TaskAttempt]:
        return self.attempts[-1] if self.attempts else None


def first_attempt(question_type: QuestionType, difficulty: Difficulty) -> TaskAttempt:
    return TaskAttempt(TaskStep.ATTEMPT, question_type, difficulty)


def next_attempt(previous: TaskAttempt, question_type: QuestionType, difficulty: Difficulty) -> Optional[TaskAttempt]:
    """
    Attempt that follows a failed ``previous`` one.

    Args:
        previous: The attempt that just failed
        question_type: Type originally requested for the task
        difficulty: Difficulty originally requested for the task

    Returns:
        The next attempt, or None when the task should give up
    """
    if previous.step == TaskStep.ATTEMPT and difficulty != Difficulty.EASY:
        return TaskAttempt(TaskStep.RETRY_EASIER, question_type, difficulty.easier())

    if previous.step in (TaskStep.ATTEMPT, TaskStep.RETRY_EASIER):
        alternative = ALTERNATIVE_TYPES.get(question_type)
        if alternative is not None:
            return TaskAttempt(TaskStep.RETRY_ALT_TYPE, alternative, difficulty)

    return None


def run_task_plan(
    question_type: QuestionType,
    difficulty: Difficulty,
    generate: Callable[[TaskAttempt], GenerationResult],
    is_cancelled: Callable[[], bool],
) -> TaskOutcome:
    """
    Drive one task through its fallback plan.

    ``generate`` performs a single client call for an attempt. Generation
    and parse failures move the task to its next attempt; an invalid
    request gives up at once because no fallback can repair it.
    """
    outcome = TaskOutcome(kind=OutcomeKind.GAVE_UP)
    attempt = first_attempt(question_type, difficulty)

    while attempt is not None:
        if is_cancelled():
            outcome.kind = OutcomeKind.CANCELLED
            return outcome

        outcome.attempts.append(attempt)
        try:
            result = generate(attempt)
        except InvalidGenerationRequestError as e:
            outcome.errors.append(f"{attempt.step.value}: {e}")
            logger.warning(f"Invalid generation request for {question_type.value}: {e}")
            return outcome
        except (AiServiceError, ResponseParseError) as e:
            outcome.tokens_used += e.tokens_used
            outcome.errors.append(f"{attempt.step.value}: {e}")
            logger.warning(
                f"{attempt.step.value} failed for {attempt.question_type.value} "
                f"at {attempt.difficulty.value}: {e}"
            )
            attempt = next_attempt(attempt, question_type, difficulty)
            continue

        outcome.tokens_used += result.tokens_used

        if not result.questions and CANCELLED_WARNING in result.warnings:
            outcome.kind = OutcomeKind.CANCELLED
            return outcome

        if result.questions:
            outcome.kind = OutcomeKind.SUCCEEDED
            outcome.result = result
            return outcome

        outcome.errors.append(f"{attempt.step.value}: no questions returned")
        attempt = next_attempt(attempt, question_type, difficulty)

    logger.warning(f"Giving up on {question_type.value} after {len(outcome.attempts)} attempt(s)")
    return outcome
