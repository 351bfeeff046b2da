"""Billing reservation lifecycle of generation jobs."""

import json
import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from src.core.config import settings
from src.db.models import QuizGenerationJob
from src.generation.prompts import build_system_prompt
from src.models.job import BillingState
from src.models.question import Difficulty, DocumentChunk, QuestionType
from src.services.collaborators import BillingLedger

logger = logging.getLogger(__name__)

# Expected completion tokens per generated question
COMPLETION_TOKENS_PER_QUESTION = {
    QuestionType.MCQ_SINGLE: 120,
    QuestionType.MCQ_MULTI: 140,
    QuestionType.TRUE_FALSE: 60,
    QuestionType.OPEN: 180,
    QuestionType.FILL_GAP: 120,
    QuestionType.ORDERING: 140,
    QuestionType.MATCHING: 160,
    QuestionType.HOTSPOT: 160,
    QuestionType.COMPLIANCE: 160,
}

DIFFICULTY_MULTIPLIERS = {
    Difficulty.EASY: 0.9,
    Difficulty.MEDIUM: 1.0,
    Difficulty.HARD: 1.15,
}

SAFETY_FACTOR = 1.2

# Tokens per character of prompt text
CHARS_PER_TOKEN = 4.0


class BillingError(Exception):
    """Raised on an illegal billing state transition."""

    def __init__(self, message: str, job_id=None, state: Optional[BillingState] = None):
        super().__init__(message)
        self.job_id = job_id
        self.state = state


def estimate_text_tokens(text: str) -> int:
    """Approximate token count of a prompt fragment."""
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))


def commit_idempotency_key(job_id) -> str:
    return f"{job_id}:commit"


def release_idempotency_key(job_id) -> str:
    return f"{job_id}:release"


class BillingService:
    """Drives a job's reservation through NONE -> RESERVED -> COMMITTED | RELEASED.

    Ledger calls carry deterministic idempotency keys derived from the job
    ID, so repeating a finalization never double-charges or double-refunds.
    Methods mutate the job in memory; the caller owns the transaction.
    """

    def __init__(self, ledger: BillingLedger):
        self.ledger = ledger

    @staticmethod
    def estimate_generation_tokens(
        chunks: Iterable[DocumentChunk],
        questions_per_type: Dict[QuestionType, int],
        difficulty: Difficulty = Difficulty.MEDIUM,
    ) -> int:
        """
        Estimate the tokens a generation request will consume.

        Every (chunk, type) call pays the system prompt and the chunk text as
        input plus a per-question completion allowance.

        Args:
            chunks: Chunks in scope
            questions_per_type: Per-chunk question counts
            difficulty: Requested difficulty

        Returns:
            Estimated tokens including a safety margin
        """
        system_tokens = estimate_text_tokens(build_system_prompt())
        multiplier = DIFFICULTY_MULTIPLIERS.get(difficulty, 1.0)
        requested = {t: c for t, c in questions_per_type.items() if c > 0}

        total = 0
        for chunk in chunks:
            input_tokens = system_tokens + estimate_text_tokens(chunk.content)
            for question_type, count in requested.items():
                completion = math.ceil(count * COMPLETION_TOKENS_PER_QUESTION.get(question_type, 120) * multiplier)
                total += input_tokens + completion

        estimated = int(math.ceil(total * SAFETY_FACTOR))
        logger.info(f"Estimated {estimated} tokens for {len(requested)} question type(s)")
        return estimated

    def reserve_for_job(self, job: QuizGenerationJob, estimated_tokens: int) -> None:
        """
        Reserve tokens for a job that has no reservation yet.

        Raises:
            BillingError: If the job already went through billing
        """
        state = BillingState(job.billing_state or BillingState.NONE)
        if not state.can_transition_to(BillingState.RESERVED):
            raise BillingError(f"Cannot reserve tokens for job {job.job_id} in billing state {state.value}", job.job_id, state)

        reservation_id = self.ledger.reserve(job.username, estimated_tokens, idempotency_key=f"{job.job_id}:reserve")

        job.billing_reservation_id = reservation_id
        job.billing_state = BillingState.RESERVED
        job.billing_estimated_tokens = estimated_tokens
        job.reservation_expires_at = datetime.utcnow() + timedelta(minutes=settings.billing_reservation_ttl_minutes)
        job.add_billing_idempotency_key("reserve", f"{job.job_id}:reserve")

        logger.info(f"Reserved {estimated_tokens} tokens for job {job.job_id} (reservation={reservation_id})")

    def commit_for_job(self, job: QuizGenerationJob, actual_tokens: int) -> int:
        """
        Commit the reservation for actual usage, capped at the reserved amount.

        Returns:
            Tokens committed (0 if the job was already committed)

        Raises:
            BillingError: If the reservation was released or never made
        """
        state = BillingState(job.billing_state or BillingState.NONE)
        if state == BillingState.COMMITTED:
            logger.info(f"Billing for job {job.job_id} already committed, skipping")
            return 0
        if not state.can_transition_to(BillingState.COMMITTED):
            raise BillingError(f"Cannot commit billing for job {job.job_id} in state {state.value}", job.job_id, state)

        reserved = job.billing_estimated_tokens or 0
        committed = min(actual_tokens, reserved) if reserved > 0 else actual_tokens
        key = commit_idempotency_key(job.job_id)

        self.ledger.commit(job.billing_reservation_id, job.job_id, committed, key)

        job.billing_state = BillingState.COMMITTED
        job.billing_committed_tokens = committed
        job.actual_tokens = actual_tokens
        job.was_capped_at_reserved = actual_tokens > committed
        job.add_billing_idempotency_key("commit", key)

        if job.was_capped_at_reserved:
            logger.warning(
                f"Job {job.job_id} used {actual_tokens} tokens, more than the {reserved} reserved; committing {committed}"
            )
        logger.info(f"Committed {committed} tokens for job {job.job_id}")
        return committed

    def release_for_job(self, job: QuizGenerationJob, reason: str) -> Optional[int]:
        """
        Release a RESERVED reservation.

        Jobs in any other billing state are left alone, so a committed job is
        never refunded.

        Returns:
            Tokens released by the ledger, or None if nothing was released
        """
        state = BillingState(job.billing_state or BillingState.NONE)
        if state != BillingState.RESERVED or job.billing_reservation_id is None:
            logger.debug(f"No reservation to release for job {job.job_id} (billing state {state.value})")
            return None

        key = release_idempotency_key(job.job_id)
        released = self.ledger.release(job.billing_reservation_id, reason, job.job_id, key)

        job.billing_state = BillingState.RELEASED
        job.add_billing_idempotency_key("release", key)

        logger.info(f"Released billing reservation {job.billing_reservation_id} for job {job.job_id}: {reason}")
        return released

    @staticmethod
    def record_billing_error(job: QuizGenerationJob, operation: str, error: Exception) -> None:
        """Store a ledger failure on the job without changing its billing state."""
        job.last_billing_error = json.dumps({"operation": operation, "error": str(error)})
