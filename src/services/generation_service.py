"""Quiz generation orchestration: job lifecycle, task fan-out and finalization."""

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.core.config import settings
from src.db.models import QuizGenerationJob
from src.generation.exceptions import AiServiceError
from src.generation.structured_client import StructuredGenerationClient
from src.models.job import GenerateQuizRequest, GenerationStatus, QuizScope
from src.models.question import DocumentChunk, GeneratedQuestion, GenerationRequest, QuestionType
from src.services.billing_service import BillingService
from src.services.collaborators import DocumentSource, QuizPersistence
from src.services.job_service import JobNotFoundError, JobService
from src.services.progress_tracker import ProgressTracker
from src.services.task_plan import OutcomeKind, TaskAttempt, TaskOutcome, run_task_plan

logger = logging.getLogger(__name__)


def filter_chunks_for_scope(chunks: List[DocumentChunk], request: GenerateQuizRequest) -> List[DocumentChunk]:
    """
    Select the chunks a request covers.

    Chapter and section scopes match on title (case-insensitive) when both
    sides have one, otherwise on number. Section scope reuses the request's
    chapter title and number fields.
    """
    scope = request.quiz_scope or QuizScope.ENTIRE_DOCUMENT

    if scope == QuizScope.SPECIFIC_CHUNKS:
        wanted = set(request.chunk_indices or [])
        return [c for c in chunks if c.chunk_index in wanted]

    if scope == QuizScope.SPECIFIC_CHAPTER:
        return [
            c for c in chunks
            if _matches(c.chapter_title, c.chapter_number, request.chapter_title, request.chapter_number)
        ]

    if scope == QuizScope.SPECIFIC_SECTION:
        return [
            c for c in chunks
            if _matches(c.section_title, c.section_number, request.chapter_title, request.chapter_number)
        ]

    return list(chunks)


def _matches(title: Optional[str], number: Optional[int], wanted_title: Optional[str], wanted_number: Optional[int]) -> bool:
    if wanted_title is not None and title is not None:
        return title.lower() == wanted_title.lower()
    if wanted_number is not None and number is not None:
        return number == wanted_number
    return False


def format_coverage_summary(generated: Dict[QuestionType, int], requested: Dict[QuestionType, int]) -> str:
    """One-line produced/requested count per type, e.g. ``MCQ_SINGLE: 10/10 ✓``."""
    parts = []
    for question_type, requested_count in requested.items():
        generated_count = generated.get(question_type, 0)
        if generated_count >= requested_count:
            mark = "✓"
        elif generated_count > 0:
            mark = "⚠"
        else:
            mark = "✗"
        parts.append(f"{question_type.value}: {generated_count}/{requested_count} {mark}")
    return ", ".join(parts)


def compute_total_tasks(chunk_count: int, questions_per_type: Dict[QuestionType, int]) -> int:
    """Chunks times the number of types with a positive count."""
    return chunk_count * sum(1 for count in questions_per_type.values() if count > 0)


@dataclass
class PassResult:
    """Questions accepted by the main pass, grouped by chunk index."""

    questions_by_chunk: Dict[int, List[GeneratedQuestion]] = field(default_factory=dict)
    tokens_used: int = 0
    failed_tasks: int = 0

    def all_questions(self) -> List[GeneratedQuestion]:
        return [q for questions in self.questions_by_chunk.values() for q in questions]


class QuizGenerationOrchestrator:
    """Runs one generation job end to end.

    Each (chunk, type) task runs on a bounded thread pool and is counted
    exactly once through an atomic UPDATE when it finishes. A redistribution
    pass then backfills under-produced types without touching the task
    counters. Finalization happens under a row lock and resolves the
    billing reservation once.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        document_source: DocumentSource,
        quiz_persistence: QuizPersistence,
        billing_service: BillingService,
        client: Optional[StructuredGenerationClient] = None,
        max_workers: int = None,
        progress_tracker: Optional[ProgressTracker] = None,
    ):
        self.session_factory = session_factory
        self.document_source = document_source
        self.quiz_persistence = quiz_persistence
        self.billing_service = billing_service
        self.client = client or StructuredGenerationClient()
        self.max_workers = max_workers or settings.generation_max_workers
        self.progress_tracker = progress_tracker or ProgressTracker()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, job_id: UUID, request: GenerateQuizRequest) -> None:
        """
        Generate a quiz for a PENDING job.

        Args:
            job_id: Job ID
            request: Generation request stored with the job

        Raises:
            JobNotFoundError: If the job does not exist
            AiServiceError: If generation failed (the job is already marked FAILED)
        """
        db = self.session_factory()
        try:
            job = JobService.start_processing(db, job_id)
            username = job.username if job is not None else None
        finally:
            db.close()

        if job is None:
            logger.info(f"Skipping job {job_id}: it is no longer PENDING")
            return

        try:
            self._generate(job_id, username, request)
        except JobNotFoundError:
            raise
        except Exception as e:
            logger.error(f"Generation failed for job {job_id}: {e}", exc_info=True)
            self._finalize_failure(job_id, e)
            if isinstance(e, AiServiceError):
                raise
            raise AiServiceError(f"Generation failed: {e}") from e
        finally:
            self.progress_tracker.discard(job_id)

    def _generate(self, job_id: UUID, username: str, request: GenerateQuizRequest) -> None:
        chunks = filter_chunks_for_scope(self.document_source.get_chunks(request.document_id), request)
        if not chunks:
            raise AiServiceError(f"No chunks found for document {request.document_id} in scope {request.quiz_scope.value}")

        requested = request.requested_types
        total_tasks = compute_total_tasks(len(chunks), requested)

        db = self.session_factory()
        try:
            JobService.set_totals(db, job_id, len(chunks), total_tasks)
        finally:
            db.close()
        self.progress_tracker.start(job_id, len(chunks), len(requested))

        logger.info(f"Job {job_id}: {len(chunks)} chunk(s) x {len(requested)} type(s) = {total_tasks} task(s)")

        main_pass = self._run_main_pass(job_id, chunks, requested, request)
        if self._is_cancelled(job_id):
            self._finalize_cancelled(job_id)
            return

        requested_totals = {t: count * len(chunks) for t, count in requested.items()}
        all_questions = main_pass.all_questions()
        tokens_used = main_pass.tokens_used + self._redistribute(
            job_id, chunks, requested_totals, main_pass, all_questions, request
        )
        if self._is_cancelled(job_id):
            self._finalize_cancelled(job_id)
            return

        if not all_questions:
            raise AiServiceError("No questions were generated from any chunk")

        summary = format_coverage_summary(Counter(q.type for q in all_questions), requested_totals)
        logger.info(f"Job {job_id} coverage: {summary}")

        quiz_id = self.quiz_persistence.create_quiz(job_id, username, all_questions, request)
        self._finalize_success(job_id, quiz_id, len(all_questions), tokens_used, summary)

    # ------------------------------------------------------------------
    # Main pass
    # ------------------------------------------------------------------

    def _run_main_pass(
        self,
        job_id: UUID,
        chunks: List[DocumentChunk],
        requested: Dict[QuestionType, int],
        request: GenerateQuizRequest,
    ) -> PassResult:
        outcomes: Dict[Tuple[int, int], TaskOutcome] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="quizgen-task") as executor:
            futures = {}
            for chunk_position, chunk in enumerate(chunks):
                for type_position, (question_type, count) in enumerate(requested.items()):
                    future = executor.submit(
                        self._execute_task,
                        job_id,
                        chunk,
                        chunk_position,
                        len(chunks),
                        question_type,
                        count,
                        request,
                    )
                    futures[future] = (chunk_position, type_position)

            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()

        result = PassResult()
        for chunk_position, type_position in sorted(outcomes):
            outcome = outcomes[(chunk_position, type_position)]
            result.tokens_used += outcome.tokens_used
            if outcome.kind == OutcomeKind.GAVE_UP:
                result.failed_tasks += 1
            if not outcome.succeeded:
                continue
            chunk_index = chunks[chunk_position].chunk_index
            result.questions_by_chunk.setdefault(chunk_index, []).extend(outcome.result.questions)

        if result.failed_tasks:
            logger.warning(f"Job {job_id}: {result.failed_tasks} task(s) produced no questions")
        return result

    def _execute_task(
        self,
        job_id: UUID,
        chunk: DocumentChunk,
        chunk_position: int,
        total_chunks: int,
        question_type: QuestionType,
        count: int,
        request: GenerateQuizRequest,
    ) -> TaskOutcome:
        """Run one (chunk, type) task and count it exactly once."""
        if self._is_cancelled(job_id):
            return TaskOutcome(kind=OutcomeKind.CANCELLED)

        def generate(attempt: TaskAttempt):
            return self.client.generate(
                GenerationRequest(
                    chunk_content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    document_id=request.document_id,
                    question_type=attempt.question_type,
                    question_count=count,
                    difficulty=attempt.difficulty,
                    language=request.language,
                    cancellation_check=lambda: self._is_cancelled(job_id),
                )
            )

        label = "error"
        try:
            outcome = run_task_plan(question_type, request.difficulty, generate, lambda: self._is_cancelled(job_id))
            label = {
                OutcomeKind.SUCCEEDED: "done",
                OutcomeKind.GAVE_UP: "failed",
                OutcomeKind.CANCELLED: "cancelled",
            }[outcome.kind]
            return outcome
        finally:
            status = f"Chunk {chunk_position + 1}/{total_chunks} · {question_type.value} · {label}"
            self._record_task_completed(job_id, chunk.chunk_index, status)

    def _record_task_completed(self, job_id: UUID, chunk_index: int, status_message: str) -> None:
        db = self.session_factory()
        try:
            JobService.increment_completed_tasks(db, job_id, 1, status_message)
            if self.progress_tracker.record_task_completed(job_id, chunk_index):
                JobService.increment_processed_chunks(db, job_id, 1)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record progress for job {job_id}: {e}", exc_info=True)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Redistribution
    # ------------------------------------------------------------------

    def _redistribute(
        self,
        job_id: UUID,
        chunks: List[DocumentChunk],
        requested_totals: Dict[QuestionType, int],
        main_pass: PassResult,
        all_questions: List[GeneratedQuestion],
        request: GenerateQuizRequest,
    ) -> int:
        """
        Backfill types that fell short of their requested total.

        Extra questions come from chunks that already produced questions,
        best producers first. Only the status message is written; task and
        chunk counters stay as the main pass left them.

        Returns:
            Tokens used by the extra calls
        """
        produced = Counter(q.type for q in all_questions)
        missing = {t: total - produced[t] for t, total in requested_totals.items() if produced[t] < total}
        if not missing:
            return 0

        producing = main_pass.questions_by_chunk
        good_chunks = sorted(
            (
                c for c in chunks
                if producing.get(c.chunk_index) and len(c.content) >= settings.redistribution_min_chunk_chars
            ),
            key=lambda c: len(producing[c.chunk_index]),
            reverse=True,
        )[: settings.redistribution_max_chunks]

        self._update_status(job_id, f"Redistribution: Found {len(good_chunks)} suitable chunks for missing types")

        tokens_used = 0
        for question_type, needed in missing.items():
            added = 0
            for chunk in good_chunks:
                if added >= needed or self._is_cancelled(job_id):
                    break

                count = min(needed - added, settings.redistribution_max_per_chunk)
                base_request = GenerationRequest(
                    chunk_content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    document_id=request.document_id,
                    question_count=count,
                    difficulty=request.difficulty,
                    language=request.language,
                    cancellation_check=lambda: self._is_cancelled(job_id),
                )
                result = self.client.regenerate_missing_types(base_request, [question_type])
                tokens_used += result.tokens_used

                accepted = [q for q in result.questions if q.type == question_type][: needed - added]
                all_questions.extend(accepted)
                producing.setdefault(chunk.chunk_index, []).extend(accepted)
                added += len(accepted)

                if accepted:
                    logger.info(f"Redistributed {len(accepted)} {question_type.value} questions to chunk {chunk.chunk_index}")

            if added > 0:
                message = f"Redistribution: Successfully added {added}/{needed} {question_type.value} questions"
            else:
                message = f"Redistribution: Could not generate any {question_type.value} questions"
            logger.info(f"Job {job_id}: {message}")
            self._update_status(job_id, message)

        return tokens_used

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _finalize_success(self, job_id: UUID, quiz_id: UUID, question_count: int, tokens_used: int, summary: str) -> None:
        """
        Record completion, then commit billing.

        COMPLETED is saved before the ledger is called. Once the ledger
        commit was issued the job is terminal, so no later failure can route
        it into the release path.
        """

        def _complete(job: QuizGenerationJob) -> bool:
            if job.is_terminal:
                logger.warning(f"Job {job_id} already {job.status.value}, not completing it")
                return False
            job.mark_finished(GenerationStatus.COMPLETED)
            job.generated_quiz_id = quiz_id
            job.total_questions_generated = question_count
            job.current_status_message = f"Completed: {summary}"
            return True

        if not JobService.update_job(self.session_factory, job_id, _complete):
            return

        db = self.session_factory()
        try:
            JobService.complete_progress(db, job_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record final progress for job {job_id}: {e}", exc_info=True)
        finally:
            db.close()

        def _commit_billing(job: QuizGenerationJob) -> None:
            try:
                self.billing_service.commit_for_job(job, tokens_used)
            except Exception as e:
                logger.error(f"Failed to commit billing for job {job_id}: {e}", exc_info=True)
                BillingService.record_billing_error(job, "commit", e)

        try:
            JobService.update_job(self.session_factory, job_id, _commit_billing)
        except SQLAlchemyError as e:
            # Ledger commits are keyed by job ID, safe to repeat
            logger.error(f"Billing commit for job {job_id} was sent but not recorded: {e}", exc_info=True)

        logger.info(f"Job {job_id} completed with {question_count} questions (quiz={quiz_id}, tokens={tokens_used})")

    def _finalize_failure(self, job_id: UUID, error: Exception) -> None:
        message = f"Generation failed: {error}"

        def _fail(job: QuizGenerationJob) -> None:
            if job.is_terminal:
                logger.warning(f"Job {job_id} already {job.status.value}, not marking it failed")
                return
            job.mark_finished(GenerationStatus.FAILED)
            job.error_message = message
            try:
                self.billing_service.release_for_job(job, message)
            except Exception as e:
                logger.error(f"Failed to release billing reservation for job {job_id}: {e}", exc_info=True)
                BillingService.record_billing_error(job, "release", e)

        try:
            JobService.update_job(self.session_factory, job_id, _fail)
        except (SQLAlchemyError, JobNotFoundError) as e:
            logger.error(f"Could not record failure of job {job_id}: {e}", exc_info=True)

    def _finalize_cancelled(self, job_id: UUID) -> None:
        def _cancel(job: QuizGenerationJob) -> None:
            if job.is_terminal:
                return
            job.mark_finished(GenerationStatus.CANCELLED)
            job.error_message = "Cancelled by user"
            job.current_status_message = "Cancelled"
            try:
                self.billing_service.release_for_job(job, "Job cancelled by user")
            except Exception as e:
                logger.error(f"Failed to release billing reservation for job {job_id}: {e}", exc_info=True)
                BillingService.record_billing_error(job, "release", e)

        JobService.update_job(self.session_factory, job_id, _cancel)
        logger.info(f"Job {job_id} cancelled")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_cancelled(self, job_id: UUID) -> bool:
        db = self.session_factory()
        try:
            return JobService.is_cancellation_requested(db, job_id)
        finally:
            db.close()

    def _update_status(self, job_id: UUID, message: str) -> None:
        db = self.session_factory()
        try:
            JobService.update_status_message(db, job_id, message)
        finally:
            db.close()


def submit_generation_job(
    session_factory: sessionmaker,
    username: str,
    request: GenerateQuizRequest,
    document_source: DocumentSource,
    billing_service: BillingService,
) -> QuizGenerationJob:
    """
    Create a PENDING job and reserve its estimated tokens.

    Raises:
        AiServiceError: If the requested scope selects no chunks
    """
    chunks = filter_chunks_for_scope(document_source.get_chunks(request.document_id), request)
    if not chunks:
        raise AiServiceError(f"No chunks found for document {request.document_id} in scope {request.quiz_scope.value}")

    estimated_tokens = BillingService.estimate_generation_tokens(chunks, request.questions_per_type, request.difficulty)
    estimated_seconds = JobService.estimate_generation_time_seconds(len(chunks), len(request.requested_types))

    db = session_factory()
    try:
        job = JobService.create_job(db, username, request, estimated_seconds)
        try:
            billing_service.reserve_for_job(job, estimated_tokens)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Billing reservation failed for job {job.job_id}: {e}", exc_info=True)
            job.mark_finished(GenerationStatus.FAILED)
            job.error_message = f"Billing reservation failed: {e}"
            db.commit()
            raise
        db.refresh(job)
        return job
    finally:
        db.close()
