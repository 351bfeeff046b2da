"""Generation job persistence: lifecycle saves and atomic progress counters."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from src.db.models import QuizGenerationJob
from src.models.job import GenerateQuizRequest, GenerationStatus, JobResponse
from src.services.billing_service import BillingService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts for a whole-entity save that loses an optimistic version race
MAX_SAVE_ATTEMPTS = 3


class JobNotFoundError(Exception):
    """Raised when a generation job does not exist."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Generation job not found: {job_id}")
        self.job_id = job_id


def _progress_expression(completed_tasks, processed_chunks):
    """SQL CASE mirroring compute_progress_percentage for atomic updates."""
    job = QuizGenerationJob
    return case(
        (
            and_(job.total_tasks.isnot(None), job.total_tasks > 0),
            completed_tasks * 100.0 / job.total_tasks,
        ),
        (
            and_(job.total_chunks.isnot(None), job.total_chunks > 0),
            processed_chunks * 100.0 / job.total_chunks,
        ),
        else_=0.0,
    )


def _capped(value, ceiling):
    """``value`` limited to ``ceiling`` when the ceiling is known."""
    return case((and_(ceiling.isnot(None), value > ceiling), ceiling), else_=value)


class JobService:
    """Service for managing quiz generation jobs."""

    @staticmethod
    def create_job(
        db: Session,
        username: str,
        request: GenerateQuizRequest,
        estimated_seconds: Optional[int] = None,
    ) -> QuizGenerationJob:
        """Create a new PENDING job storing the serialized request."""
        job = QuizGenerationJob(
            username=username,
            document_id=request.document_id,
            status=GenerationStatus.PENDING,
            request_data=request.model_dump(mode="json"),
        )
        if estimated_seconds is not None:
            job.estimated_completion = datetime.utcnow() + timedelta(seconds=estimated_seconds)

        db.add(job)
        db.commit()
        db.refresh(job)

        logger.info(f"Created generation job {job.job_id} for user {username} (document={request.document_id})")

        return job

    @staticmethod
    def get_job(db: Session, job_id: UUID) -> Optional[QuizGenerationJob]:
        """Get job by ID."""
        return db.query(QuizGenerationJob).filter(QuizGenerationJob.job_id == job_id).first()

    @staticmethod
    def get_job_for_user(db: Session, job_id: UUID, username: str) -> Optional[QuizGenerationJob]:
        """Get job by ID (user-scoped)."""
        return db.query(QuizGenerationJob).filter(
            QuizGenerationJob.job_id == job_id,
            QuizGenerationJob.username == username,
        ).first()

    @staticmethod
    def get_job_for_update(db: Session, job_id: UUID) -> Optional[QuizGenerationJob]:
        """Load a job holding an exclusive row lock until the transaction ends."""
        return (
            db.query(QuizGenerationJob)
            .filter(QuizGenerationJob.job_id == job_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def update_job(
        session_factory: sessionmaker,
        job_id: UUID,
        mutator: Callable[[QuizGenerationJob], T],
    ) -> T:
        """
        Apply ``mutator`` to a locked, freshly loaded job and commit.

        The save is retried when an atomic counter update bumped the version
        between load and flush. ``mutator`` may therefore run more than once
        and must be idempotent.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            db = session_factory()
            try:
                job = JobService.get_job_for_update(db, job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                result = mutator(job)
                db.commit()
                return result
            except StaleDataError:
                db.rollback()
                if attempt == MAX_SAVE_ATTEMPTS:
                    raise
                logger.warning(f"Job {job_id}: concurrent update detected, retrying save (attempt {attempt})")
            finally:
                db.close()

    @staticmethod
    def start_processing(db: Session, job_id: UUID) -> Optional[QuizGenerationJob]:
        """
        Move a PENDING job to PROCESSING.

        Returns:
            The job, or None if it is not PENDING (already picked up or finished)

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = JobService.get_job_for_update(db, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status != GenerationStatus.PENDING:
            db.rollback()
            logger.warning(f"Job {job_id} is {job.status.value}, not starting it again")
            return None

        job.status = GenerationStatus.PROCESSING
        job.started_at = datetime.utcnow()
        job.current_status_message = "Starting generation"
        db.commit()
        db.refresh(job)

        logger.info(f"Job {job_id} moved to PROCESSING")
        return job

    @staticmethod
    def set_totals(db: Session, job_id: UUID, total_chunks: int, total_tasks: int) -> bool:
        """
        Fix the chunk and task denominators. Only the first call has an effect.

        Returns:
            True if the totals were written
        """
        job = QuizGenerationJob
        result = db.execute(
            update(job)
            .where(job.job_id == job_id, job.total_tasks.is_(None))
            .values(
                total_chunks=total_chunks,
                total_tasks=total_tasks,
                version=func.coalesce(job.version, 0) + 1,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()

        if result.rowcount == 0:
            logger.warning(f"Job {job_id}: totals already set, keeping existing values")
            return False
        logger.info(f"Job {job_id}: total_chunks={total_chunks}, total_tasks={total_tasks}")
        return True

    @staticmethod
    def increment_completed_tasks(db: Session, job_id: UUID, increment: int = 1, status_message: Optional[str] = None) -> int:
        """
        Atomically add to the completed-task counter.

        A single UPDATE without loading the entity, so concurrent task
        workers cannot lose increments. The counter never passes
        ``total_tasks`` and the percentage is recomputed in the same statement.

        Returns:
            Number of rows updated (1 if successful, 0 if job not found)
        """
        job = QuizGenerationJob
        completed = _capped(func.coalesce(job.completed_tasks, 0) + increment, job.total_tasks)
        values = {
            "completed_tasks": completed,
            "progress_percentage": _progress_expression(completed, func.coalesce(job.processed_chunks, 0)),
            "version": func.coalesce(job.version, 0) + 1,
        }
        if status_message is not None:
            values["current_status_message"] = status_message

        result = db.execute(
            update(job).where(job.job_id == job_id).values(**values).execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount

    @staticmethod
    def increment_processed_chunks(db: Session, job_id: UUID, increment: int = 1, status_message: Optional[str] = None) -> int:
        """Atomically add to the processed-chunk counter (capped at ``total_chunks``)."""
        job = QuizGenerationJob
        processed = _capped(func.coalesce(job.processed_chunks, 0) + increment, job.total_chunks)
        values = {
            "processed_chunks": processed,
            "progress_percentage": _progress_expression(func.coalesce(job.completed_tasks, 0), processed),
            "version": func.coalesce(job.version, 0) + 1,
        }
        if status_message is not None:
            values["current_status_message"] = status_message

        result = db.execute(
            update(job).where(job.job_id == job_id).values(**values).execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount

    @staticmethod
    def complete_progress(db: Session, job_id: UUID) -> int:
        """Atomically fill the task counter up to its total and set progress to 100."""
        job = QuizGenerationJob
        result = db.execute(
            update(job)
            .where(job.job_id == job_id)
            .values(
                completed_tasks=func.coalesce(job.total_tasks, job.completed_tasks),
                progress_percentage=100.0,
                version=func.coalesce(job.version, 0) + 1,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount

    @staticmethod
    def update_status_message(db: Session, job_id: UUID, status_message: str) -> int:
        """Overwrite only the human-readable status message."""
        job = QuizGenerationJob
        result = db.execute(
            update(job)
            .where(job.job_id == job_id)
            .values(current_status_message=status_message, version=func.coalesce(job.version, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount

    @staticmethod
    def is_cancellation_requested(db: Session, job_id: UUID) -> bool:
        """True if the job was flagged for cancellation or already cancelled."""
        row = db.query(QuizGenerationJob.status, QuizGenerationJob.cancellation_requested).filter(
            QuizGenerationJob.job_id == job_id
        ).first()
        if row is None:
            return False
        status, flagged = row
        return bool(flagged) or status == GenerationStatus.CANCELLED

    @staticmethod
    def request_cancellation(
        session_factory: sessionmaker,
        job_id: UUID,
        billing_service: Optional[BillingService] = None,
    ) -> GenerationStatus:
        """
        Ask for a job to be cancelled.

        A PENDING job is cancelled right away and its reservation released.
        A PROCESSING job is flagged; the orchestrator notices the flag at the
        next task or retry boundary and finalizes it. Terminal jobs are left
        alone.

        Returns:
            The job status after the request
        """

        def _cancel(job: QuizGenerationJob) -> GenerationStatus:
            if job.is_terminal:
                return job.status
            job.cancellation_requested = True
            if job.status == GenerationStatus.PENDING:
                job.mark_finished(GenerationStatus.CANCELLED)
                job.error_message = "Cancelled by user"
                if billing_service is not None:
                    try:
                        billing_service.release_for_job(job, "Job cancelled before processing")
                    except Exception as e:
                        logger.error(f"Failed to release billing reservation for job {job_id}: {e}", exc_info=True)
                        BillingService.record_billing_error(job, "release", e)
            return job.status

        status = JobService.update_job(session_factory, job_id, _cancel)
        logger.info(f"Cancellation requested for job {job_id} (status now {status.value})")
        return status

    @staticmethod
    def find_stuck_jobs(db: Session, cutoff: datetime) -> List[QuizGenerationJob]:
        """Jobs still PROCESSING or PENDING since before ``cutoff``."""
        job = QuizGenerationJob
        return db.query(job).filter(
            or_(
                and_(job.status == GenerationStatus.PROCESSING, job.started_at < cutoff),
                and_(job.status == GenerationStatus.PENDING, job.created_at < cutoff),
            )
        ).all()

    @staticmethod
    def estimate_generation_time_seconds(total_chunks: int, question_type_count: int) -> int:
        """Rough wall-clock estimate: per-chunk and per-type cost plus 20% buffer."""
        base_time_per_chunk = 30
        time_per_question_type = 10
        estimated = total_chunks * base_time_per_chunk + question_type_count * time_per_question_type
        return int(estimated * 1.2)

    @staticmethod
    def to_response(job: QuizGenerationJob) -> JobResponse:
        """Convert Job ORM model to response Pydantic model."""
        progress = job.compute_progress() if not job.status == GenerationStatus.COMPLETED else 100.0

        remaining = None
        if not job.is_terminal and job.started_at is not None and progress > 0:
            elapsed = (datetime.utcnow() - job.started_at).total_seconds()
            remaining = max(0, int(elapsed / (progress / 100.0) - elapsed))

        return JobResponse(
            job_id=job.job_id,
            username=job.username,
            document_id=job.document_id,
            status=job.status,
            total_chunks=job.total_chunks,
            processed_chunks=job.processed_chunks or 0,
            total_tasks=job.total_tasks,
            completed_tasks=job.completed_tasks or 0,
            progress_percentage=progress,
            current_status_message=job.current_status_message,
            total_questions_generated=job.total_questions_generated or 0,
            billing_state=job.billing_state,
            billing_estimated_tokens=job.billing_estimated_tokens or 0,
            billing_committed_tokens=job.billing_committed_tokens or 0,
            generated_quiz_id=job.generated_quiz_id,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            estimated_time_remaining_seconds=remaining,
        )
