"""Quiz generation background worker."""

import importlib
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from rq import get_current_job

from src.core.config import settings
from src.db.session import get_session_factory
from src.models.job import GenerateQuizRequest
from src.services.billing_service import BillingService
from src.services.collaborators import BillingLedger, DocumentSource, QuizPersistence
from src.services.generation_service import QuizGenerationOrchestrator
from src.services.job_service import JobService
from src.services.maintenance_service import JobMaintenanceService

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    document_source: DocumentSource
    quiz_persistence: QuizPersistence
    billing_ledger: BillingLedger


# Set once per worker process, directly or through COLLABORATORS_FACTORY
_collaborators: Optional[Collaborators] = None


def configure_collaborators(
    document_source: DocumentSource,
    quiz_persistence: QuizPersistence,
    billing_ledger: BillingLedger,
) -> None:
    """Register the external systems used by jobs in this worker process."""
    global _collaborators
    _collaborators = Collaborators(document_source, quiz_persistence, billing_ledger)
    logger.info("Generation worker collaborators configured")


def configure_from_factory(factory_path: str) -> Collaborators:
    """
    Configure collaborators from a ``"package.module:callable"`` path.

    The callable takes no arguments and returns a ``Collaborators``.

    Raises:
        RuntimeError: If the path cannot be resolved or returns something else
    """
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise RuntimeError(f"COLLABORATORS_FACTORY must look like 'package.module:callable', got '{factory_path}'")

    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise RuntimeError(f"Cannot load collaborators factory '{factory_path}': {e}") from e

    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise RuntimeError(
            f"Collaborators factory '{factory_path}' returned {type(collaborators).__name__}, expected Collaborators"
        )

    configure_collaborators(
        collaborators.document_source,
        collaborators.quiz_persistence,
        collaborators.billing_ledger,
    )
    logger.info(f"Collaborators loaded from {factory_path}")
    return collaborators


def get_collaborators() -> Collaborators:
    if _collaborators is None:
        if settings.collaborators_factory:
            configure_from_factory(settings.collaborators_factory)
        else:
            raise RuntimeError(
                "Generation worker collaborators are not configured; "
                "set COLLABORATORS_FACTORY or call configure_collaborators() first"
            )
    return _collaborators


def build_orchestrator() -> QuizGenerationOrchestrator:
    collaborators = get_collaborators()
    return QuizGenerationOrchestrator(
        session_factory=get_session_factory(),
        document_source=collaborators.document_source,
        quiz_persistence=collaborators.quiz_persistence,
        billing_service=BillingService(collaborators.billing_ledger),
    )


def process_generation_job(job_id: str, request_data: dict) -> dict:
    """
    Background job to generate a quiz.

    This function runs in a separate RQ worker process.

    Args:
        job_id: Generation job ID (UUID as string)
        request_data: Serialized GenerateQuizRequest

    Returns:
        dict with the final job state
    """
    job_uuid = UUID(job_id)
    request = GenerateQuizRequest.model_validate(request_data)
    rq_job = get_current_job()

    logger.info(f"[RQ Worker] Starting quiz generation: job={job_id}, document={request.document_id}")

    orchestrator = build_orchestrator()
    # Failures are recorded on the job before being re-raised, so RQ also marks the job failed
    orchestrator.run(job_uuid, request)

    db = orchestrator.session_factory()
    try:
        job = JobService.get_job(db, job_uuid)
        result = {
            "job_id": job_id,
            "status": job.status.value,
            "generated_quiz_id": str(job.generated_quiz_id) if job.generated_quiz_id else None,
            "total_questions_generated": job.total_questions_generated,
            "progress_percentage": job.progress_percentage,
        }
    finally:
        db.close()

    if rq_job:
        rq_job.meta["status"] = result["status"]
        rq_job.save_meta()

    logger.info(f"[RQ Worker] Quiz generation finished: job={job_id}, status={result['status']}")
    return result


def cleanup_stale_generation_jobs() -> dict:
    """Periodic task: finish generation jobs stuck past the configured timeout."""
    collaborators = get_collaborators()
    return JobMaintenanceService.cleanup_stale_jobs(
        get_session_factory(),
        BillingService(collaborators.billing_ledger),
    )
