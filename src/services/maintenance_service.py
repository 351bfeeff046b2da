"""Housekeeping for generation jobs that stopped making progress."""

import logging
from datetime import datetime, timedelta
from typing import Dict

from sqlalchemy.orm import sessionmaker

from src.core.config import settings
from src.db.models import QuizGenerationJob
from src.models.job import GenerationStatus
from src.services.billing_service import BillingService
from src.services.job_service import JobService

logger = logging.getLogger(__name__)


class JobMaintenanceService:
    """Force-finishes stuck jobs and returns their reserved tokens."""

    @staticmethod
    def cleanup_stale_jobs(
        session_factory: sessionmaker,
        billing_service: BillingService,
        timeout_minutes: int = None,
    ) -> Dict[str, int]:
        """
        Finish jobs stuck past the timeout.

        PROCESSING jobs whose worker went away become FAILED, PENDING jobs
        that were never picked up become CANCELLED. A RESERVED reservation is
        released in both cases.

        Args:
            session_factory: Session factory
            billing_service: Billing service used for releases
            timeout_minutes: Age after which a job counts as stuck (defaults to config)

        Returns:
            dict with counts of failed and cancelled jobs
        """
        timeout_minutes = timeout_minutes or settings.stuck_job_timeout_minutes
        cutoff = datetime.utcnow() - timedelta(minutes=timeout_minutes)

        db = session_factory()
        try:
            stuck = [(job.job_id, job.status) for job in JobService.find_stuck_jobs(db, cutoff)]
        finally:
            db.close()

        counts = {"failed": 0, "cancelled": 0}
        for job_id, status in stuck:
            if status == GenerationStatus.PROCESSING:
                target = GenerationStatus.FAILED
                message = f"Job timed out after {timeout_minutes} minutes"
            else:
                target = GenerationStatus.CANCELLED
                message = f"Job was not started within {timeout_minutes} minutes"

            def _finish(job: QuizGenerationJob, target=target, message=message) -> bool:
                # Re-check under the lock; a worker may have finished it meanwhile
                if job.is_terminal:
                    return False
                job.mark_finished(target)
                job.error_message = message
                try:
                    billing_service.release_for_job(job, message)
                except Exception as e:
                    logger.error(f"Failed to release billing for stuck job {job.job_id}: {e}", exc_info=True)
                    BillingService.record_billing_error(job, "release", e)
                return True

            if JobService.update_job(session_factory, job_id, _finish):
                counts["failed" if target == GenerationStatus.FAILED else "cancelled"] += 1
                logger.warning(f"Stuck job {job_id} moved from {status.value} to {target.value}")

        if stuck:
            logger.info(f"Stale job cleanup: {counts['failed']} failed, {counts['cancelled']} cancelled")
        return counts
