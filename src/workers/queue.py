"""Job queue management using Redis Queue (RQ)."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

import redis
from rq import Queue
from rq.job import Job

from src.core.config import settings
from src.models.job import GenerateQuizRequest

logger = logging.getLogger(__name__)


class JobQueue:
    """Wrapper for RQ job queue operations."""

    def __init__(self, connection: Optional[redis.Redis] = None):
        """
        Initialize Redis connection and RQ queue.

        Args:
            connection: Redis connection (created from settings when omitted)
        """
        self.redis_conn = connection or redis.from_url(
            settings.redis_url,
            decode_responses=False,  # RQ requires bytes
        )
        self.queue = Queue(settings.queue_name, connection=self.redis_conn, default_timeout=settings.job_timeout)
        logger.info(f"Job queue '{settings.queue_name}' initialized")

    def enqueue_quiz_generation(self, job_id: UUID, request: GenerateQuizRequest) -> Job:
        """
        Enqueue a quiz generation job.

        Args:
            job_id: Generation job ID
            request: Generation request (sent as JSON-compatible dict)

        Returns:
            RQ Job object
        """
        from src.workers.generation_worker import process_generation_job

        rq_job = self.queue.enqueue(
            process_generation_job,
            str(job_id),
            request.model_dump(mode="json"),
            job_id=f"quiz-generation-{job_id}",
            description=f"Generate quiz for document {request.document_id}",
            meta={"job_id": str(job_id), "document_id": str(request.document_id)},
        )

        logger.info(f"Enqueued quiz generation job: {job_id} (RQ job: {rq_job.id}, position: {self.queue.count})")

        return rq_job

    def get_job_info(self, rq_job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get RQ job information.

        Args:
            rq_job_id: RQ job ID

        Returns:
            dict with job info or None
        """
        try:
            rq_job = Job.fetch(rq_job_id, connection=self.redis_conn)
        except Exception as e:
            logger.error(f"Failed to fetch RQ job {rq_job_id}: {e}")
            return None

        return {
            "rq_job_id": rq_job.id,
            "status": rq_job.get_status(),
            "created_at": rq_job.created_at,
            "started_at": rq_job.started_at,
            "ended_at": rq_job.ended_at,
            "meta": rq_job.meta,
        }


# Global job queue instance (initialized on first use)
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get or create the global job queue instance."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
