"""Task and chunk progress tracking for generation jobs."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Set
from uuid import UUID

logger = logging.getLogger(__name__)


def compute_progress_percentage(
    total_tasks: Optional[int],
    completed_tasks: Optional[int],
    total_chunks: Optional[int],
    processed_chunks: Optional[int],
) -> float:
    """
    Compute job progress in percent.

    Task counters win whenever they are available because they are finer
    grained than chunk counters. Jobs persisted before task counters existed
    (``total_tasks`` is None) fall back to chunk counters.

    Args:
        total_tasks: Number of (chunk, type) tasks, or None for legacy jobs
        completed_tasks: Tasks finished so far
        total_chunks: Number of chunks in scope
        processed_chunks: Chunks whose tasks have all finished

    Returns:
        Percentage clamped to [0, 100]
    """
    if total_tasks:
        percentage = (completed_tasks or 0) / total_tasks * 100.0
    elif total_chunks:
        percentage = (processed_chunks or 0) / total_chunks * 100.0
    else:
        percentage = 0.0
    return max(0.0, min(100.0, percentage))


@dataclass
class JobProgress:
    """In-memory counters for one running job."""

    total_tasks: int = 0
    completed_tasks: int = 0
    total_chunks: int = 0
    processed_chunks: int = 0
    tasks_per_chunk: int = 0
    _finished_by_chunk: Dict[int, int] = field(default_factory=dict)
    _completed_chunk_indices: Set[int] = field(default_factory=set)

    @property
    def percentage(self) -> float:
        return compute_progress_percentage(
            self.total_tasks, self.completed_tasks, self.total_chunks, self.processed_chunks
        )


class ProgressTracker:
    """Thread-safe registry of per-job progress counters.

    Owned by an orchestrator instance; nothing is shared across processes.
    The database counters remain the source of truth, this registry only
    answers "is this chunk finished?" for the worker threads of one job.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[UUID, JobProgress] = {}

    def start(self, job_id: UUID, total_chunks: int, tasks_per_chunk: int) -> JobProgress:
        with self._lock:
            progress = JobProgress(
                total_tasks=total_chunks * tasks_per_chunk,
                total_chunks=total_chunks,
                tasks_per_chunk=tasks_per_chunk,
            )
            self._jobs[job_id] = progress
            return progress

    def record_task_completed(self, job_id: UUID, chunk_index: int) -> bool:
        """
        Count one finished task.

        Returns:
            True if this task was the last one of its chunk
        """
        with self._lock:
            progress = self._jobs[job_id]
            if progress.completed_tasks >= progress.total_tasks:
                logger.warning(f"Job {job_id}: ignoring task completion beyond total {progress.total_tasks}")
                return False
            progress.completed_tasks += 1
            finished = progress._finished_by_chunk.get(chunk_index, 0) + 1
            progress._finished_by_chunk[chunk_index] = finished
            if finished >= progress.tasks_per_chunk and chunk_index not in progress._completed_chunk_indices:
                progress._completed_chunk_indices.add(chunk_index)
                progress.processed_chunks += 1
                return True
            return False

    def snapshot(self, job_id: UUID) -> Optional[JobProgress]:
        """Copy of the current counters, or None for unknown jobs."""
        with self._lock:
            progress = self._jobs.get(job_id)
            if progress is None:
                return None
            return JobProgress(
                total_tasks=progress.total_tasks,
                completed_tasks=progress.completed_tasks,
                total_chunks=progress.total_chunks,
                processed_chunks=progress.processed_chunks,
                tasks_per_chunk=progress.tasks_per_chunk,
            )

    def discard(self, job_id: UUID) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
