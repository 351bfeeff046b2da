"""Interfaces of the systems the generation engine depends on."""

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from src.models.job import GenerateQuizRequest
from src.models.question import DocumentChunk, GeneratedQuestion


class DocumentSource(ABC):
    """Provides the chunks of a processed document."""

    @abstractmethod
    def get_chunks(self, document_id: UUID) -> List[DocumentChunk]:
        """
        Get the chunks of a document.

        Args:
            document_id: Document ID

        Returns:
            Chunks ordered by chunk index (empty if the document has none)
        """
        pass


class BillingLedger(ABC):
    """Token reservation bookkeeping.

    Every operation must be safe to call more than once with the same
    idempotency key.
    """

    @abstractmethod
    def reserve(self, username: str, estimated_tokens: int, idempotency_key: Optional[str] = None) -> UUID:
        """Hold ``estimated_tokens`` for a user and return the reservation ID."""
        pass

    @abstractmethod
    def commit(self, reservation_id: UUID, job_id: UUID, actual_tokens: int, idempotency_key: str) -> None:
        """Consume the reservation, charging ``actual_tokens``."""
        pass

    @abstractmethod
    def release(self, reservation_id: UUID, reason: str, job_id: UUID, idempotency_key: str) -> int:
        """Return the held tokens and report how many were released."""
        pass


class QuizPersistence(ABC):
    """Stores generated questions as a quiz."""

    @abstractmethod
    def create_quiz(
        self,
        job_id: UUID,
        username: str,
        questions: List[GeneratedQuestion],
        request: GenerateQuizRequest,
    ) -> UUID:
        """
        Persist a quiz built from the accepted questions.

        Returns:
            ID of the new quiz
        """
        pass
