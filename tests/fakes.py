"""In-memory collaborators and response builders shared by the tests."""

import threading
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional
from uuid import UUID, uuid4

from src.generation.structured_client import StructuredGenerationClient
from src.models.question import (
    Difficulty,
    DocumentChunk,
    GeneratedQuestion,
    GenerationRequest,
    GenerationResult,
    QuestionType,
)
from src.services.collaborators import BillingLedger, DocumentSource, QuizPersistence
from src.workers.generation_worker import Collaborators


class FakeDocumentSource(DocumentSource):
    """Serves chunks from memory."""

    def __init__(self, chunks: List[DocumentChunk]):
        self.chunks = chunks

    def get_chunks(self, document_id: UUID) -> List[DocumentChunk]:
        return list(self.chunks)


class FakeBillingLedger(BillingLedger):
    """Records every ledger call; operations can be made to fail."""

    def __init__(self):
        self.reservations: List[dict] = []
        self.commits: List[dict] = []
        self.releases: List[dict] = []
        self.fail_on: set = set()

    def reserve(self, username: str, estimated_tokens: int, idempotency_key: Optional[str] = None) -> UUID:
        if "reserve" in self.fail_on:
            raise RuntimeError("Insufficient token balance")
        reservation_id = uuid4()
        self.reservations.append(
            {"reservation_id": reservation_id, "username": username, "tokens": estimated_tokens, "key": idempotency_key}
        )
        return reservation_id

    def commit(self, reservation_id: UUID, job_id: UUID, actual_tokens: int, idempotency_key: str) -> None:
        if "commit" in self.fail_on:
            raise RuntimeError("Ledger unavailable")
        self.commits.append(
            {"reservation_id": reservation_id, "job_id": job_id, "tokens": actual_tokens, "key": idempotency_key}
        )

    def release(self, reservation_id: UUID, reason: str, job_id: UUID, idempotency_key: str) -> int:
        if "release" in self.fail_on:
            raise RuntimeError("Ledger unavailable")
        self.releases.append(
            {"reservation_id": reservation_id, "job_id": job_id, "reason": reason, "key": idempotency_key}
        )
        return 1000


class FakeQuizPersistence(QuizPersistence):
    """Keeps created quizzes in memory."""

    def __init__(self):
        self.quizzes: Dict[UUID, dict] = {}

    def create_quiz(self, job_id, username, questions, request) -> UUID:
        quiz_id = uuid4()
        self.quizzes[quiz_id] = {"job_id": job_id, "username": username, "questions": list(questions)}
        return quiz_id


def make_questions(question_type: QuestionType, count: int, difficulty: Difficulty = Difficulty.MEDIUM) -> List[GeneratedQuestion]:
    return [
        GeneratedQuestion(
            question_text=f"{question_type.value} question {i + 1} about the chunk?",
            type=question_type,
            difficulty=difficulty,
            content={"answer": True},
        )
        for i in range(count)
    ]


class ScriptedGenerationClient(StructuredGenerationClient):
    """Structured client whose single call is answered by a handler.

    ``regenerate_missing_types`` is inherited, so redistribution goes
    through the same handler.
    """

    def __init__(self, handler: Optional[Callable[[GenerationRequest], GenerationResult]] = None):
        super().__init__(client=object(), max_retries=1)
        self.handler = handler or self.default_handler
        self.calls: List[GenerationRequest] = []
        self._calls_lock = threading.Lock()

    @staticmethod
    def default_handler(request: GenerationRequest) -> GenerationResult:
        return GenerationResult(
            questions=make_questions(request.question_type, request.question_count, request.difficulty),
            tokens_used=100,
            schema_valid=True,
        )

    def generate(self, request: GenerationRequest) -> GenerationResult:
        self.validate_request(request)
        with self._calls_lock:
            self.calls.append(request)
        result = self.handler(request)
        for question in result.questions:
            question.chunk_index = request.chunk_index
        return result


def make_completion(content: Optional[str], finish_reason: str = "stop", total_tokens: int = 250):
    """Shape of ``client.chat.completions.create`` results used by the client."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def build_fake_collaborators():
    """Collaborators factory loadable through ``COLLABORATORS_FACTORY``."""
    chunks = [DocumentChunk(chunk_index=0, content="Leaves convert light into chemical energy. " * 6)]
    return Collaborators(FakeDocumentSource(chunks), FakeQuizPersistence(), FakeBillingLedger())


def build_not_collaborators():
    return {"document_source": None}
