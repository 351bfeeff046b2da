"""Shared test fixtures and configuration."""

import os
from datetime import datetime, timedelta
from typing import Generator, List
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.db.base import Base
from src.db.models import QuizGenerationJob
from src.models.job import BillingState, GenerateQuizRequest, GenerationStatus
from src.models.question import Difficulty, DocumentChunk, QuestionType
from src.services.billing_service import BillingService
from tests.fakes import FakeBillingLedger, FakeDocumentSource, FakeQuizPersistence


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """File-backed SQLite engine so worker threads share one database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'quizgen.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    """Session factory handed to services that open their own sessions."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    session = session_factory()

    yield session

    session.close()


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def billing_ledger() -> FakeBillingLedger:
    return FakeBillingLedger()


@pytest.fixture
def billing_service(billing_ledger) -> BillingService:
    return BillingService(billing_ledger)


@pytest.fixture
def quiz_persistence() -> FakeQuizPersistence:
    return FakeQuizPersistence()


@pytest.fixture
def document_id() -> UUID:
    return uuid4()


@pytest.fixture
def sample_chunks() -> List[DocumentChunk]:
    """Three chunks over two chapters, all long enough for redistribution."""
    paragraph = (
        "Photosynthesis converts light energy into chemical energy stored in glucose. "
        "It takes place in the chloroplasts of plant cells and releases oxygen as a by-product. "
    )
    return [
        DocumentChunk(chunk_index=0, content=paragraph * 3, chapter_title="Plants", chapter_number=1,
                      section_title="Leaves", section_number=1),
        DocumentChunk(chunk_index=1, content=paragraph * 4, chapter_title="Plants", chapter_number=1,
                      section_title="Roots", section_number=2),
        DocumentChunk(chunk_index=2, content=paragraph * 2, chapter_title="Animals", chapter_number=2,
                      section_title="Cells", section_number=1),
    ]


@pytest.fixture
def document_source(sample_chunks) -> FakeDocumentSource:
    return FakeDocumentSource(sample_chunks)


@pytest.fixture
def quiz_request(document_id) -> GenerateQuizRequest:
    return GenerateQuizRequest(
        document_id=document_id,
        questions_per_type={QuestionType.MCQ_SINGLE: 2, QuestionType.TRUE_FALSE: 1},
        difficulty=Difficulty.MEDIUM,
    )


# ============================================================================
# Job Fixtures
# ============================================================================


@pytest.fixture
def pending_job(db: Session, quiz_request: GenerateQuizRequest) -> QuizGenerationJob:
    """Create a pending job for testing."""
    job = QuizGenerationJob(
        job_id=uuid4(),
        username="alice",
        document_id=quiz_request.document_id,
        status=GenerationStatus.PENDING,
        request_data=quiz_request.model_dump(mode="json"),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


@pytest.fixture
def reserved_job(db: Session, pending_job: QuizGenerationJob) -> QuizGenerationJob:
    """Pending job holding a billing reservation of 5000 tokens."""
    pending_job.billing_state = BillingState.RESERVED
    pending_job.billing_reservation_id = uuid4()
    pending_job.billing_estimated_tokens = 5000
    pending_job.reservation_expires_at = datetime.utcnow() + timedelta(minutes=60)
    db.commit()
    db.refresh(pending_job)
    return pending_job


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_openai_client(mocker):
    """Mock OpenAI client; set ``chat.completions.create`` side effects per test."""
    return mocker.Mock()


# ============================================================================
# Environment Setup
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["APP_ENV"] = "testing"
    os.environ["OPENAI_API_KEY"] = "sk-test-key"
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    yield
