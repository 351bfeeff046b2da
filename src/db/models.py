"""SQLAlchemy ORM models for quiz generation jobs."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
)

from src.db.base import Base
from src.models.job import BillingState, GenerationStatus
from src.services.progress_tracker import compute_progress_percentage


class QuizGenerationJob(Base):
    """Asynchronous quiz generation job.

    Progress counters are written only through atomic UPDATE statements
    (see JobService). Whole-entity saves carry status, billing and error
    fields and are guarded by the optimistic ``version`` column.
    """

    __tablename__ = "quiz_generation_jobs"
    __allow_unmapped__ = True

    job_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    username = Column(String(255), nullable=False, index=True)
    document_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    status = Column(Enum(GenerationStatus), nullable=False, default=GenerationStatus.PENDING, index=True)
    request_data = Column(JSON, nullable=True)
    cancellation_requested = Column(Boolean, nullable=False, default=False)

    # Progress
    total_chunks = Column(Integer, nullable=True)
    processed_chunks = Column(Integer, nullable=False, default=0)
    total_tasks = Column(Integer, nullable=True)
    completed_tasks = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float, nullable=False, default=0.0)
    current_status_message = Column(Text, nullable=True)
    total_questions_generated = Column(Integer, nullable=False, default=0)

    # Billing
    billing_reservation_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    billing_state = Column(Enum(BillingState), nullable=False, default=BillingState.NONE)
    billing_estimated_tokens = Column(BigInteger, nullable=False, default=0)
    billing_committed_tokens = Column(BigInteger, nullable=False, default=0)
    billing_idempotency_keys = Column(JSON, nullable=False, default=dict)
    reservation_expires_at = Column(DateTime, nullable=True)
    last_billing_error = Column(Text, nullable=True)
    actual_tokens = Column(BigInteger, nullable=True)
    was_capped_at_reserved = Column(Boolean, nullable=False, default=False)

    # Outcome
    generated_quiz_id = Column(Uuid(as_uuid=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    estimated_completion = Column(DateTime, nullable=True)
    generation_time_seconds = Column(Integer, nullable=True)

    version = Column(Integer, nullable=False, default=0)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<QuizGenerationJob(id={self.job_id}, status={self.status}, tasks={self.completed_tasks}/{self.total_tasks})>"

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and GenerationStatus(self.status).is_terminal

    def compute_progress(self) -> float:
        """Progress from the stored counters (task level first)."""
        return compute_progress_percentage(
            self.total_tasks,
            self.completed_tasks,
            self.total_chunks,
            self.processed_chunks,
        )

    def add_billing_idempotency_key(self, operation: str, key: str) -> None:
        if not key:
            return
        # Reassign so the JSON column is flagged dirty
        keys = dict(self.billing_idempotency_keys or {})
        keys[operation] = key
        self.billing_idempotency_keys = keys

    def get_billing_idempotency_key(self, operation: str):
        return (self.billing_idempotency_keys or {}).get(operation)

    def mark_finished(self, status: GenerationStatus) -> None:
        """Set a terminal status and completion timestamps."""
        self.status = status
        self.completed_at = datetime.utcnow()
        if self.started_at is not None:
            self.generation_time_seconds = int((self.completed_at - self.started_at).total_seconds())
