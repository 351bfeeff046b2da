"""Create quiz generation jobs table

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

GENERATION_STATUSES = ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED')
BILLING_STATES = ('NONE', 'RESERVED', 'COMMITTED', 'RELEASED')


def upgrade() -> None:
    op.create_table(
        'quiz_generation_jobs',
        sa.Column('job_id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('document_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('status', sa.Enum(*GENERATION_STATUSES, name='generationstatus'), nullable=False),
        sa.Column('request_data', sa.JSON, nullable=True),
        sa.Column('cancellation_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        # Progress
        sa.Column('total_chunks', sa.Integer(), nullable=True),
        sa.Column('processed_chunks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_tasks', sa.Integer(), nullable=True),
        sa.Column('completed_tasks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('current_status_message', sa.Text(), nullable=True),
        sa.Column('total_questions_generated', sa.Integer(), nullable=False, server_default='0'),
        # Billing
        sa.Column('billing_reservation_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('billing_state', sa.Enum(*BILLING_STATES, name='billingstate'), nullable=False, server_default='NONE'),
        sa.Column('billing_estimated_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('billing_committed_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('billing_idempotency_keys', sa.JSON, nullable=False, server_default='{}'),
        sa.Column('reservation_expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_billing_error', sa.Text(), nullable=True),
        sa.Column('actual_tokens', sa.BigInteger(), nullable=True),
        sa.Column('was_capped_at_reserved', sa.Boolean(), nullable=False, server_default=sa.false()),
        # Outcome
        sa.Column('generated_quiz_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('estimated_completion', sa.DateTime(), nullable=True),
        sa.Column('generation_time_seconds', sa.Integer(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_quiz_generation_jobs_username', 'quiz_generation_jobs', ['username'])
    op.create_index('ix_quiz_generation_jobs_document_id', 'quiz_generation_jobs', ['document_id'])
    op.create_index('ix_quiz_generation_jobs_status', 'quiz_generation_jobs', ['status'])
    op.create_index('ix_quiz_generation_jobs_billing_reservation_id', 'quiz_generation_jobs', ['billing_reservation_id'])
    # Stuck-job lookups filter on status and age
    op.create_index('ix_quiz_generation_jobs_status_started_at', 'quiz_generation_jobs', ['status', 'started_at'])


def downgrade() -> None:
    op.drop_table('quiz_generation_jobs')
    sa.Enum(name='billingstate').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='generationstatus').drop(op.get_bind(), checkfirst=True)
