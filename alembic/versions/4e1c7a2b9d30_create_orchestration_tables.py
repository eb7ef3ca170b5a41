"""Create content job, job run and idempotency key tables.

Revision ID: 4e1c7a2b9d30
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "4e1c7a2b9d30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "content_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("topic", sa.Text(), nullable=False),
    sa.Column("status", sa.String(), server_default=sa.text("'pending'"), nullable=False),
    sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("model", sa.String(), nullable=True),
    sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("generated_title", sa.Text(), nullable=True),
    sa.Column("generated_content", sa.Text(), nullable=True),
    sa.Column("publish_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')", name="ck_content_jobs_status"),
    sa.CheckConstraint("retry_count >= 0", name="ck_content_jobs_retry_count"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_content_jobs_publish_id"), "content_jobs", ["publish_id"], unique=False)
  op.create_index("ix_content_jobs_claimable", "content_jobs", ["created_at"], unique=False, postgresql_where=sa.text("status = 'pending'"))
  op.create_index("ix_content_jobs_processing_claimed", "content_jobs", ["claimed_at"], unique=False, postgresql_where=sa.text("status = 'processing'"))
  op.create_index("ix_content_jobs_completed_at", "content_jobs", ["completed_at"], unique=False, postgresql_where=sa.text("status = 'completed'"))

  op.create_table(
    "job_runs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("retry_attempt", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("stage_timings", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("total_duration_ms", sa.Float(), nullable=True),
    sa.Column("error_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.ForeignKeyConstraint(["job_id"], ["content_jobs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_job_runs_job_id"), "job_runs", ["job_id"], unique=False)
  op.create_index("ux_job_runs_in_flight", "job_runs", ["job_id"], unique=True, postgresql_where=sa.text("status = 'started'"))

  op.create_table(
    "idempotency_keys",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("key", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("topic_hash", sa.String(), nullable=False),
    sa.Column("content_hash", sa.String(), nullable=True),
    sa.Column("publish_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["content_jobs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("key"),
  )
  op.create_index(op.f("ix_idempotency_keys_job_id"), "idempotency_keys", ["job_id"], unique=False)
  op.create_index(op.f("ix_idempotency_keys_expires_at"), "idempotency_keys", ["expires_at"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_idempotency_keys_expires_at"), table_name="idempotency_keys")
  op.drop_index(op.f("ix_idempotency_keys_job_id"), table_name="idempotency_keys")
  op.drop_table("idempotency_keys")
  op.drop_index("ux_job_runs_in_flight", table_name="job_runs")
  op.drop_index(op.f("ix_job_runs_job_id"), table_name="job_runs")
  op.drop_table("job_runs")
  op.drop_index("ix_content_jobs_completed_at", table_name="content_jobs")
  op.drop_index("ix_content_jobs_processing_claimed", table_name="content_jobs")
  op.drop_index("ix_content_jobs_claimable", table_name="content_jobs")
  op.drop_index(op.f("ix_content_jobs_publish_id"), table_name="content_jobs")
  op.drop_table("content_jobs")
