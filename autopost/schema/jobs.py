from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from autopost.core.database import Base


class ContentJob(Base):
  __tablename__ = "content_jobs"
  __table_args__ = (
    CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')", name="ck_content_jobs_status"),
    CheckConstraint("retry_count >= 0", name="ck_content_jobs_retry_count"),
    Index("ix_content_jobs_claimable", "created_at", postgresql_where=text("status = 'pending'")),
    Index("ix_content_jobs_processing_claimed", "claimed_at", postgresql_where=text("status = 'processing'")),
    Index("ix_content_jobs_completed_at", "completed_at", postgresql_where=text("status = 'completed'")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  topic: Mapped[str] = mapped_column(Text, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'pending'"))
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  model: Mapped[str | None] = mapped_column(String, nullable=True)
  claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  generated_title: Mapped[str | None] = mapped_column(Text, nullable=True)
  generated_content: Mapped[str | None] = mapped_column(Text, nullable=True)
  publish_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class JobRun(Base):
  __tablename__ = "job_runs"
  __table_args__ = (
    # At most one run per job may be in flight.
    Index("ux_job_runs_in_flight", "job_id", unique=True, postgresql_where=text("status = 'started'")),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("content_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  retry_attempt: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
  started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  stage_timings: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  total_duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
  error_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)


class IdempotencyKey(Base):
  __tablename__ = "idempotency_keys"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("content_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
  topic_hash: Mapped[str] = mapped_column(String, nullable=False)
  content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
  publish_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
