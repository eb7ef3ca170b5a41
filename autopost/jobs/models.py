"""Domain models for content generation and publishing jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import msgspec

JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
RunStatus = Literal["started", "completed", "failed", "retrying", "deferred", "abandoned"]
Outcome = Literal["completed", "requeued", "deferred", "failed", "duplicate", "no_job", "timed_out"]

JOB_STATUSES: tuple[JobStatus, ...] = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES: tuple[JobStatus, ...] = ("completed", "failed", "cancelled")


@dataclass
class JobRecord:
  """A topic waiting to be written and published."""

  id: str
  topic: str
  status: JobStatus
  created_at: datetime
  updated_at: datetime
  retry_count: int = 0
  model: str | None = None
  claimed_at: datetime | None = None
  next_retry_at: datetime | None = None
  last_error: str | None = None
  generated_title: str | None = None
  generated_content: str | None = None
  publish_id: str | None = None
  completed_at: datetime | None = None


@dataclass
class JobRunRecord:
  """One execution attempt of a job."""

  id: str
  job_id: str
  status: RunStatus
  retry_attempt: int
  started_at: datetime
  finished_at: datetime | None = None
  stage_timings: dict[str, float] = field(default_factory=dict)
  total_duration_ms: float | None = None
  error_details: dict[str, Any] | None = None


@dataclass(frozen=True)
class IdempotencyKeyRecord:
  """Receipt proving a job's publish side effect already happened."""

  key: str
  job_id: str
  topic_hash: str
  content_hash: str | None
  publish_id: str | None
  created_at: datetime
  expires_at: datetime


class ProcessingResult(msgspec.Struct, kw_only=True):
  """Outcome of processing a single job."""

  success: bool
  outcome: Outcome
  job_id: str | None = None
  error: str | None = None
  publish_id: str | None = None
  title: str | None = None
  timings: dict[str, float] = msgspec.field(default_factory=dict)


class BatchResult(msgspec.Struct, kw_only=True):
  """Aggregate of every job processed during a concurrent run."""

  total_processed: int = 0
  successful: int = 0
  failed: int = 0
  timed_out: int = 0
  rounds: int = 0
  total_duration_ms: float = 0.0
  results: list[ProcessingResult] = msgspec.field(default_factory=list)
  errors: list[str] = msgspec.field(default_factory=list)

  def add(self, result: ProcessingResult) -> None:
    """Fold one job outcome into the running totals."""
    self.total_processed += 1
    self.results.append(result)
    if result.success:
      self.successful += 1
      return
    if result.outcome == "timed_out":
      self.timed_out += 1
    else:
      self.failed += 1
    if result.error:
      self.errors.append(f"{result.job_id or 'unknown'}: {result.error}")
