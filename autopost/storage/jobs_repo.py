"""Storage interface for content jobs, their runs and idempotency receipts."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from autopost.jobs.models import IdempotencyKeyRecord, JobRecord, JobRunRecord, JobStatus, RunStatus


class JobStore(Protocol):
  """Repository contract for job persistence.

  Every status change is a compare-and-set against the job's current status so
  concurrent workers cannot overwrite each other. `claim_next` must be atomic
  across processes, not just across tasks in one event loop.
  """

  async def create_job(self, record: JobRecord) -> None:
    """Persist a new job."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def claim_next(self, *, max_retries: int, now: datetime) -> JobRecord | None:
    """Lease the oldest eligible pending job and mark it processing."""

  async def transition(
    self, job_id: str, *, from_statuses: tuple[JobStatus, ...], to_status: JobStatus, now: datetime, expected_claimed_at: datetime | None = None, changes: Mapping[str, Any] | None = None
  ) -> JobRecord | None:
    """Change status only while the job is in one of from_statuses; None when the guard fails."""

  async def save_draft(self, job_id: str, *, title: str, content: str, now: datetime, expected_claimed_at: datetime | None = None) -> JobRecord | None:
    """Store generated text on a processing job without changing its status."""

  async def record_failure(self, job_id: str, *, error: str, next_retry_at: datetime, now: datetime) -> JobRecord | None:
    """Increment retry_count by one and store the failure."""

  async def reset_retries(self, job_id: str, *, now: datetime) -> JobRecord | None:
    """Zero retry_count and clear last_error."""

  async def find_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]:
    """Processing jobs leased before the cutoff, oldest lease first."""

  async def count_claimable(self, *, max_retries: int, now: datetime) -> int:
    """Count jobs a claim would currently accept."""

  async def count_by_status(self) -> dict[str, int]:
    """Number of jobs per status."""

  async def list_completed_since(self, since: datetime, *, exclude_job_id: str | None = None, limit: int = 200) -> list[JobRecord]:
    """Completed jobs whose completion falls inside the window, newest first."""

  async def find_by_publish_id(self, publish_id: str, *, exclude_job_id: str | None = None) -> JobRecord | None:
    """Another job already carrying the external publish id."""

  async def create_run(self, run: JobRunRecord) -> None:
    """Append a run record."""

  async def update_run(
    self,
    run_id: str,
    *,
    status: RunStatus,
    finished_at: datetime | None = None,
    stage_timings: Mapping[str, float] | None = None,
    total_duration_ms: float | None = None,
    error_details: Mapping[str, Any] | None = None,
  ) -> JobRunRecord | None:
    """Update a run's status and measurements."""

  async def list_runs(self, job_id: str) -> list[JobRunRecord]:
    """Runs for a job in start order."""

  async def reset_stale_lease(self, job_id: str, *, expected_claimed_at: datetime | None, now: datetime, error_details: Mapping[str, Any] | None = None) -> JobRecord | None:
    """Return a processing job to pending and abandon its open runs in one step; None when the lease moved on."""

  async def put_idempotency_key(self, record: IdempotencyKeyRecord) -> None:
    """Insert or refresh an idempotency key."""

  async def get_idempotency_key(self, key: str) -> IdempotencyKeyRecord | None:
    """Fetch an idempotency key regardless of expiry."""

  async def delete_expired_keys(self, *, now: datetime) -> int:
    """Remove keys whose expiry has passed."""

  async def delete_finished_runs_before(self, cutoff: datetime, *, limit: int) -> int:
    """Delete up to limit closed runs started before the cutoff, oldest first."""

  async def delete_terminal_jobs_before(self, cutoff: datetime, *, limit: int) -> int:
    """Delete up to limit completed, failed or cancelled jobs last updated before the cutoff, with their runs and keys."""
