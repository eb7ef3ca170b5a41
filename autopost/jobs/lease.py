"""Validated leasing operations over the job store."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from autopost.config import LeaseConfig
from autopost.jobs.errors import InvalidTransitionError, JobNotFoundError, LeaseLostError, MaxRetriesExceededError
from autopost.jobs.models import JOB_STATUSES, JobRecord, JobStatus
from autopost.jobs.transitions import LEASE_RETURN, ensure_transition, sources_for
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock


@dataclass(frozen=True)
class SweepResult:
  """Jobs found with expired leases and whether they were returned to the queue."""

  job_ids: list[str] = field(default_factory=list)
  reset: int = 0
  dry_run: bool = False


def _require(value: str | None, name: str) -> str:
  if value is None or not value.strip():
    raise ValueError(f"{name} must be non-empty")
  return value


class JobLeaseManager:
  """Claim, release, complete and fail jobs while enforcing the status table."""

  def __init__(self, store: JobStore, *, clock: Clock, config: LeaseConfig | None = None) -> None:
    self._store = store
    self._clock = clock
    self._config = config or LeaseConfig()
    self._logger = logging.getLogger(__name__)

  @property
  def max_retries(self) -> int:
    return self._config.max_retries

  async def enqueue(self, topic: str, *, model: str | None = None) -> JobRecord:
    """Create a pending job for a topic."""
    now = self._clock.now()
    record = JobRecord(id=str(uuid.uuid4()), topic=_require(topic, "topic").strip(), status="pending", model=model, created_at=now, updated_at=now)
    await self._store.create_job(record)
    self._logger.info("Enqueued job %s topic=%r", record.id, record.topic)
    return record

  async def claim_next(self) -> JobRecord | None:
    """Lease one eligible pending job, or None when nothing is claimable."""
    job = await self._store.claim_next(max_retries=self._config.max_retries, now=self._clock.now())
    if job is not None:
      self._logger.info("Claimed job %s (retry_count=%d)", job.id, job.retry_count)
    return job

  async def has_claimable(self) -> bool:
    return await self._store.count_claimable(max_retries=self._config.max_retries, now=self._clock.now()) > 0

  async def release(self, job_id: str, reason: str, *, retry_at: datetime | None = None, claimed_at: datetime | None = None) -> JobRecord:
    """Return a processing job to the queue, eligible again at retry_at."""
    source, target = LEASE_RETURN
    job = await self._store.transition(job_id, from_statuses=(source,), to_status=target, now=self._clock.now(), expected_claimed_at=claimed_at, changes={"claimed_at": None, "next_retry_at": retry_at})
    if job is None:
      await self._raise_guard_failure(job_id, target, claimed_at)
    self._logger.info("Released job %s: %s (eligible at %s)", job_id, reason, retry_at.isoformat() if retry_at else "now")
    return job  # type: ignore[return-value]

  async def save_draft(self, job_id: str, title: str, content: str, *, claimed_at: datetime | None = None) -> JobRecord:
    """Keep the generated draft on a processing job so retries can reuse it."""
    job = await self._store.save_draft(job_id, title=title, content=content, now=self._clock.now(), expected_claimed_at=claimed_at)
    if job is None:
      await self._raise_guard_failure(job_id, "processing", claimed_at)
    return job  # type: ignore[return-value]

  async def complete(self, job_id: str, title: str, content: str, publish_id: str, *, claimed_at: datetime | None = None) -> JobRecord:
    """Mark a job completed with its published artifacts."""
    _require(job_id, "job_id")
    changes = {
      "generated_title": _require(title, "title"),
      "generated_content": _require(content, "content"),
      "publish_id": _require(publish_id, "publish_id"),
      "completed_at": self._clock.now(),
      "next_retry_at": None,
    }
    job = await self._apply(job_id, "completed", claimed_at=claimed_at, changes=changes)
    self._logger.info("Completed job %s publish_id=%s", job_id, publish_id)
    return job

  async def fail(self, job_id: str, error_message: str, *, claimed_at: datetime | None = None, title: str | None = None, content: str | None = None) -> JobRecord:
    """Mark a job failed terminally, keeping any draft that was produced."""
    changes: dict[str, Any] = {"last_error": _require(error_message, "error_message"), "next_retry_at": None}
    if title:
      changes["generated_title"] = title
    if content:
      changes["generated_content"] = content
    job = await self._apply(job_id, "failed", claimed_at=claimed_at, changes=changes)
    self._logger.warning("Failed job %s: %s", job_id, error_message)
    return job

  async def cancel(self, job_id: str, reason: str) -> JobRecord:
    job = await self._apply(job_id, "cancelled", changes={"last_error": _require(reason, "reason"), "claimed_at": None, "next_retry_at": None})
    self._logger.info("Cancelled job %s: %s", job_id, reason)
    return job

  async def retry_failed(self, job_id: str) -> JobRecord:
    """Admin retry: move a failed job back to pending while attempts remain."""
    job = await self._get(job_id)
    ensure_transition(job_id, job.status, "pending")
    if job.retry_count >= self._config.max_retries:
      raise MaxRetriesExceededError(job_id, job.retry_count, self._config.max_retries)
    updated = await self._apply(job_id, "pending", changes={"last_error": None, "claimed_at": None, "next_retry_at": None})
    self._logger.info("Re-queued failed job %s (retry_count=%d)", job_id, updated.retry_count)
    return updated

  async def sweep_stale(self, threshold_minutes: int | None = None, *, dry_run: bool = False, limit: int | None = None) -> SweepResult:
    """Return jobs whose lease outlived the threshold to the pending queue."""
    minutes = threshold_minutes if threshold_minutes is not None else self._config.stale_threshold_minutes
    if minutes <= 0:
      raise ValueError("threshold_minutes must be positive")
    now = self._clock.now()
    stale = await self._store.find_stale(claimed_before=now - timedelta(minutes=minutes), limit=limit or self._config.sweep_limit)
    job_ids = [job.id for job in stale]
    if dry_run or not stale:
      if stale:
        self._logger.info("Sweep dry run found %d stale jobs: %s", len(stale), ", ".join(job_ids))
      return SweepResult(job_ids=job_ids, reset=0, dry_run=dry_run)

    reset = 0
    for job in stale:
      # Guard on the observed lease so a job that completed or was re-claimed meanwhile is left alone.
      details = {"reason": "stale_lease", "claimed_at": job.claimed_at.isoformat() if job.claimed_at else None}
      updated = await self._store.reset_stale_lease(job.id, expected_claimed_at=job.claimed_at, now=now, error_details=details)
      if updated is None:
        continue
      reset += 1
      self._logger.warning("Reset stale job %s claimed at %s", job.id, job.claimed_at)
    return SweepResult(job_ids=job_ids, reset=reset, dry_run=False)

  async def statistics(self) -> dict[str, int]:
    """Job counts for every status, including zeros."""
    counts = await self._store.count_by_status()
    stats = {status: int(counts.get(status, 0)) for status in JOB_STATUSES}
    stats["total"] = sum(stats.values())
    return stats

  async def get(self, job_id: str) -> JobRecord:
    return await self._get(job_id)

  async def _get(self, job_id: str) -> JobRecord:
    job = await self._store.get_job(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    return job

  async def _apply(self, job_id: str, target: JobStatus, *, claimed_at: datetime | None = None, changes: dict[str, Any] | None = None) -> JobRecord:
    current = await self._get(job_id)
    if claimed_at is not None and (current.status != "processing" or current.claimed_at != claimed_at):
      raise LeaseLostError(job_id)
    ensure_transition(job_id, current.status, target)
    # Accept any legal source at write time; a lease-guarded write only ever leaves processing.
    sources = ("processing",) if claimed_at is not None else sources_for(target)
    job = await self._store.transition(job_id, from_statuses=sources, to_status=target, now=self._clock.now(), expected_claimed_at=claimed_at, changes=changes)
    if job is None:
      await self._raise_guard_failure(job_id, target, claimed_at)
    return job  # type: ignore[return-value]

  async def _raise_guard_failure(self, job_id: str, target: JobStatus, claimed_at: datetime | None) -> None:
    """Explain why a compare-and-set did not apply."""
    job = await self._get(job_id)
    if claimed_at is not None and job.status == "processing" and job.claimed_at != claimed_at:
      raise LeaseLostError(job_id)
    if claimed_at is not None and job.status == "pending" and target != "cancelled":
      raise LeaseLostError(job_id)
    raise InvalidTransitionError(job_id, job.status, target)
