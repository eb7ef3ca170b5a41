"""Shared doubles for orchestration tests: in-memory store, controllable clock and scripted upstreams."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from autopost.jobs.models import TERMINAL_STATUSES, IdempotencyKeyRecord, JobRecord, JobRunRecord, JobStatus, RunStatus
from autopost.providers.interface import GenerationRequest, GenerationResult, PublishRequest, PublishResult

START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
  """Clock that only moves when told to."""

  def __init__(self, start: datetime = START) -> None:
    self._now = start
    self._monotonic = 1000.0

  def now(self) -> datetime:
    return self._now

  def monotonic(self) -> float:
    return self._monotonic

  def advance(self, seconds: float) -> None:
    self._now += timedelta(seconds=seconds)
    self._monotonic += seconds


class InMemoryJobStore:
  """Dict-backed JobStore; each compare-and-set runs without yielding so it is atomic on one loop."""

  def __init__(self) -> None:
    self.jobs: dict[str, JobRecord] = {}
    self.runs: dict[str, JobRunRecord] = {}
    self.keys: dict[str, IdempotencyKeyRecord] = {}
    self.failing: set[str] = set()

  def _maybe_fail(self, operation: str) -> None:
    if operation in self.failing:
      raise ConnectionError(f"store unavailable during {operation}")

  async def create_job(self, record: JobRecord) -> None:
    self._maybe_fail("create_job")
    self.jobs[record.id] = replace(record)

  async def get_job(self, job_id: str) -> JobRecord | None:
    self._maybe_fail("get_job")
    job = self.jobs.get(job_id)
    return replace(job) if job else None

  def _claimable(self, job: JobRecord, *, max_retries: int, now: datetime) -> bool:
    return job.status == "pending" and job.retry_count < max_retries and (job.next_retry_at is None or job.next_retry_at <= now)

  async def claim_next(self, *, max_retries: int, now: datetime) -> JobRecord | None:
    self._maybe_fail("claim_next")
    # Let concurrent claimers interleave before the select-and-mark step.
    await asyncio.sleep(0)
    candidates = sorted((job for job in self.jobs.values() if self._claimable(job, max_retries=max_retries, now=now)), key=lambda job: (job.created_at, job.id))
    if not candidates:
      return None
    job = candidates[0]
    job.status = "processing"
    job.claimed_at = now
    job.updated_at = now
    return replace(job)

  async def transition(
    self, job_id: str, *, from_statuses: tuple[JobStatus, ...], to_status: JobStatus, now: datetime, expected_claimed_at: datetime | None = None, changes: Mapping[str, Any] | None = None
  ) -> JobRecord | None:
    self._maybe_fail("transition")
    job = self.jobs.get(job_id)
    if job is None or job.status not in from_statuses:
      return None
    if expected_claimed_at is not None and job.claimed_at != expected_claimed_at:
      return None
    job.status = to_status
    job.updated_at = now
    for key, value in (changes or {}).items():
      setattr(job, key, value)
    return replace(job)

  async def save_draft(self, job_id: str, *, title: str, content: str, now: datetime, expected_claimed_at: datetime | None = None) -> JobRecord | None:
    job = self.jobs.get(job_id)
    if job is None or job.status != "processing":
      return None
    if expected_claimed_at is not None and job.claimed_at != expected_claimed_at:
      return None
    job.generated_title = title
    job.generated_content = content
    job.updated_at = now
    return replace(job)

  async def record_failure(self, job_id: str, *, error: str, next_retry_at: datetime, now: datetime) -> JobRecord | None:
    self._maybe_fail("record_failure")
    job = self.jobs.get(job_id)
    if job is None:
      return None
    job.retry_count += 1
    job.last_error = error
    job.next_retry_at = next_retry_at
    job.updated_at = now
    return replace(job)

  async def reset_retries(self, job_id: str, *, now: datetime) -> JobRecord | None:
    job = self.jobs.get(job_id)
    if job is None:
      return None
    job.retry_count = 0
    job.last_error = None
    job.updated_at = now
    return replace(job)

  async def find_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]:
    stale = [job for job in self.jobs.values() if job.status == "processing" and job.claimed_at is not None and job.claimed_at < claimed_before]
    stale.sort(key=lambda job: job.claimed_at or START)
    return [replace(job) for job in stale[:limit]]

  async def count_claimable(self, *, max_retries: int, now: datetime) -> int:
    return sum(1 for job in self.jobs.values() if self._claimable(job, max_retries=max_retries, now=now))

  async def count_by_status(self) -> dict[str, int]:
    counts: dict[str, int] = {}
    for job in self.jobs.values():
      counts[job.status] = counts.get(job.status, 0) + 1
    return counts

  async def list_completed_since(self, since: datetime, *, exclude_job_id: str | None = None, limit: int = 200) -> list[JobRecord]:
    self._maybe_fail("list_completed_since")
    completed = [job for job in self.jobs.values() if job.status == "completed" and job.completed_at is not None and job.completed_at >= since and job.id != exclude_job_id]
    completed.sort(key=lambda job: job.completed_at or START, reverse=True)
    return [replace(job) for job in completed[:limit]]

  async def find_by_publish_id(self, publish_id: str, *, exclude_job_id: str | None = None) -> JobRecord | None:
    for job in self.jobs.values():
      if job.publish_id == publish_id and job.id != exclude_job_id:
        return replace(job)
    return None

  async def create_run(self, run: JobRunRecord) -> None:
    self._maybe_fail("create_run")
    self.runs[run.id] = replace(run)

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
    run = self.runs.get(run_id)
    if run is None:
      return None
    run.status = status
    if finished_at is not None:
      run.finished_at = finished_at
    if stage_timings is not None:
      run.stage_timings = dict(stage_timings)
    if total_duration_ms is not None:
      run.total_duration_ms = total_duration_ms
    if error_details is not None:
      run.error_details = dict(error_details)
    return replace(run)

  async def list_runs(self, job_id: str) -> list[JobRunRecord]:
    return sorted((replace(run) for run in self.runs.values() if run.job_id == job_id), key=lambda run: run.started_at)

  async def reset_stale_lease(self, job_id: str, *, expected_claimed_at: datetime | None, now: datetime, error_details: Mapping[str, Any] | None = None) -> JobRecord | None:
    self._maybe_fail("reset_stale_lease")
    job = self.jobs.get(job_id)
    if job is None or job.status != "processing" or job.claimed_at != expected_claimed_at:
      return None
    job.status = "pending"
    job.claimed_at = None
    job.updated_at = now
    for run in self.runs.values():
      if run.job_id == job_id and run.status == "started":
        run.status = "abandoned"
        run.finished_at = now
        run.error_details = dict(error_details) if error_details else None
    return replace(job)

  async def put_idempotency_key(self, record: IdempotencyKeyRecord) -> None:
    self._maybe_fail("put_idempotency_key")
    self.keys[record.key] = record

  async def get_idempotency_key(self, key: str) -> IdempotencyKeyRecord | None:
    self._maybe_fail("get_idempotency_key")
    return self.keys.get(key)

  async def delete_expired_keys(self, *, now: datetime) -> int:
    expired = [key for key, record in self.keys.items() if record.expires_at <= now]
    for key in expired:
      del self.keys[key]
    return len(expired)

  async def delete_finished_runs_before(self, cutoff: datetime, *, limit: int) -> int:
    old = sorted((run for run in self.runs.values() if run.status != "started" and run.started_at < cutoff), key=lambda run: run.started_at)[:limit]
    for run in old:
      del self.runs[run.id]
    return len(old)

  async def delete_terminal_jobs_before(self, cutoff: datetime, *, limit: int) -> int:
    old = sorted((job for job in self.jobs.values() if job.status in TERMINAL_STATUSES and job.updated_at < cutoff), key=lambda job: job.updated_at)[:limit]
    for job in old:
      del self.jobs[job.id]
      self.runs = {run_id: run for run_id, run in self.runs.items() if run.job_id != job.id}
      self.keys = {key: record for key, record in self.keys.items() if record.job_id != job.id}
    return len(old)

  def add_job(self, topic: str, *, status: JobStatus = "pending", created_at: datetime = START, **fields: Any) -> JobRecord:
    """Seed a job directly, bypassing the lease manager."""
    job_id = fields.pop("id", f"job-{len(self.jobs) + 1}")
    record = JobRecord(id=job_id, topic=topic, status=status, created_at=created_at, updated_at=created_at, **fields)
    self.jobs[job_id] = record
    return replace(record)


def make_draft(topic: str, *, words: int = 80) -> tuple[str, str]:
  """A titled draft long enough to pass the default validator."""
  filler = " ".join(f"{topic.lower().replace(' ', '-')}-point{index}" for index in range(words))
  return f"{topic}: A Practical Guide", f"Everything about {topic}. {filler}"


class ScriptedGenerator:
  """Returns queued results or raises queued exceptions, then falls back to a valid draft."""

  def __init__(self, *steps: GenerationResult | Exception) -> None:
    self.steps: list[GenerationResult | Exception] = list(steps)
    self.requests: list[GenerationRequest] = []
    self.gate: asyncio.Event | None = None

  async def generate(self, request: GenerationRequest) -> GenerationResult:
    self.requests.append(request)
    if self.gate is not None:
      await self.gate.wait()
    if self.steps:
      step = self.steps.pop(0)
      if isinstance(step, Exception):
        raise step
      return step
    title, content = make_draft(request.topic)
    return GenerationResult(success=True, title=title, content=content, tokens_used=321, model=request.model or "gpt-4o")


class ScriptedPublisher:
  """Returns queued results or raises queued exceptions, then publishes with sequential ids."""

  def __init__(self, *steps: PublishResult | Exception) -> None:
    self.steps: list[PublishResult | Exception] = list(steps)
    self.requests: list[PublishRequest] = []
    self._next_id = 100

  async def publish(self, request: PublishRequest) -> PublishResult:
    self.requests.append(request)
    if self.steps:
      step = self.steps.pop(0)
      if isinstance(step, Exception):
        raise step
      return step
    self._next_id += 1
    return PublishResult(success=True, external_id=str(self._next_id), status_code=201)


class RecordingInterventionQueue:
  def __init__(self) -> None:
    self.submissions: list[tuple[str, str, str]] = []

  async def submit(self, job: JobRecord, plan: Any, reason: str) -> None:
    self.submissions.append((job.id, plan.strategy.value, reason))


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def store() -> InMemoryJobStore:
  return InMemoryJobStore()


@pytest.fixture
def generator() -> ScriptedGenerator:
  return ScriptedGenerator()


@pytest.fixture
def publisher() -> ScriptedPublisher:
  return ScriptedPublisher()


@pytest.fixture
def intervention_queue() -> RecordingInterventionQueue:
  return RecordingInterventionQueue()
