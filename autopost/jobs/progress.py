"""Run bookkeeping: one JobRun per attempt with per-stage timings."""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from autopost.jobs.models import JobRecord, JobRunRecord, RunStatus
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock, elapsed_ms


@dataclass
class RunHandle:
  """Mutable view of an in-flight run."""

  run: JobRunRecord
  started: float
  timings: dict[str, float] = field(default_factory=dict)
  closed: bool = False


class RunTracker:
  """Creates run records and keeps their stage timings current."""

  def __init__(self, store: JobStore, *, clock: Clock) -> None:
    self._store = store
    self._clock = clock
    self._logger = logging.getLogger(__name__)

  async def start(self, job: JobRecord) -> RunHandle:
    run = JobRunRecord(id=str(uuid.uuid4()), job_id=job.id, status="started", retry_attempt=job.retry_count, started_at=self._clock.now())
    await self._store.create_run(run)
    return RunHandle(run=run, started=self._clock.monotonic())

  @asynccontextmanager
  async def stage(self, handle: RunHandle, name: str) -> AsyncIterator[None]:
    """Time a pipeline stage; repeated stages accumulate."""
    started = self._clock.monotonic()
    try:
      yield
    finally:
      handle.timings[name] = round(handle.timings.get(name, 0.0) + elapsed_ms(self._clock, started), 2)

  async def finish(self, handle: RunHandle, status: RunStatus, *, error_details: dict[str, Any] | None = None) -> JobRunRecord | None:
    """Close the run once; later calls are ignored."""
    if handle.closed:
      return None
    handle.closed = True
    total = elapsed_ms(self._clock, handle.started)
    try:
      return await self._store.update_run(handle.run.id, status=status, finished_at=self._clock.now(), stage_timings=handle.timings, total_duration_ms=total, error_details=error_details)
    except Exception as exc:  # noqa: BLE001
      # The job status is authoritative; a lost run update must not mask the outcome.
      self._logger.warning("Failed to close run %s for job %s: %s", handle.run.id, handle.run.job_id, exc)
      return None
