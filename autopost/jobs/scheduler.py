"""Bounded slot pool that drains the job queue in rounds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from autopost.config import SchedulerConfig
from autopost.jobs.lease import JobLeaseManager
from autopost.jobs.models import BatchResult, JobRecord, ProcessingResult
from autopost.utils.clock import Clock, elapsed_ms

ProcessJob = Callable[[JobRecord], Awaitable[ProcessingResult]]

NO_JOB_ERROR = "No pending jobs available"


def _no_job() -> ProcessingResult:
  return ProcessingResult(success=False, outcome="no_job", error=NO_JOB_ERROR)


class ConcurrencyScheduler:
  """Runs claim-and-process tasks in a fixed number of slots.

  Timed-out tasks are reported but never cancelled. They keep their slot until
  they finish; the stale sweep reconciles jobs whose task never does.
  """

  def __init__(self, lease: JobLeaseManager, process: ProcessJob, *, clock: Clock, config: SchedulerConfig | None = None) -> None:
    self._lease = lease
    self._process = process
    self._clock = clock
    self._config = config or SchedulerConfig()
    self._active: set[asyncio.Task[ProcessingResult]] = set()
    self._claimed: dict[asyncio.Task[ProcessingResult], str] = {}
    self._logger = logging.getLogger(__name__)

  @property
  def active_count(self) -> int:
    return len(self._active)

  def free_slots(self, pool_size: int | None = None) -> int:
    size = pool_size if pool_size is not None else self._config.slots
    return max(size - len(self._active), 0)

  async def run_single(self) -> ProcessingResult:
    """Claim and process one job under the job timeout."""
    task = self._launch()
    done, _ = await asyncio.wait({task}, timeout=self._config.job_timeout_seconds)
    if task not in done:
      return self._timed_out(task)
    return self._collect(task)

  async def run_concurrent(self, max_slots: int | None = None) -> BatchResult:
    """Drain claimable jobs in rounds until the queue empties or the round cap is hit."""
    pool_size = max_slots if max_slots is not None else self._config.slots
    if pool_size <= 0:
      raise ValueError("max_slots must be positive")
    started = self._clock.monotonic()
    batch = BatchResult()

    while batch.rounds < self._config.max_rounds:
      free = self.free_slots(pool_size)
      if free == 0:
        self._logger.info("All %d slots busy with timed-out tasks; stopping", pool_size)
        break
      batch.rounds += 1
      tasks = {self._launch() for _ in range(min(self._config.batch_size, free))}
      done, pending = await asyncio.wait(tasks, timeout=self._config.job_timeout_seconds)

      claimed = 0
      for task in done:
        result = self._collect(task)
        if result.outcome == "no_job":
          continue
        claimed += 1
        batch.add(result)
      for task in pending:
        claimed += 1
        batch.add(self._timed_out(task))

      if pending:
        self._logger.warning("Round %d: %d task(s) timed out and keep their slots", batch.rounds, len(pending))
      if claimed == 0 or not await self._lease.has_claimable():
        break

    batch.total_duration_ms = elapsed_ms(self._clock, started)
    self._logger.info(
      "Concurrent run finished rounds=%d processed=%d ok=%d failed=%d timed_out=%d in %.0fms",
      batch.rounds,
      batch.total_processed,
      batch.successful,
      batch.failed,
      batch.timed_out,
      batch.total_duration_ms,
    )
    return batch

  async def drain(self) -> None:
    """Wait for tasks left running by earlier timeouts."""
    if self._active:
      await asyncio.wait(set(self._active))

  def _launch(self) -> asyncio.Task[ProcessingResult]:
    task = asyncio.create_task(self._claim_and_process())
    self._active.add(task)
    task.add_done_callback(self._finished)
    return task

  def _finished(self, task: asyncio.Task[ProcessingResult]) -> None:
    self._active.discard(task)
    self._claimed.pop(task, None)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      self._logger.error("Job task crashed: %s", exc, exc_info=exc)

  async def _claim_and_process(self) -> ProcessingResult:
    job = await self._lease.claim_next()
    if job is None:
      return _no_job()
    task = asyncio.current_task()
    if task is not None:
      self._claimed[task] = job.id  # type: ignore[index]
    return await self._process(job)

  def _timed_out(self, task: asyncio.Task[ProcessingResult]) -> ProcessingResult:
    """Report a task still running at the deadline under the job it claimed, if it got that far."""
    job_id = self._claimed.get(task)
    self._logger.warning("Job %s exceeded %.1fs; leaving it running", job_id or "(claim pending)", self._config.job_timeout_seconds)
    return ProcessingResult(success=False, outcome="timed_out", job_id=job_id, error=f"Job exceeded {self._config.job_timeout_seconds:g}s timeout")

  def _collect(self, task: asyncio.Task[ProcessingResult]) -> ProcessingResult:
    exc = task.exception()
    if exc is not None:
      return ProcessingResult(success=False, outcome="failed", error=f"{type(exc).__name__}: {exc}")
    return task.result()
