"""Age-based cleanup of finished runs and terminal jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from autopost.config import RetentionConfig
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock


@dataclass(frozen=True)
class RetentionResult:
  runs_deleted: int = 0
  jobs_deleted: int = 0
  keys_deleted: int = 0


class RetentionSweeper:
  """Deletes run history and terminal jobs once they age out.

  Runs still marked started and jobs that are pending or processing are never
  touched. Each call removes at most one batch per table; callers repeat the
  sweep on a schedule rather than looping here.
  """

  def __init__(self, store: JobStore, *, clock: Clock, config: RetentionConfig | None = None) -> None:
    self._store = store
    self._clock = clock
    self._config = config or RetentionConfig()
    self._logger = logging.getLogger(__name__)

  async def purge(self, *, run_retention_days: int | None = None, job_retention_days: int | None = None) -> RetentionResult:
    run_days = run_retention_days if run_retention_days is not None else self._config.run_retention_days
    job_days = job_retention_days if job_retention_days is not None else self._config.job_retention_days
    if run_days <= 0 or job_days <= 0:
      raise ValueError("retention days must be positive")

    now = self._clock.now()
    runs = await self._store.delete_finished_runs_before(now - timedelta(days=run_days), limit=self._config.batch_size)
    jobs = await self._store.delete_terminal_jobs_before(now - timedelta(days=job_days), limit=self._config.batch_size)
    if runs or jobs:
      self._logger.info("Retention sweep removed %d runs older than %dd and %d jobs older than %dd", runs, run_days, jobs, job_days)
    return RetentionResult(runs_deleted=runs, jobs_deleted=jobs)
