"""Entry points that wire the orchestration components together."""

from __future__ import annotations

import logging
from dataclasses import asdict, replace
from typing import Any

from autopost.config import OrchestratorConfig, Settings
from autopost.dedupe.detector import DuplicateDetector
from autopost.dedupe.fingerprint import ContentFingerprinter
from autopost.degradation.planner import DegradationPlanner, LoggingInterventionQueue, ManualInterventionQueue
from autopost.jobs.lease import JobLeaseManager, SweepResult
from autopost.jobs.models import BatchResult, JobRecord, ProcessingResult
from autopost.jobs.pipeline import ContentPipeline
from autopost.jobs.retention import RetentionResult, RetentionSweeper
from autopost.jobs.progress import RunTracker
from autopost.jobs.scheduler import ConcurrencyScheduler
from autopost.providers.interface import ContentGenerator, ContentValidator, Publisher
from autopost.providers.validation import BasicContentValidator
from autopost.retry.coordinator import RetryCoordinator
from autopost.retry.rate_limiter import RateLimiter
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class ContentOrchestrator:
  """Claims jobs and drives them through generation and publishing."""

  def __init__(
    self,
    store: JobStore,
    generator: ContentGenerator,
    publisher: Publisher,
    *,
    validator: ContentValidator | None = None,
    intervention_queue: ManualInterventionQueue | None = None,
    clock: Clock | None = None,
    config: OrchestratorConfig | None = None,
  ) -> None:
    self.config = config or OrchestratorConfig()
    self.clock = clock or SystemClock()
    self.store = store
    self.lease = JobLeaseManager(store, clock=self.clock, config=self.config.lease)
    self.retry = RetryCoordinator(store, clock=self.clock, policy=self.config.retry, breaker_config=self.config.breaker)
    self.rate_limiter = RateLimiter(clock=self.clock, config=self.config.rate_limits)
    self.retention = RetentionSweeper(store, clock=self.clock, config=self.config.retention)
    self.fingerprinter = ContentFingerprinter(key_phrase_count=self.config.duplicates.key_phrase_count)
    self.detector = DuplicateDetector(store, clock=self.clock, fingerprinter=self.fingerprinter, config=self.config.duplicates)
    self.planner = DegradationPlanner(clock=self.clock, config=self.config.degradation)
    self.pipeline = ContentPipeline(
      lease=self.lease,
      retry=self.retry,
      rate_limiter=self.rate_limiter,
      detector=self.detector,
      fingerprinter=self.fingerprinter,
      planner=self.planner,
      tracker=RunTracker(store, clock=self.clock),
      generator=generator,
      publisher=publisher,
      validator=validator or BasicContentValidator(min_word_count=self.config.min_word_count),
      intervention_queue=intervention_queue or LoggingInterventionQueue(),
      clock=self.clock,
    )
    self.scheduler = ConcurrencyScheduler(self.lease, self.pipeline.process, clock=self.clock, config=self.config.scheduler)

  async def run_orchestration(self) -> ProcessingResult:
    """Process a single job, if one is claimable."""
    result = await self.scheduler.run_single()
    logger.info("Orchestration run finished outcome=%s job=%s", result.outcome, result.job_id)
    return result

  async def run_concurrent(self, max_jobs: int | None = None) -> BatchResult:
    """Process claimable jobs in parallel; max_jobs overrides the slot count."""
    return await self.scheduler.run_concurrent(max_slots=max_jobs)

  async def sweep_stale(self, threshold_minutes: int | None = None, *, dry_run: bool = False) -> SweepResult:
    return await self.lease.sweep_stale(threshold_minutes, dry_run=dry_run)

  async def enqueue(self, topic: str, *, model: str | None = None) -> JobRecord:
    return await self.lease.enqueue(topic, model=model)

  async def retry_failed_job(self, job_id: str) -> JobRecord:
    return await self.lease.retry_failed(job_id)

  async def cancel_job(self, job_id: str, reason: str = "Cancelled by operator") -> JobRecord:
    return await self.lease.cancel(job_id, reason)

  async def job_statistics(self) -> dict[str, int]:
    return await self.lease.statistics()

  async def purge_expired_keys(self) -> int:
    return await self.detector.purge_expired_keys()

  async def purge_old_records(self, *, run_retention_days: int | None = None, job_retention_days: int | None = None) -> RetentionResult:
    """Drop aged-out run history, terminal jobs and expired idempotency keys."""
    result = await self.retention.purge(run_retention_days=run_retention_days, job_retention_days=job_retention_days)
    return replace(result, keys_deleted=await self.purge_expired_keys())

  def health(self) -> dict[str, Any]:
    """Breaker states and degradation health for this process."""
    breakers = {name: asdict(snapshot) for name, snapshot in self.retry.breaker_snapshots().items()}
    for snapshot in breakers.values():
      opened_at = snapshot.get("opened_at")
      snapshot["opened_at"] = opened_at.isoformat() if opened_at else None
    degradation = self.planner.health_snapshot()
    any_open = any(snapshot["open"] for snapshot in breakers.values())
    status = "degraded" if any_open or degradation["aggregate"] < self.config.degradation.healthy_threshold else "ok"
    return {"status": status, "breakers": breakers, "degradation": degradation, "rate_limits": self.rate_limiter.snapshot(), "active_tasks": self.scheduler.active_count}


def build_orchestrator(settings: Settings) -> ContentOrchestrator:
  """Wire the Postgres store and the HTTP providers from settings."""
  # Imported here so the in-memory wiring used by tests does not need a database driver.
  from autopost.providers.openai_generator import OpenAIContentGenerator
  from autopost.providers.wordpress import WordPressPublisher
  from autopost.storage.postgres_jobs_repo import PostgresJobStore

  generator = OpenAIContentGenerator(api_key=settings.generator_api_key or "", model=settings.generator_model, base_url=settings.generator_base_url, timeout_seconds=settings.generator_timeout_seconds)
  publisher = WordPressPublisher(
    base_url=settings.wordpress_url or "",
    username=settings.wordpress_username or "",
    app_password=settings.wordpress_app_password or "",
    post_status=settings.wordpress_post_status,
    timeout_seconds=settings.publisher_timeout_seconds,
  )
  return ContentOrchestrator(PostgresJobStore(), generator, publisher, config=settings.orchestrator_config())
