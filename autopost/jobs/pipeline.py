"""Per-job stage sequence and failure routing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from autopost.dedupe.detector import DuplicateCheck, DuplicateDetector
from autopost.dedupe.fingerprint import ContentFingerprint, ContentFingerprinter
from autopost.degradation.planner import DegradationPlan, DegradationPlanner, ManualInterventionQueue, PartialFailureType
from autopost.jobs.errors import LeaseError
from autopost.jobs.lease import JobLeaseManager
from autopost.jobs.models import JobRecord, Outcome, ProcessingResult, RunStatus
from autopost.jobs.progress import RunHandle, RunTracker
from autopost.providers.errors import ErrorKind, Upstream, UpstreamError, generation_error_from_exception, generation_error_from_result, publish_error_from_exception, publish_error_from_result
from autopost.providers.interface import ContentGenerator, ContentValidator, GenerationRequest, GenerationResult, PublishRequest, PublishResult, Publisher
from autopost.retry.coordinator import RetryCoordinator
from autopost.retry.rate_limiter import RateDecision, RateLimiter
from autopost.utils.clock import Clock

# Generation failures that a fallback model or a simpler prompt can plausibly fix.
DEGRADABLE_GENERATION: frozenset[ErrorKind] = frozenset({ErrorKind.MODEL_UNAVAILABLE, ErrorKind.TOKEN_LIMIT})

HALF_OPEN_RECHECK = timedelta(seconds=30)
RUN_START_RECHECK = timedelta(seconds=30)


@dataclass
class _JobState:
  job: JobRecord
  run: RunHandle
  stage: str = "claim"
  model: str | None = None
  hints: dict[str, Any] = field(default_factory=dict)
  title: str | None = None
  content: str | None = None
  draft_fingerprint: ContentFingerprint | None = None
  publish_id: str | None = None
  relaxed_validation: bool = False
  categories: tuple[str, ...] = ()
  tags: tuple[str, ...] = ()
  skip_taxonomy: bool = False
  degraded: set[str] = field(default_factory=set)
  admitted: set[Upstream] = field(default_factory=set)
  warnings: list[str] = field(default_factory=list)


class ContentPipeline:
  """Runs duplicate-check, generate, duplicate-check, validate, publish and complete for one leased job."""

  def __init__(
    self,
    *,
    lease: JobLeaseManager,
    retry: RetryCoordinator,
    rate_limiter: RateLimiter,
    detector: DuplicateDetector,
    fingerprinter: ContentFingerprinter,
    planner: DegradationPlanner,
    tracker: RunTracker,
    generator: ContentGenerator,
    publisher: Publisher,
    validator: ContentValidator,
    intervention_queue: ManualInterventionQueue,
    clock: Clock,
  ) -> None:
    self._lease = lease
    self._retry = retry
    self._limiter = rate_limiter
    self._detector = detector
    self._fingerprinter = fingerprinter
    self._planner = planner
    self._tracker = tracker
    self._generator = generator
    self._publisher = publisher
    self._validator = validator
    self._queue = intervention_queue
    self._clock = clock
    self._logger = logging.getLogger(__name__)

  async def process(self, job: JobRecord) -> ProcessingResult:
    """Drive a claimed job to completion, requeue, deferral or terminal failure."""
    try:
      run = await self._tracker.start(job)
    except Exception as exc:  # noqa: BLE001
      self._logger.error("Could not open a run for job %s", job.id, exc_info=True)
      return await self._return_unstarted(job, exc)
    state = _JobState(job=job, run=run, model=job.model)
    try:
      return await self._process(state)
    finally:
      for upstream in state.admitted:
        self._retry.breaker(upstream).release_trial()

  async def _process(self, state: _JobState) -> ProcessingResult:
    job, run = state.job, state.run
    try:
      return await self._run(state)
    except LeaseError as exc:
      # Another worker or the stale sweep owns the job now; leave it untouched.
      self._logger.warning("Lease error while processing job %s at stage %s: %s", job.id, state.stage, exc)
      await self._tracker.finish(run, "abandoned", error_details={"stage": state.stage, "reason": str(exc)})
      return self._result(state, success=False, outcome="failed", error=str(exc))
    except Exception as exc:
      self._logger.error("Unexpected error processing job %s at stage %s", job.id, state.stage, exc_info=True)
      message = f"Unexpected error: {type(exc).__name__}: {exc}"
      try:
        return await self._fail(state, message, {"stage": state.stage, "category": ErrorKind.UNKNOWN.value, "severity": "high"})
      except LeaseError as lease_exc:
        self._logger.warning("Could not mark job %s failed: %s", job.id, lease_exc)
        await self._tracker.finish(run, "failed", error_details={"stage": state.stage, "error": message})
        return self._result(state, success=False, outcome="failed", error=message)

  async def _run(self, state: _JobState) -> ProcessingResult:
    job = state.job
    deferred = await self._defer_if_open(state)
    if deferred is not None:
      return deferred

    state.stage = "duplicate_check"
    async with self._tracker.stage(state.run, "duplicate_check"):
      topic_check = await self._detector.check(job, self._fingerprinter.fingerprint(job.topic))
    if topic_check.is_duplicate:
      return await self._duplicate(state, topic_check)

    if job.generated_title and job.generated_content:
      # A previous attempt already produced a draft.
      state.title, state.content = job.generated_title, job.generated_content
      self._logger.info("Reusing saved draft for job %s", job.id)
    else:
      outcome = await self._generate(state)
      if outcome is not None:
        return outcome

    assert state.title is not None and state.content is not None
    state.stage = "duplicate_check"
    state.draft_fingerprint = self._fingerprinter.fingerprint(job.topic, state.content, state.title)
    async with self._tracker.stage(state.run, "duplicate_check"):
      draft_check = await self._detector.check(job, state.draft_fingerprint)
    if draft_check.is_duplicate:
      return await self._duplicate(state, draft_check)

    outcome = await self._validate(state)
    if outcome is not None:
      return outcome

    outcome = await self._publish(state)
    if outcome is not None:
      return outcome

    return await self._complete(state)

  async def _defer_if_open(self, state: _JobState) -> ProcessingResult | None:
    for upstream in Upstream:
      breaker = self._retry.breaker(upstream)
      if breaker.is_open:
        return await self._defer(state, upstream)
    return None

  async def _admit(self, state: _JobState, upstream: Upstream) -> bool:
    if upstream in state.admitted:
      return True
    if not self._retry.breaker(upstream).allow_request():
      return False
    state.admitted.add(upstream)
    return True

  async def _generate(self, state: _JobState) -> ProcessingResult | None:
    state.stage = "generation"
    budget = self._limiter.check(Upstream.CONTENT_GENERATION)
    if not budget.allowed:
      return await self._defer_for_budget(state, Upstream.CONTENT_GENERATION, budget)
    if not await self._admit(state, Upstream.CONTENT_GENERATION):
      return await self._defer(state, Upstream.CONTENT_GENERATION)
    self._limiter.record(Upstream.CONTENT_GENERATION)

    request = GenerationRequest(topic=state.job.topic, model=state.model, hints=dict(state.hints))
    result: GenerationResult | None = None
    async with self._tracker.stage(state.run, "generation"):
      try:
        result = await self._generator.generate(request)
      except Exception as exc:  # noqa: BLE001
        error = generation_error_from_exception(exc)
      else:
        error = None if result.success and result.title and result.content else generation_error_from_result(result)

    if error is None and result is not None:
      self._retry.note_success(Upstream.CONTENT_GENERATION)
      state.admitted.discard(Upstream.CONTENT_GENERATION)
      self._planner.record_success(PartialFailureType.CONTENT_GENERATION)
      state.title, state.content = result.title, result.content
      await self._lease.save_draft(state.job.id, result.title or "", result.content or "", claimed_at=state.job.claimed_at)
      return None

    assert error is not None
    self._planner.record_failure(PartialFailureType.CONTENT_GENERATION)
    if error.kind in DEGRADABLE_GENERATION and "generation" not in state.degraded:
      state.degraded.add("generation")
      self._retry.note_failure(Upstream.CONTENT_GENERATION, self._retry.classify(error))
      state.admitted.discard(Upstream.CONTENT_GENERATION)
      plan = self._planner.plan(PartialFailureType.CONTENT_GENERATION, previous_attempts=state.job.retry_count, current_model=state.model, error_message=error.message)
      if plan.requires_manual_intervention:
        return await self._manual(state, plan, error.message)
      self._apply_generation_plan(state, plan)
      return await self._generate(state)

    return await self._upstream_failure(state, error)

  def _apply_generation_plan(self, state: _JobState, plan: DegradationPlan) -> None:
    payload = dict(plan.fallback_payload)
    model = payload.pop("model", None)
    if model:
      state.model = model
    state.hints.update(payload)
    state.warnings.extend(plan.warnings)

  async def _validate(self, state: _JobState) -> ProcessingResult | None:
    state.stage = "validation"
    async with self._tracker.stage(state.run, "validation"):
      outcome = await self._validator.validate(state.title or "", state.content or "", relaxed=state.relaxed_validation)
    if outcome.valid:
      self._planner.record_success(PartialFailureType.CONTENT_VALIDATION)
      return None

    self._planner.record_failure(PartialFailureType.CONTENT_VALIDATION)
    reason = "; ".join(outcome.errors) or "Draft rejected"
    if "validation" in state.degraded:
      return await self._fail(state, f"Content failed validation: {reason}", {"stage": "validation", "category": ErrorKind.VALIDATION.value, "severity": "medium", "errors": list(outcome.errors)})

    state.degraded.add("validation")
    plan = self._planner.plan(PartialFailureType.CONTENT_VALIDATION, previous_attempts=state.job.retry_count, error_message=reason)
    if plan.requires_manual_intervention:
      return await self._manual(state, plan, reason)
    state.warnings.extend(plan.warnings)
    if plan.fallback_payload.get("skip_validation"):
      self._logger.warning("Skipping validation for job %s: %s", state.job.id, reason)
      return None
    state.relaxed_validation = True
    return await self._validate(state)

  async def _publish(self, state: _JobState) -> ProcessingResult | None:
    state.stage = "publish"
    job = state.job
    assert state.draft_fingerprint is not None
    key = self._detector.idempotency_key_for(job.id, state.draft_fingerprint.topic_hash)
    receipt = await self._detector.validate_idempotency_key(key)
    if receipt.valid and receipt.publish_id:
      self._logger.info("Job %s already published as %s; skipping publish", job.id, receipt.publish_id)
      state.publish_id = receipt.publish_id
      return None

    budget = self._limiter.check(Upstream.PUBLISHING)
    if not budget.allowed:
      return await self._defer_for_budget(state, Upstream.PUBLISHING, budget)
    if not await self._admit(state, Upstream.PUBLISHING):
      return await self._defer(state, Upstream.PUBLISHING)
    self._limiter.record(Upstream.PUBLISHING)

    request = PublishRequest(job_id=job.id, title=state.title or "", content=state.content or "", categories=state.categories, tags=state.tags, skip_taxonomy=state.skip_taxonomy)
    result: PublishResult | None = None
    async with self._tracker.stage(state.run, "publish"):
      try:
        result = await self._publisher.publish(request)
      except Exception as exc:  # noqa: BLE001
        error: UpstreamError | None = publish_error_from_exception(exc)
      else:
        error = None if result.success and result.external_id else publish_error_from_result(result)

    if error is None and result is not None:
      self._retry.note_success(Upstream.PUBLISHING)
      state.admitted.discard(Upstream.PUBLISHING)
      self._planner.record_success(PartialFailureType.PUBLISH)
      state.publish_id = result.external_id
      return None

    if result is not None and result.error_stage == "taxonomy" and "taxonomy" not in state.degraded:
      return await self._degrade_taxonomy(state, result)

    assert error is not None
    self._planner.record_failure(PartialFailureType.PUBLISH)
    return await self._upstream_failure(state, error)

  async def _degrade_taxonomy(self, state: _JobState, result: PublishResult) -> ProcessingResult | None:
    state.degraded.add("taxonomy")
    self._planner.record_failure(PartialFailureType.TAXONOMY_RESOLUTION)
    reason = result.error or "Taxonomy resolution failed"
    plan = self._planner.plan(PartialFailureType.TAXONOMY_RESOLUTION, previous_attempts=state.job.retry_count, error_message=reason)
    if plan.requires_manual_intervention:
      return await self._manual(state, plan, reason)
    payload = plan.fallback_payload
    if payload.get("skip_taxonomy"):
      state.skip_taxonomy = True
    else:
      state.categories = tuple(payload.get("categories", ()))
      state.tags = tuple(payload.get("tags", ()))
    state.warnings.extend(plan.warnings)
    return await self._publish(state)

  async def _complete(self, state: _JobState) -> ProcessingResult:
    state.stage = "complete"
    job = state.job
    assert state.draft_fingerprint is not None and state.publish_id is not None
    await self._detector.create_idempotency_key(job, state.draft_fingerprint, state.publish_id)
    await self._lease.complete(job.id, state.title or "", state.content or "", state.publish_id, claimed_at=job.claimed_at)
    await self._retry.record_success(job.id)
    details = {"warnings": state.warnings} if state.warnings else None
    await self._tracker.finish(state.run, "completed", error_details=details)
    return self._result(state, success=True, outcome="completed")

  async def _upstream_failure(self, state: _JobState, error: UpstreamError) -> ProcessingResult:
    """Record the attempt and requeue, defer or fail the job."""
    decision = await self._retry.record_attempt(state.job.id, error, upstream=error.upstream)
    state.admitted.discard(error.upstream)
    classification = decision.classification
    details = {**classification.as_details(), "stage": state.stage, "upstream": error.upstream.value, "status_code": error.status_code, "retry_count": decision.retry_count, "message": error.message}

    if decision.max_reached:
      message = f"Max retries exceeded ({decision.retry_count}/{self._retry.max_retries}): {classification.description}: {error.message}"
      return await self._fail(state, message, details)
    if not classification.retryable:
      return await self._fail(state, f"{classification.description}: {error.message}", details)

    if decision.breaker_open:
      retry_at = decision.next_retry_at
      if error.upstream is Upstream.PUBLISHING:
        plan = self._planner.plan(PartialFailureType.PUBLISH, previous_attempts=decision.retry_count, error_message=error.message)
        if plan.requires_manual_intervention:
          return await self._manual(state, plan, error.message, details)
        extra = float(plan.fallback_payload.get("retry_delay_seconds", 0.0))
        retry_at = max(retry_at, self._clock.now() + timedelta(seconds=extra))
      details["deferred_until"] = retry_at.isoformat()
      return await self._release(state, f"Circuit open for {error.upstream.value}", retry_at, outcome="deferred", run_status="deferred", details=details)

    if decision.should_requeue:
      details["next_retry_at"] = decision.next_retry_at.isoformat()
      return await self._release(state, classification.description, decision.next_retry_at, outcome="requeued", run_status="retrying", details=details)

    return await self._fail(state, f"{classification.description}: {error.message}", details)

  async def _defer(self, state: _JobState, upstream: Upstream) -> ProcessingResult:
    """Return the job untouched until the upstream's breaker admits a trial."""
    breaker = self._retry.breaker(upstream)
    now = self._clock.now()
    retry_at = breaker.reopens_at
    if retry_at is None or retry_at <= now:
      # Half-open with the trial taken elsewhere.
      retry_at = now + HALF_OPEN_RECHECK
    details = {"stage": state.stage, "upstream": upstream.value, "breaker": breaker.state, "deferred_until": retry_at.isoformat()}
    return await self._release(state, f"Circuit open for {upstream.value}", retry_at, outcome="deferred", run_status="deferred", details=details)

  async def _defer_for_budget(self, state: _JobState, upstream: Upstream, decision: RateDecision) -> ProcessingResult:
    """Return the job untouched until the upstream's request budget has room again."""
    retry_at = self._clock.now() + timedelta(seconds=decision.wait_seconds)
    reason = decision.reason or f"Request budget exhausted for {upstream.value}"
    details = {"stage": state.stage, "upstream": upstream.value, "rate_limit": reason, "deferred_until": retry_at.isoformat()}
    return await self._release(state, reason, retry_at, outcome="deferred", run_status="deferred", details=details)

  async def _return_unstarted(self, job: JobRecord, exc: Exception) -> ProcessingResult:
    """Give the lease back when no run record could be opened."""
    message = f"Run record could not be created: {type(exc).__name__}: {exc}"
    try:
      await self._lease.release(job.id, message, retry_at=self._clock.now() + RUN_START_RECHECK, claimed_at=job.claimed_at)
    except LeaseError as lease_exc:
      self._logger.warning("Could not release job %s after a failed run start: %s", job.id, lease_exc)
      return ProcessingResult(success=False, outcome="failed", job_id=job.id, error=message)
    return ProcessingResult(success=False, outcome="requeued", job_id=job.id, error=message)

  async def _release(self, state: _JobState, reason: str, retry_at: datetime, *, outcome: Outcome, run_status: RunStatus, details: dict[str, Any]) -> ProcessingResult:
    await self._lease.release(state.job.id, reason, retry_at=retry_at, claimed_at=state.job.claimed_at)
    await self._tracker.finish(state.run, run_status, error_details=details)
    return self._result(state, success=False, outcome=outcome, error=reason)

  async def _duplicate(self, state: _JobState, check: DuplicateCheck) -> ProcessingResult:
    message = f"Duplicate content detected ({check.type}): matches job {check.existing_job_id}"
    details = {"stage": state.stage, "category": "duplicate", "duplicate_type": check.type, "existing_job_id": check.existing_job_id, "confidence": check.confidence}
    return await self._fail(state, message, details, outcome="duplicate")

  async def _manual(self, state: _JobState, plan: DegradationPlan, reason: str, details: dict[str, Any] | None = None) -> ProcessingResult:
    job = replace(state.job, generated_title=state.title, generated_content=state.content)
    await self._queue.submit(job, plan, reason)
    message = f"Manual intervention required ({plan.strategy.value}): {reason}"
    merged = {**(details or {}), "stage": state.stage, "strategy": plan.strategy.value, "warnings": list(plan.warnings), "next_steps": list(plan.next_steps)}
    return await self._fail(state, message, merged)

  async def _fail(self, state: _JobState, message: str, details: dict[str, Any], *, outcome: Outcome = "failed") -> ProcessingResult:
    await self._lease.fail(state.job.id, message, claimed_at=state.job.claimed_at, title=state.title, content=state.content)
    await self._tracker.finish(state.run, "failed", error_details=details)
    return self._result(state, success=False, outcome=outcome, error=message)

  def _result(self, state: _JobState, *, success: bool, outcome: Outcome, error: str | None = None) -> ProcessingResult:
    return ProcessingResult(success=success, outcome=outcome, job_id=state.job.id, error=error, publish_id=state.publish_id, title=state.title, timings=dict(state.run.timings))
