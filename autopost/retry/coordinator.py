"""Failure classification, retry accounting and per-upstream circuit breakers."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from autopost.config import BreakerConfig, RetryPolicy
from autopost.jobs.errors import JobNotFoundError
from autopost.providers.errors import ErrorKind, Upstream, UpstreamError, classify_failure
from autopost.retry.circuit_breaker import CircuitBreaker, CircuitBreakerState, Severity
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock


@dataclass(frozen=True)
class FailureClassification:
  category: ErrorKind
  severity: Severity
  retryable: bool
  suggested_delay: float
  description: str
  suggested_action: str

  def as_details(self) -> dict[str, object]:
    return {
      "category": self.category.value,
      "severity": self.severity,
      "retryable": self.retryable,
      "suggested_delay": self.suggested_delay,
      "description": self.description,
      "suggested_action": self.suggested_action,
    }


@dataclass(frozen=True)
class RetryDecision:
  """Result of recording one failed attempt."""

  job_id: str
  retry_count: int
  next_retry_at: datetime
  delay_seconds: float
  max_reached: bool
  breaker_open: bool
  should_requeue: bool
  classification: FailureClassification


# category -> (severity, retryable, base delay seconds, description, suggested action)
_CATEGORY_RULES: dict[ErrorKind, tuple[Severity, bool, float, str, str]] = {
  ErrorKind.AUTHENTICATION: ("critical", False, 0.0, "Authentication with the upstream failed", "Check API credentials"),
  ErrorKind.AUTHORIZATION: ("critical", False, 0.0, "Upstream denied permission", "Grant the account the required permissions"),
  ErrorKind.RATE_LIMIT: ("medium", True, 60.0, "Upstream rate limit exceeded", "Wait for the rate limit window to reset"),
  ErrorKind.MODEL_UNAVAILABLE: ("high", True, 30.0, "Requested model is unavailable", "Retry later or switch to a fallback model"),
  ErrorKind.CONTENT_POLICY: ("high", False, 0.0, "Content policy violation", "Revise the topic or prompt"),
  ErrorKind.VALIDATION: ("medium", False, 0.0, "Request or content failed validation", "Fix the request payload"),
  ErrorKind.NETWORK: ("medium", True, 15.0, "Network error reaching upstream", "Check connectivity; retry shortly"),
  ErrorKind.SERVER: ("high", True, 30.0, "Upstream server error or service unavailable", "Retry after the service recovers"),
  ErrorKind.TOKEN_LIMIT: ("medium", False, 0.0, "Token limit exceeded", "Shorten the prompt or lower max tokens"),
  ErrorKind.UNKNOWN: ("medium", True, 10.0, "Unknown error", "Inspect logs"),
}

NON_RETRYABLE: frozenset[ErrorKind] = frozenset(kind for kind, rule in _CATEGORY_RULES.items() if not rule[1])


class RetryCoordinator:
  """Decides whether failed jobs are requeued, and when."""

  def __init__(self, store: JobStore, *, clock: Clock, policy: RetryPolicy | None = None, breaker_config: BreakerConfig | None = None, rng: random.Random | None = None) -> None:
    self._store = store
    self._clock = clock
    self._policy = policy or RetryPolicy()
    self._rng = rng or random.Random()
    self._breakers = {upstream: CircuitBreaker(upstream.value, clock=clock, config=breaker_config) for upstream in Upstream}
    self._logger = logging.getLogger(__name__)

  @property
  def max_retries(self) -> int:
    return self._policy.max_retries

  def breaker(self, upstream: Upstream) -> CircuitBreaker:
    return self._breakers[upstream]

  def breaker_snapshots(self) -> dict[str, CircuitBreakerState]:
    return {upstream.value: breaker.snapshot() for upstream, breaker in self._breakers.items()}

  def classify(self, error: BaseException) -> FailureClassification:
    """Map any failure onto a category with severity and base delay."""
    if isinstance(error, UpstreamError):
      kind = error.kind
      retry_after = error.retry_after
    else:
      kind = classify_failure(message=str(error) or type(error).__name__)
      retry_after = None
    severity, retryable, base_delay, description, action = _CATEGORY_RULES[kind]
    if kind is ErrorKind.RATE_LIMIT and retry_after:
      base_delay = retry_after
    return FailureClassification(category=kind, severity=severity, retryable=retryable, suggested_delay=base_delay, description=description, suggested_action=action)

  def compute_delay(self, classification: FailureClassification, prior_failures: int) -> float:
    """Exponential backoff from the category base, capped, plus up to 10% jitter."""
    base = classification.suggested_delay or 1.0
    delay = min(base * (2 ** max(prior_failures, 0)), self._policy.delay_cap_seconds)
    return delay + delay * self._policy.jitter_ratio * self._rng.random()

  def should_requeue(self, category: ErrorKind, breaker_open: bool, retry_count: int, max_retries: int | None = None) -> bool:
    limit = self._policy.max_retries if max_retries is None else max_retries
    return category not in NON_RETRYABLE and not breaker_open and retry_count < limit

  def note_failure(self, upstream: Upstream, classification: FailureClassification) -> None:
    self._breakers[upstream].record_failure(classification.severity)

  def note_success(self, upstream: Upstream) -> None:
    self._breakers[upstream].record_success()

  async def record_attempt(self, job_id: str, error: BaseException, *, upstream: Upstream | None = None) -> RetryDecision:
    """Count a failed attempt, update the breaker and gate the job's next eligibility."""
    if upstream is None and isinstance(error, UpstreamError):
      upstream = error.upstream
    classification = self.classify(error)
    if upstream is not None:
      self.note_failure(upstream, classification)

    job = await self._store.get_job(job_id)
    if job is None:
      raise JobNotFoundError(job_id)

    now = self._clock.now()
    delay = self.compute_delay(classification, job.retry_count)
    next_retry_at = now + timedelta(seconds=delay)

    breaker = self._breakers[upstream] if upstream is not None else None
    breaker_open = breaker is not None and breaker.is_open
    if breaker_open and breaker is not None and breaker.reopens_at is not None and breaker.reopens_at > next_retry_at:
      next_retry_at = breaker.reopens_at
      delay = (next_retry_at - now).total_seconds()

    message = f"{classification.description}: {error}"
    updated = await self._store.record_failure(job_id, error=message, next_retry_at=next_retry_at, now=now)
    if updated is None:
      raise JobNotFoundError(job_id)

    max_reached = updated.retry_count >= self._policy.max_retries
    decision = RetryDecision(
      job_id=job_id,
      retry_count=updated.retry_count,
      next_retry_at=next_retry_at,
      delay_seconds=round(delay, 3),
      max_reached=max_reached,
      breaker_open=breaker_open,
      should_requeue=self.should_requeue(classification.category, breaker_open, updated.retry_count),
      classification=classification,
    )
    self._logger.warning(
      "Attempt failed job=%s upstream=%s category=%s severity=%s retry=%d/%d next_retry_in=%.1fs breaker_open=%s",
      job_id,
      upstream.value if upstream else "none",
      classification.category.value,
      classification.severity,
      updated.retry_count,
      self._policy.max_retries,
      delay,
      breaker_open,
    )
    return decision

  async def record_success(self, job_id: str, *, upstream: Upstream | None = None) -> None:
    """Reset the job's retry count and, when given, close the upstream's breaker."""
    if upstream is not None:
      self.note_success(upstream)
    updated = await self._store.reset_retries(job_id, now=self._clock.now())
    if updated is None:
      raise JobNotFoundError(job_id)
