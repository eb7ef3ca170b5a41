"""Fallback strategy selection for partially failed pipeline stages."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from autopost.config import DegradationConfig
from autopost.jobs.models import JobRecord
from autopost.utils.clock import Clock


class PartialFailureType(str, Enum):
  CONTENT_GENERATION = "content_generation"
  CONTENT_VALIDATION = "content_validation"
  PUBLISH = "publish"
  TAXONOMY_RESOLUTION = "taxonomy_resolution"


class DegradationStrategy(str, Enum):
  FALLBACK_MODEL = "fallback_model"
  SIMPLIFIED_PROMPT = "simplified_prompt"
  TEMPLATE_FALLBACK = "template_fallback"
  RELAXED_VALIDATION = "relaxed_validation"
  SKIP_VALIDATION = "skip_validation"
  MANUAL_REVIEW = "manual_review"
  RETRY_LATER = "retry_later"
  SAVE_LOCALLY = "save_locally"
  MANUAL_POSTING = "manual_posting"
  DEFAULT_CATEGORIES = "default_categories"
  SKIP_TAXONOMY = "skip_taxonomy"
  MANUAL_ASSIGNMENT = "manual_assignment"


# Ordered least to most aggressive.
STRATEGIES: dict[PartialFailureType, tuple[DegradationStrategy, ...]] = {
  PartialFailureType.CONTENT_GENERATION: (DegradationStrategy.FALLBACK_MODEL, DegradationStrategy.SIMPLIFIED_PROMPT, DegradationStrategy.TEMPLATE_FALLBACK),
  PartialFailureType.CONTENT_VALIDATION: (DegradationStrategy.RELAXED_VALIDATION, DegradationStrategy.SKIP_VALIDATION, DegradationStrategy.MANUAL_REVIEW),
  PartialFailureType.PUBLISH: (DegradationStrategy.RETRY_LATER, DegradationStrategy.SAVE_LOCALLY, DegradationStrategy.MANUAL_POSTING),
  PartialFailureType.TAXONOMY_RESOLUTION: (DegradationStrategy.DEFAULT_CATEGORIES, DegradationStrategy.SKIP_TAXONOMY, DegradationStrategy.MANUAL_ASSIGNMENT),
}

MANUAL_STRATEGIES: frozenset[DegradationStrategy] = frozenset(
  {DegradationStrategy.MANUAL_REVIEW, DegradationStrategy.SAVE_LOCALLY, DegradationStrategy.MANUAL_POSTING, DegradationStrategy.MANUAL_ASSIGNMENT}
)

_WARNINGS: dict[DegradationStrategy, str] = {
  DegradationStrategy.FALLBACK_MODEL: "Generating with a fallback model; quality may differ",
  DegradationStrategy.SIMPLIFIED_PROMPT: "Generating with a simplified prompt",
  DegradationStrategy.TEMPLATE_FALLBACK: "Generating from a fixed template",
  DegradationStrategy.RELAXED_VALIDATION: "Validating with relaxed rules",
  DegradationStrategy.SKIP_VALIDATION: "Publishing without validation",
  DegradationStrategy.MANUAL_REVIEW: "Draft requires manual review before publishing",
  DegradationStrategy.RETRY_LATER: "Publishing deferred until the publisher recovers",
  DegradationStrategy.SAVE_LOCALLY: "Draft saved for later publishing",
  DegradationStrategy.MANUAL_POSTING: "Draft requires manual posting",
  DegradationStrategy.DEFAULT_CATEGORIES: "Publishing with default categories and tags",
  DegradationStrategy.SKIP_TAXONOMY: "Publishing without categories or tags",
  DegradationStrategy.MANUAL_ASSIGNMENT: "Categories and tags require manual assignment",
}

_NEXT_STEPS: dict[DegradationStrategy, tuple[str, ...]] = {
  DegradationStrategy.FALLBACK_MODEL: ("Retry generation with the fallback model", "Monitor primary model availability"),
  DegradationStrategy.SIMPLIFIED_PROMPT: ("Retry generation with a shorter prompt",),
  DegradationStrategy.TEMPLATE_FALLBACK: ("Retry generation from the template", "Review templated output"),
  DegradationStrategy.RELAXED_VALIDATION: ("Re-validate with relaxed rules",),
  DegradationStrategy.SKIP_VALIDATION: ("Publish and review the post afterwards",),
  DegradationStrategy.MANUAL_REVIEW: ("Queue the draft for an editor",),
  DegradationStrategy.RETRY_LATER: ("Requeue the job with an extended delay",),
  DegradationStrategy.SAVE_LOCALLY: ("Keep the draft on the job", "Publish once the target recovers"),
  DegradationStrategy.MANUAL_POSTING: ("Hand the draft to an operator for posting",),
  DegradationStrategy.DEFAULT_CATEGORIES: ("Retry publishing with default taxonomy",),
  DegradationStrategy.SKIP_TAXONOMY: ("Retry publishing without taxonomy",),
  DegradationStrategy.MANUAL_ASSIGNMENT: ("Assign categories and tags by hand",),
}


@dataclass(frozen=True)
class DegradationPlan:
  failure_type: PartialFailureType
  strategy: DegradationStrategy
  fallback_payload: dict[str, Any] = field(default_factory=dict)
  warnings: tuple[str, ...] = ()
  next_steps: tuple[str, ...] = ()
  requires_manual_intervention: bool = False
  health: float = 1.0
  created_at: datetime | None = None


class ManualInterventionQueue(Protocol):
  async def submit(self, job: JobRecord, plan: DegradationPlan, reason: str) -> None:
    """Hand a job to operators."""


class LoggingInterventionQueue:
  """Intervention queue that records hand-offs in the log."""

  def __init__(self) -> None:
    self._logger = logging.getLogger(__name__)

  async def submit(self, job: JobRecord, plan: DegradationPlan, reason: str) -> None:
    self._logger.warning("Manual intervention required job=%s strategy=%s reason=%s", job.id, plan.strategy.value, reason)


class DegradationPlanner:
  """Chooses how aggressively to degrade based on process-local health."""

  def __init__(self, *, clock: Clock, config: DegradationConfig | None = None) -> None:
    self._clock = clock
    self._config = config or DegradationConfig()
    self._health: dict[PartialFailureType, float] = {failure_type: 1.0 for failure_type in PartialFailureType}
    self._history: deque[DegradationPlan] = deque(maxlen=self._config.history_size)
    self._logger = logging.getLogger(__name__)

  def health(self, failure_type: PartialFailureType) -> float:
    return self._health[failure_type]

  @property
  def aggregate_health(self) -> float:
    return sum(self._health.values()) / len(self._health)

  def health_snapshot(self) -> dict[str, float]:
    snapshot = {failure_type.value: round(score, 3) for failure_type, score in self._health.items()}
    snapshot["aggregate"] = round(self.aggregate_health, 3)
    return snapshot

  def record_success(self, failure_type: PartialFailureType) -> None:
    self._adjust(failure_type, self._config.health_step)

  def record_failure(self, failure_type: PartialFailureType) -> None:
    self._adjust(failure_type, -self._config.health_step)

  def select_strategy(self, failure_type: PartialFailureType, previous_attempts: int) -> DegradationStrategy:
    options = STRATEGIES[failure_type]
    health = self.aggregate_health
    if health > self._config.healthy_threshold:
      return options[0]
    if health < self._config.critical_threshold:
      return options[-1]
    return options[min(max(previous_attempts, 0), len(options) - 1)]

  def plan(self, failure_type: PartialFailureType, *, previous_attempts: int, current_model: str | None = None, error_message: str | None = None) -> DegradationPlan:
    strategy = self.select_strategy(failure_type, previous_attempts)
    warnings = [_WARNINGS[strategy]]
    if error_message:
      warnings.append(f"Triggered by: {error_message}")
    plan = DegradationPlan(
      failure_type=failure_type,
      strategy=strategy,
      fallback_payload=self._payload(strategy, previous_attempts, current_model),
      warnings=tuple(warnings),
      next_steps=_NEXT_STEPS[strategy],
      requires_manual_intervention=strategy in MANUAL_STRATEGIES,
      health=round(self.aggregate_health, 3),
      created_at=self._clock.now(),
    )
    self._history.append(plan)
    self._logger.info("Degradation plan type=%s strategy=%s health=%.2f attempts=%d", failure_type.value, strategy.value, plan.health, previous_attempts)
    return plan

  def history(self) -> list[DegradationPlan]:
    return list(self._history)

  def _payload(self, strategy: DegradationStrategy, previous_attempts: int, current_model: str | None) -> dict[str, Any]:
    if strategy is DegradationStrategy.FALLBACK_MODEL:
      model = next((candidate for candidate in self._config.fallback_models if candidate != current_model), None)
      return {"model": model} if model else {"simplified_prompt": True}
    if strategy is DegradationStrategy.RETRY_LATER:
      delay = min(self._config.retry_later_base_seconds * (2 ** max(previous_attempts, 0)), self._config.retry_later_cap_seconds)
      return {"retry_delay_seconds": delay}
    if strategy is DegradationStrategy.DEFAULT_CATEGORIES:
      return {"categories": list(self._config.default_categories), "tags": list(self._config.default_tags)}
    if strategy in MANUAL_STRATEGIES:
      return {"manual": strategy.value, "save_draft": strategy is DegradationStrategy.SAVE_LOCALLY}
    # The remaining strategies are flags named after themselves.
    return {strategy.value: True}

  def _adjust(self, failure_type: PartialFailureType, delta: float) -> None:
    self._health[failure_type] = min(1.0, max(0.0, self._health[failure_type] + delta))
