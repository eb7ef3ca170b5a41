from __future__ import annotations

import pytest
from conftest import FakeClock

from autopost.config import DegradationConfig
from autopost.degradation.planner import DegradationPlanner, DegradationStrategy, PartialFailureType


@pytest.fixture
def planner(clock: FakeClock) -> DegradationPlanner:
  return DegradationPlanner(clock=clock, config=DegradationConfig())


def _degrade(planner: DegradationPlanner, failure_type: PartialFailureType, times: int) -> None:
  for _ in range(times):
    planner.record_failure(failure_type)


def test_healthy_system_picks_least_aggressive(planner: DegradationPlanner) -> None:
  assert planner.select_strategy(PartialFailureType.CONTENT_GENERATION, 5) is DegradationStrategy.FALLBACK_MODEL
  assert planner.select_strategy(PartialFailureType.PUBLISH, 2) is DegradationStrategy.RETRY_LATER


def test_middle_band_indexes_by_previous_attempts(planner: DegradationPlanner) -> None:
  # Publish at 0.0 and validation at 0.8 average to 0.7 across the four types.
  _degrade(planner, PartialFailureType.PUBLISH, 10)
  _degrade(planner, PartialFailureType.CONTENT_VALIDATION, 2)
  assert 0.5 <= planner.aggregate_health <= 0.8

  assert planner.select_strategy(PartialFailureType.CONTENT_VALIDATION, 0) is DegradationStrategy.RELAXED_VALIDATION
  assert planner.select_strategy(PartialFailureType.CONTENT_VALIDATION, 1) is DegradationStrategy.SKIP_VALIDATION
  assert planner.select_strategy(PartialFailureType.CONTENT_VALIDATION, 7) is DegradationStrategy.MANUAL_REVIEW


def test_critical_health_picks_most_aggressive(planner: DegradationPlanner) -> None:
  for failure_type in PartialFailureType:
    _degrade(planner, failure_type, 6)
  assert planner.aggregate_health < 0.5

  plan = planner.plan(PartialFailureType.TAXONOMY_RESOLUTION, previous_attempts=0)

  assert plan.strategy is DegradationStrategy.MANUAL_ASSIGNMENT
  assert plan.requires_manual_intervention


def test_health_is_clamped(planner: DegradationPlanner) -> None:
  _degrade(planner, PartialFailureType.PUBLISH, 50)
  assert planner.health(PartialFailureType.PUBLISH) == 0.0
  for _ in range(50):
    planner.record_success(PartialFailureType.PUBLISH)
  assert planner.health(PartialFailureType.PUBLISH) == 1.0


def test_fallback_model_skips_current_model(planner: DegradationPlanner) -> None:
  plan = planner.plan(PartialFailureType.CONTENT_GENERATION, previous_attempts=0, current_model="gpt-4o-mini", error_message="model overloaded")

  assert plan.fallback_payload == {"model": "gpt-3.5-turbo"}
  assert plan.warnings[-1] == "Triggered by: model overloaded"
  assert not plan.requires_manual_intervention
  assert plan.created_at is not None


def test_retry_later_delay_grows_and_caps(planner: DegradationPlanner) -> None:
  assert planner.plan(PartialFailureType.PUBLISH, previous_attempts=0).fallback_payload == {"retry_delay_seconds": 30.0}
  assert planner.plan(PartialFailureType.PUBLISH, previous_attempts=2).fallback_payload == {"retry_delay_seconds": 120.0}
  assert planner.plan(PartialFailureType.PUBLISH, previous_attempts=9).fallback_payload == {"retry_delay_seconds": 600.0}


def test_default_categories_payload(planner: DegradationPlanner) -> None:
  plan = planner.plan(PartialFailureType.TAXONOMY_RESOLUTION, previous_attempts=0)

  assert plan.strategy is DegradationStrategy.DEFAULT_CATEGORIES
  assert plan.fallback_payload["categories"] == ["General", "Technology", "Business"]


def test_history_is_bounded(clock: FakeClock) -> None:
  planner = DegradationPlanner(clock=clock, config=DegradationConfig(history_size=3))
  for _ in range(5):
    planner.plan(PartialFailureType.PUBLISH, previous_attempts=0)

  assert len(planner.history()) == 3


def test_health_snapshot_reports_aggregate(planner: DegradationPlanner) -> None:
  planner.record_failure(PartialFailureType.PUBLISH)

  snapshot = planner.health_snapshot()

  assert snapshot["publish"] == 0.9
  assert snapshot["aggregate"] == 0.975
