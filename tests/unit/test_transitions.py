from __future__ import annotations

import pytest

from autopost.jobs.errors import InvalidTransitionError
from autopost.jobs.models import JOB_STATUSES
from autopost.jobs.transitions import ALLOWED_TRANSITIONS, LEASE_RETURN, can_transition, ensure_transition, sources_for


@pytest.mark.parametrize(
  ("current", "target"),
  [("pending", "processing"), ("pending", "cancelled"), ("processing", "completed"), ("processing", "failed"), ("processing", "cancelled"), ("failed", "pending")],
)
def test_allowed_transitions(current: str, target: str) -> None:
  assert can_transition(current, target)  # type: ignore[arg-type]


def test_terminal_statuses_have_no_exits() -> None:
  for target in JOB_STATUSES:
    assert not can_transition("completed", target)
    assert not can_transition("cancelled", target)


def test_every_pair_outside_the_table_is_rejected() -> None:
  for current in JOB_STATUSES:
    for target in JOB_STATUSES:
      if target in ALLOWED_TRANSITIONS[current]:
        continue
      with pytest.raises(InvalidTransitionError) as excinfo:
        ensure_transition("job-1", current, target)
      assert excinfo.value.current == current
      assert excinfo.value.target == target


def test_lease_return_is_not_a_requestable_transition() -> None:
  source, target = LEASE_RETURN
  assert (source, target) == ("processing", "pending")
  assert not can_transition(source, target)


def test_sources_for_pending_is_failed_only() -> None:
  assert sources_for("pending") == ("failed",)
  assert set(sources_for("cancelled")) == {"pending", "processing"}
