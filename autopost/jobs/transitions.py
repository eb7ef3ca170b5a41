"""Allowed job status transitions."""

from __future__ import annotations

from autopost.jobs.errors import InvalidTransitionError
from autopost.jobs.models import JobStatus

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
  "pending": frozenset({"processing", "cancelled"}),
  "processing": frozenset({"completed", "failed", "cancelled"}),
  "failed": frozenset({"pending"}),
  "completed": frozenset(),
  "cancelled": frozenset(),
}

# Returning a lease is not a status request; only release and sweep use it.
LEASE_RETURN: tuple[JobStatus, JobStatus] = ("processing", "pending")


def can_transition(current: JobStatus, target: JobStatus) -> bool:
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
  if not can_transition(current, target):
    raise InvalidTransitionError(job_id, current, target)


def sources_for(target: JobStatus) -> tuple[JobStatus, ...]:
  """Statuses from which the target status is reachable."""
  return tuple(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)
