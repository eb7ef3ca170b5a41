"""Exceptions raised by job leasing operations."""

from __future__ import annotations


class LeaseError(Exception):
  """Base class for job lease failures."""


class JobNotFoundError(LeaseError):
  """Raised when a job id is unknown to the store."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job not found: {job_id}")
    self.job_id = job_id


class InvalidTransitionError(LeaseError):
  """Raised when a status change is not allowed from the job's current status."""

  def __init__(self, job_id: str, current: str, target: str) -> None:
    super().__init__(f"Invalid transition for job {job_id}: {current} -> {target}")
    self.job_id = job_id
    self.current = current
    self.target = target


class LeaseLostError(LeaseError):
  """Raised when a lease holder writes after its lease was returned or re-issued."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Lease lost for job {job_id}")
    self.job_id = job_id


class MaxRetriesExceededError(LeaseError):
  """Raised when an admin retry targets a job that already used every attempt."""

  def __init__(self, job_id: str, retry_count: int, max_retries: int) -> None:
    super().__init__(f"Job {job_id} exhausted its retries ({retry_count}/{max_retries})")
    self.job_id = job_id
    self.retry_count = retry_count
    self.max_retries = max_retries
