"""Process-local circuit breaker guarding one upstream dependency."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from autopost.config import BreakerConfig
from autopost.utils.clock import Clock

BreakerState = Literal["closed", "open", "half_open"]
Severity = Literal["low", "medium", "high", "critical"]

TRIPPING_SEVERITIES: frozenset[str] = frozenset({"high", "critical"})


@dataclass(frozen=True)
class CircuitBreakerState:
  """Point-in-time view of a breaker."""

  name: str
  state: BreakerState
  consecutive_failures: int
  open: bool
  opened_at: datetime | None


class CircuitBreaker:
  """Stops calls to a failing upstream until a cool-down elapses.

  High and critical failures count toward the threshold; a success resets the
  count. Once open, requests are refused until the cool-down passes, then a
  single trial is admitted. The trial's outcome closes or re-opens the breaker.
  """

  def __init__(self, name: str, *, clock: Clock, config: BreakerConfig | None = None) -> None:
    self.name = name
    self._clock = clock
    self._config = config or BreakerConfig()
    self._state: BreakerState = "closed"
    self._consecutive_failures = 0
    self._opened_at: datetime | None = None
    self._trial_in_flight = False
    self._logger = logging.getLogger(__name__)

  @property
  def state(self) -> BreakerState:
    return self._state

  @property
  def consecutive_failures(self) -> int:
    return self._consecutive_failures

  @property
  def reopens_at(self) -> datetime | None:
    """When an open breaker will admit its trial request."""
    if self._opened_at is None or self._state == "closed":
      return None
    return self._opened_at + timedelta(seconds=self._config.cooldown_seconds)

  @property
  def is_open(self) -> bool:
    """Whether requests are currently refused, without consuming the trial."""
    if self._state == "open":
      reopens_at = self.reopens_at
      return reopens_at is None or self._clock.now() < reopens_at
    if self._state == "half_open":
      return self._trial_in_flight
    return False

  def allow_request(self) -> bool:
    """Ask to make a call; in half-open state only the first caller gets through."""
    if self._state == "closed":
      return True
    if self._state == "open":
      reopens_at = self.reopens_at
      if reopens_at is not None and self._clock.now() < reopens_at:
        return False
      self._state = "half_open"
      self._trial_in_flight = False
      self._logger.info("Circuit %s half-open; admitting one trial request", self.name)
    if self._trial_in_flight:
      return False
    self._trial_in_flight = True
    return True

  def record_success(self) -> None:
    if self._state != "closed":
      self._logger.info("Circuit %s closed after successful trial", self.name)
    self._state = "closed"
    self._consecutive_failures = 0
    self._opened_at = None
    self._trial_in_flight = False

  def record_failure(self, severity: Severity) -> None:
    if self._state == "half_open":
      self._open()
      return
    if severity not in TRIPPING_SEVERITIES:
      return
    self._consecutive_failures += 1
    if self._state == "closed" and self._consecutive_failures >= self._config.failure_threshold:
      self._open()

  def release_trial(self) -> None:
    """Give back an admitted half-open trial whose call never produced an outcome."""
    if self._state == "half_open" and self._trial_in_flight:
      self._trial_in_flight = False
      self._logger.info("Circuit %s trial released without an outcome", self.name)

  def snapshot(self) -> CircuitBreakerState:
    return CircuitBreakerState(name=self.name, state=self._state, consecutive_failures=self._consecutive_failures, open=self._state == "open", opened_at=self._opened_at)

  def _open(self) -> None:
    self._state = "open"
    self._opened_at = self._clock.now()
    self._trial_in_flight = False
    self._logger.warning("Circuit %s opened after %d consecutive failures; cooling down %.0fs", self.name, self._consecutive_failures, self._config.cooldown_seconds)
