"""Injectable time sources."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
  """Wall-clock and monotonic time used by the orchestration engine."""

  def now(self) -> datetime:
    """Return the current timezone-aware UTC time."""

  def monotonic(self) -> float:
    """Return a monotonic timestamp in seconds for measuring durations."""


class SystemClock:
  """Clock backed by the host's real time."""

  def now(self) -> datetime:
    return datetime.now(UTC)

  def monotonic(self) -> float:
    return time.monotonic()


def elapsed_ms(clock: Clock, started: float) -> float:
  """Milliseconds elapsed since a monotonic start mark."""
  return round((clock.monotonic() - started) * 1000.0, 2)
