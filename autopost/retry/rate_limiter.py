"""Process-local request budgets that keep upstream calls under their published limits."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

from autopost.config import RateLimitConfig, UpstreamRateLimit
from autopost.providers.errors import Upstream
from autopost.utils.clock import Clock

_MINUTE = 60.0
_HOUR = 3600.0


@dataclass(frozen=True)
class RateDecision:
  """Whether a request may go out now, and how long to wait otherwise."""

  allowed: bool
  wait_seconds: float = 0.0
  reason: str | None = None


class RateLimiter:
  """Sliding-window limiter with burst, per-minute and per-hour budgets per upstream.

  Budgets are tracked on the monotonic clock and never shared between processes.
  Reactive rate limits reported by an upstream are handled by the retry
  coordinator; this limiter only avoids provoking them.
  """

  def __init__(self, *, clock: Clock, config: RateLimitConfig | None = None) -> None:
    self._clock = clock
    self._config = config or RateLimitConfig()
    self._requests: dict[Upstream, deque[float]] = {upstream: deque() for upstream in Upstream}
    self._logger = logging.getLogger(__name__)

  def limits(self, upstream: Upstream) -> UpstreamRateLimit:
    if upstream is Upstream.PUBLISHING:
      return self._config.publishing
    return self._config.generation

  def check(self, upstream: Upstream) -> RateDecision:
    """Report whether one more request fits every window."""
    now = self._clock.monotonic()
    requests = self._prune(upstream, now)
    limits = self.limits(upstream)
    windows = (
      ("Burst", limits.burst_limit, limits.burst_window_seconds),
      ("Per-minute", limits.requests_per_minute, _MINUTE),
      ("Per-hour", limits.requests_per_hour, _HOUR),
    )
    for label, limit, window in windows:
      in_window = [stamp for stamp in requests if now - stamp < window]
      if len(in_window) >= limit:
        wait = window - (now - in_window[0])
        reason = f"{label} limit of {limit} requests reached for {upstream.value}"
        self._logger.info("%s; next slot in %.1fs", reason, wait)
        return RateDecision(allowed=False, wait_seconds=wait, reason=reason)
    return RateDecision(allowed=True)

  def record(self, upstream: Upstream) -> None:
    """Count a request that is about to be sent."""
    now = self._clock.monotonic()
    self._prune(upstream, now).append(now)

  def snapshot(self) -> dict[str, dict[str, int]]:
    now = self._clock.monotonic()
    stats: dict[str, dict[str, int]] = {}
    for upstream in Upstream:
      requests = self._prune(upstream, now)
      limits = self.limits(upstream)
      last_minute = sum(1 for stamp in requests if now - stamp < _MINUTE)
      stats[upstream.value] = {
        "requests_last_minute": last_minute,
        "requests_last_hour": len(requests),
        "remaining_this_minute": max(limits.requests_per_minute - last_minute, 0),
      }
    return stats

  def _prune(self, upstream: Upstream, now: float) -> deque[float]:
    requests = self._requests[upstream]
    while requests and now - requests[0] >= _HOUR:
      requests.popleft()
    return requests
