from __future__ import annotations

import pytest
from conftest import FakeClock

from autopost.config import RateLimitConfig, UpstreamRateLimit
from autopost.providers.errors import Upstream
from autopost.retry.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
  config = RateLimitConfig(
    generation=UpstreamRateLimit(requests_per_minute=5, requests_per_hour=8, burst_limit=2, burst_window_seconds=10.0),
    publishing=UpstreamRateLimit(requests_per_minute=100, requests_per_hour=1000, burst_limit=20, burst_window_seconds=5.0),
  )
  return RateLimiter(clock=clock, config=config)


def _spend(limiter: RateLimiter, upstream: Upstream, count: int) -> None:
  for _ in range(count):
    assert limiter.check(upstream).allowed
    limiter.record(upstream)


def test_burst_window_blocks_until_oldest_request_ages_out(limiter: RateLimiter, clock: FakeClock) -> None:
  _spend(limiter, Upstream.CONTENT_GENERATION, 1)
  clock.advance(4)
  _spend(limiter, Upstream.CONTENT_GENERATION, 1)

  decision = limiter.check(Upstream.CONTENT_GENERATION)

  assert not decision.allowed
  assert decision.wait_seconds == pytest.approx(6.0)
  assert decision.reason == "Burst limit of 2 requests reached for content_generation"
  clock.advance(6)
  assert limiter.check(Upstream.CONTENT_GENERATION).allowed


def test_minute_budget_applies_after_bursts_clear(limiter: RateLimiter, clock: FakeClock) -> None:
  for count in (2, 2, 1):
    _spend(limiter, Upstream.CONTENT_GENERATION, count)
    clock.advance(10)

  decision = limiter.check(Upstream.CONTENT_GENERATION)

  assert not decision.allowed
  assert decision.reason is not None and decision.reason.startswith("Per-minute limit of 5")
  assert decision.wait_seconds == pytest.approx(30.0)


def test_hour_budget_outlasts_the_minute_window(limiter: RateLimiter, clock: FakeClock) -> None:
  for _ in range(4):
    _spend(limiter, Upstream.CONTENT_GENERATION, 2)
    clock.advance(61)

  decision = limiter.check(Upstream.CONTENT_GENERATION)

  assert not decision.allowed
  assert decision.reason is not None and decision.reason.startswith("Per-hour limit of 8")
  assert decision.wait_seconds == pytest.approx(3600 - 4 * 61)


def test_upstreams_have_independent_budgets(limiter: RateLimiter) -> None:
  _spend(limiter, Upstream.CONTENT_GENERATION, 2)

  assert not limiter.check(Upstream.CONTENT_GENERATION).allowed
  assert limiter.check(Upstream.PUBLISHING).allowed

  stats = limiter.snapshot()
  assert stats["content_generation"] == {"requests_last_minute": 2, "requests_last_hour": 2, "remaining_this_minute": 3}
  assert stats["publishing"]["requests_last_minute"] == 0


def test_defaults_follow_published_upstream_limits(clock: FakeClock) -> None:
  limiter = RateLimiter(clock=clock)

  assert limiter.limits(Upstream.CONTENT_GENERATION).requests_per_minute == 60
  assert limiter.limits(Upstream.CONTENT_GENERATION).burst_limit == 10
  assert limiter.limits(Upstream.PUBLISHING).requests_per_minute == 100
  assert limiter.limits(Upstream.PUBLISHING).burst_window_seconds == 5.0
