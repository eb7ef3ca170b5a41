from __future__ import annotations

import random
from datetime import timedelta

import pytest
from conftest import FakeClock, InMemoryJobStore

from autopost.config import BreakerConfig, RetryPolicy
from autopost.jobs.errors import JobNotFoundError
from autopost.providers.errors import ErrorKind, Upstream, UpstreamError
from autopost.retry.coordinator import NON_RETRYABLE, RetryCoordinator


def _server_error() -> UpstreamError:
  return UpstreamError("HTTP 503 Service Unavailable", kind=ErrorKind.SERVER, upstream=Upstream.PUBLISHING, status_code=503)


@pytest.fixture
def coordinator(store: InMemoryJobStore, clock: FakeClock) -> RetryCoordinator:
  return RetryCoordinator(store, clock=clock, policy=RetryPolicy(max_retries=3), breaker_config=BreakerConfig(failure_threshold=5, cooldown_seconds=300), rng=random.Random(7))


def test_classify_server_error(coordinator: RetryCoordinator) -> None:
  classification = coordinator.classify(_server_error())

  assert classification.category is ErrorKind.SERVER
  assert classification.severity == "high"
  assert classification.retryable
  assert classification.suggested_delay == 30.0


def test_classify_plain_exception_by_message(coordinator: RetryCoordinator) -> None:
  assert coordinator.classify(RuntimeError("connect ECONNREFUSED 10.0.0.1:443")).category is ErrorKind.NETWORK
  assert coordinator.classify(RuntimeError("something odd")).category is ErrorKind.UNKNOWN


def test_rate_limit_honours_retry_after(coordinator: RetryCoordinator) -> None:
  error = UpstreamError("Too Many Requests", kind=ErrorKind.RATE_LIMIT, upstream=Upstream.CONTENT_GENERATION, status_code=429, retry_after=12.0)

  assert coordinator.classify(error).suggested_delay == 12.0


def test_non_retryable_categories() -> None:
  assert NON_RETRYABLE == {ErrorKind.AUTHENTICATION, ErrorKind.AUTHORIZATION, ErrorKind.CONTENT_POLICY, ErrorKind.VALIDATION, ErrorKind.TOKEN_LIMIT}


@pytest.mark.parametrize(("prior", "low", "high"), [(0, 30.0, 33.0), (1, 60.0, 66.0), (2, 120.0, 132.0), (10, 600.0, 660.0)])
def test_backoff_doubles_and_caps_with_bounded_jitter(coordinator: RetryCoordinator, prior: int, low: float, high: float) -> None:
  classification = coordinator.classify(_server_error())
  for _ in range(20):
    delay = coordinator.compute_delay(classification, prior)
    assert low <= delay <= high


def test_should_requeue_rules(coordinator: RetryCoordinator) -> None:
  assert coordinator.should_requeue(ErrorKind.SERVER, False, 1)
  assert not coordinator.should_requeue(ErrorKind.AUTHENTICATION, False, 0)
  assert not coordinator.should_requeue(ErrorKind.SERVER, True, 0)
  assert not coordinator.should_requeue(ErrorKind.SERVER, False, 3)
  assert coordinator.should_requeue(ErrorKind.SERVER, False, 3, max_retries=5)


@pytest.mark.anyio
async def test_record_attempt_increments_by_one_and_gates(store: InMemoryJobStore, clock: FakeClock, coordinator: RetryCoordinator) -> None:
  job = store.add_job("Topic", status="processing", claimed_at=clock.now())

  decision = await coordinator.record_attempt(job.id, _server_error())

  stored = store.jobs[job.id]
  assert stored.retry_count == 1
  assert decision.retry_count == 1
  assert decision.should_requeue
  assert not decision.max_reached
  assert stored.next_retry_at == decision.next_retry_at
  assert clock.now() + timedelta(seconds=30) <= decision.next_retry_at <= clock.now() + timedelta(seconds=33)
  assert stored.last_error == "Upstream server error or service unavailable: HTTP 503 Service Unavailable"


@pytest.mark.anyio
async def test_record_attempt_reports_max_reached(store: InMemoryJobStore, coordinator: RetryCoordinator) -> None:
  job = store.add_job("Topic", status="processing", retry_count=2)

  decision = await coordinator.record_attempt(job.id, _server_error())

  assert decision.retry_count == 3
  assert decision.max_reached
  assert not decision.should_requeue


@pytest.mark.anyio
async def test_authentication_failure_is_never_requeued(store: InMemoryJobStore, coordinator: RetryCoordinator) -> None:
  job = store.add_job("Topic", status="processing")
  error = UpstreamError("Incorrect API key provided", kind=ErrorKind.AUTHENTICATION, upstream=Upstream.CONTENT_GENERATION, status_code=401)

  decision = await coordinator.record_attempt(job.id, error)

  assert not decision.should_requeue
  assert not decision.classification.retryable
  assert decision.classification.severity == "critical"


@pytest.mark.anyio
async def test_open_breaker_pushes_retry_to_reopen_time(store: InMemoryJobStore, clock: FakeClock, coordinator: RetryCoordinator) -> None:
  job = store.add_job("Topic", status="processing")
  for _ in range(4):
    coordinator.note_failure(Upstream.PUBLISHING, coordinator.classify(_server_error()))

  decision = await coordinator.record_attempt(job.id, _server_error())

  breaker = coordinator.breaker(Upstream.PUBLISHING)
  assert breaker.state == "open"
  assert decision.breaker_open
  assert not decision.should_requeue
  assert decision.next_retry_at == breaker.reopens_at == clock.now() + timedelta(seconds=300)


@pytest.mark.anyio
async def test_record_success_resets_count_and_closes_breaker(store: InMemoryJobStore, coordinator: RetryCoordinator) -> None:
  job = store.add_job("Topic", status="processing", retry_count=2, last_error="earlier")
  coordinator.note_failure(Upstream.PUBLISHING, coordinator.classify(_server_error()))

  await coordinator.record_success(job.id, upstream=Upstream.PUBLISHING)

  assert store.jobs[job.id].retry_count == 0
  assert store.jobs[job.id].last_error is None
  assert coordinator.breaker(Upstream.PUBLISHING).consecutive_failures == 0


@pytest.mark.anyio
async def test_record_attempt_for_unknown_job(coordinator: RetryCoordinator) -> None:
  with pytest.raises(JobNotFoundError):
    await coordinator.record_attempt("missing", _server_error())
