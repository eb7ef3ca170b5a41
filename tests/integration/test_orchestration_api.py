from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import replace

import httpx
import pytest
from conftest import FakeClock, InMemoryJobStore, ScriptedGenerator, ScriptedPublisher

from autopost.api.deps import get_orchestrator
from autopost.config import get_settings
from autopost.main import app
from autopost.orchestrator import ContentOrchestrator

SECRET = "s3cret"
AUTH = {"X-Autopost-Task-Secret": SECRET}
BASE = "/v1/orchestration"


@pytest.fixture
def orchestrator(store: InMemoryJobStore, generator: ScriptedGenerator, publisher: ScriptedPublisher, clock: FakeClock) -> ContentOrchestrator:
  return ContentOrchestrator(store, generator, publisher, clock=clock)


@pytest.fixture
async def client(orchestrator: ContentOrchestrator) -> AsyncIterator[httpx.AsyncClient]:
  settings = replace(get_settings(), task_secret=SECRET)
  app.dependency_overrides[get_orchestrator] = lambda: orchestrator
  app.dependency_overrides[get_settings] = lambda: settings
  try:
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as http_client:
      yield http_client
  finally:
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_root_health_needs_no_secret(client: httpx.AsyncClient) -> None:
  response = await client.get("/health")

  assert response.status_code == 200
  assert response.json() == {"status": "ok", "version": "0.1.0"}


@pytest.mark.anyio
async def test_missing_or_wrong_secret_is_forbidden(client: httpx.AsyncClient) -> None:
  assert (await client.post(f"{BASE}/run")).status_code == 403
  response = await client.post(f"{BASE}/run", headers={"X-Autopost-Task-Secret": "nope"})

  assert response.status_code == 403
  assert response.json() == {"detail": "Invalid task secret."}


@pytest.mark.anyio
async def test_unconfigured_secret_rejects_everything(client: httpx.AsyncClient) -> None:
  app.dependency_overrides[get_settings] = lambda: replace(get_settings(), task_secret=None)

  response = await client.get(f"{BASE}/stats", headers=AUTH)

  assert response.status_code == 403
  assert response.json()["detail"] == "Task authentication is not configured."


@pytest.mark.anyio
async def test_enqueue_then_run_publishes(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  created = await client.post(f"{BASE}/jobs", json={"topic": "Intro to SEO"}, headers={"Authorization": f"Bearer {SECRET}"})

  assert created.status_code == 201
  job = created.json()
  assert job["status"] == "pending"
  assert job["retry_count"] == 0

  ran = await client.post(f"{BASE}/run", headers=AUTH)

  assert ran.status_code == 200
  body = ran.json()
  assert body["success"] is True
  assert body["outcome"] == "completed"
  assert body["job_id"] == job["id"]
  assert store.jobs[job["id"]].status == "completed"


@pytest.mark.anyio
async def test_enqueue_rejects_blank_topic(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  for topic in ("", "   ", "\t\n"):
    response = await client.post(f"{BASE}/jobs", json={"topic": topic}, headers=AUTH)

    assert response.status_code == 422
    assert "input" not in response.json()["detail"][0]
  assert store.jobs == {}


@pytest.mark.anyio
async def test_enqueue_strips_topic_and_blank_cancel_reason_is_rejected(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  created = await client.post(f"{BASE}/jobs", json={"topic": "  Intro to SEO  "}, headers=AUTH)
  job_id = created.json()["id"]

  refused = await client.post(f"{BASE}/jobs/{job_id}/cancel", json={"reason": "   "}, headers=AUTH)

  assert created.status_code == 201
  assert created.json()["topic"] == "Intro to SEO"
  assert refused.status_code == 422
  assert store.jobs[job_id].status == "pending"


@pytest.mark.anyio
async def test_run_concurrent_reports_batch(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  for topic in ("Rust for Python developers", "Designing idempotent APIs", "Database connection pooling"):
    store.add_job(topic)

  response = await client.post(f"{BASE}/run-concurrent", params={"max_jobs": 2}, headers=AUTH)

  assert response.status_code == 200
  batch = response.json()
  assert batch["successful"] == 3
  assert batch["rounds"] == 2


@pytest.mark.anyio
async def test_stats_counts_every_status(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  store.add_job("Alpha topic")
  store.add_job("Beta topic", status="failed")

  response = await client.get(f"{BASE}/stats", headers=AUTH)

  assert response.json() == {"pending": 1, "processing": 0, "completed": 0, "failed": 1, "cancelled": 0, "total": 2}


@pytest.mark.anyio
async def test_retry_of_exhausted_job_conflicts(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  job = store.add_job("Exhausted topic", status="failed", retry_count=3)

  response = await client.post(f"{BASE}/jobs/{job.id}/retry", headers=AUTH)

  assert response.status_code == 409
  assert response.json()["max_retries"] == 3


@pytest.mark.anyio
async def test_retry_returns_failed_job_to_queue(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  job = store.add_job("Retriable topic", status="failed", retry_count=1, last_error="boom")

  response = await client.post(f"{BASE}/jobs/{job.id}/retry", headers=AUTH)

  assert response.status_code == 200
  assert response.json()["status"] == "pending"
  assert response.json()["last_error"] is None


@pytest.mark.anyio
async def test_unknown_job_is_not_found(client: httpx.AsyncClient) -> None:
  response = await client.post(f"{BASE}/jobs/missing/cancel", headers=AUTH)

  assert response.status_code == 404
  assert response.json()["job_id"] == "missing"


@pytest.mark.anyio
async def test_cancel_records_reason_and_refuses_completed(client: httpx.AsyncClient, store: InMemoryJobStore) -> None:
  pending = store.add_job("Cancel me")
  done = store.add_job("Already done", status="completed")

  cancelled = await client.post(f"{BASE}/jobs/{pending.id}/cancel", json={"reason": "Topic withdrawn"}, headers=AUTH)
  refused = await client.post(f"{BASE}/jobs/{done.id}/cancel", headers=AUTH)

  assert cancelled.status_code == 200
  assert cancelled.json()["status"] == "cancelled"
  assert cancelled.json()["last_error"] == "Topic withdrawn"
  assert refused.status_code == 409
  assert refused.json()["current"] == "completed"


@pytest.mark.anyio
async def test_sweep_dry_run_lists_stale_jobs(client: httpx.AsyncClient, store: InMemoryJobStore, clock: FakeClock) -> None:
  stale = store.add_job("Stuck topic", status="processing", claimed_at=clock.now())
  clock.advance(15 * 60)

  response = await client.post(f"{BASE}/sweep", params={"dry_run": "true"}, headers=AUTH)

  assert response.json() == {"job_ids": [stale.id], "reset": 0, "dry_run": True}
  assert store.jobs[stale.id].status == "processing"


@pytest.mark.anyio
async def test_orchestration_health_reports_breakers(client: httpx.AsyncClient) -> None:
  response = await client.get(f"{BASE}/health", headers=AUTH)

  body = response.json()
  assert body["status"] == "ok"
  assert set(body["breakers"]) == {"content_generation", "publishing"}
  assert body["breakers"]["publishing"]["state"] == "closed"
  assert body["active_tasks"] == 0


@pytest.mark.anyio
async def test_cleanup_reports_deleted_records(client: httpx.AsyncClient, store: InMemoryJobStore, clock: FakeClock) -> None:
  old = store.add_job("Archived topic", status="cancelled")
  store.add_job("Queued topic")
  clock.advance(3 * 24 * 3600)

  response = await client.post(f"{BASE}/cleanup", params={"job_retention_days": 2}, headers=AUTH)

  assert response.status_code == 200
  assert response.json() == {"runs_deleted": 0, "jobs_deleted": 1, "keys_deleted": 0}
  assert old.id not in store.jobs
  assert len(store.jobs) == 1
  assert (await client.post(f"{BASE}/cleanup", params={"run_retention_days": 0}, headers=AUTH)).status_code == 422
