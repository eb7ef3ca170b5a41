from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy.dialects import postgresql

from autopost.storage.postgres_jobs_repo import claim_statement, close_runs_statement, transition_statement

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _sql(statement: object) -> str:
  return str(statement.compile(dialect=postgresql.dialect()))  # type: ignore[attr-defined]


def test_claim_uses_skip_locked_row_lock() -> None:
  sql = _sql(claim_statement(max_retries=3, now=NOW))

  assert "FOR UPDATE SKIP LOCKED" in sql
  assert "content_jobs.status = " in sql
  assert "content_jobs.retry_count < " in sql
  assert "content_jobs.next_retry_at IS NULL OR content_jobs.next_retry_at <= " in sql
  assert "ORDER BY content_jobs.created_at ASC, content_jobs.id ASC" in sql
  assert "LIMIT" in sql


def test_transition_guards_status_and_lease() -> None:
  sql = _sql(transition_statement("job-1", from_statuses=("processing",), to_status="completed", now=NOW, expected_claimed_at=NOW, changes={"publish_id": "9"}))

  assert sql.startswith("UPDATE content_jobs SET")
  assert "content_jobs.status IN" in sql
  assert "content_jobs.claimed_at = " in sql
  assert "RETURNING" in sql


def test_transition_without_lease_guard() -> None:
  sql = _sql(transition_statement("job-1", from_statuses=("pending",), to_status="cancelled", now=NOW))

  assert "claimed_at =" not in sql.split("WHERE", 1)[1]


def test_transition_rejects_unknown_fields() -> None:
  with pytest.raises(ValueError):
    transition_statement("job-1", from_statuses=("pending",), to_status="cancelled", now=NOW, changes={"topic": "rewrite"})


def test_close_runs_only_touches_started_runs() -> None:
  sql = _sql(close_runs_statement("job-1", status="abandoned", finished_at=NOW, error_details={"reason": "stale_lease"}))

  assert sql.startswith("UPDATE job_runs SET")
  assert "job_runs.job_id = " in sql
  assert "job_runs.status = " in sql
