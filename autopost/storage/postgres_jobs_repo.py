"""Postgres-backed job store using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Delete, Select, Update, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopost.core.database import get_session_factory
from autopost.jobs.models import TERMINAL_STATUSES, IdempotencyKeyRecord, JobRecord, JobRunRecord, JobStatus, RunStatus
from autopost.schema.jobs import ContentJob, IdempotencyKey, JobRun
from autopost.storage.jobs_repo import JobStore
from autopost.utils.db_retry import execute_with_retry

_JOB_FIELDS = frozenset({"claimed_at", "next_retry_at", "last_error", "generated_title", "generated_content", "publish_id", "completed_at", "retry_count"})


def claim_statement(*, max_retries: int, now: datetime) -> Select[tuple[ContentJob]]:
  """Locking read for the oldest eligible pending job; concurrent claimers skip locked rows."""
  return (
    select(ContentJob)
    .where(ContentJob.status == "pending", ContentJob.retry_count < max_retries, or_(ContentJob.next_retry_at.is_(None), ContentJob.next_retry_at <= now))
    .order_by(ContentJob.created_at.asc(), ContentJob.id.asc())
    .limit(1)
    .with_for_update(skip_locked=True)
  )


def transition_statement(
  job_id: str, *, from_statuses: tuple[JobStatus, ...], to_status: JobStatus, now: datetime, expected_claimed_at: datetime | None = None, changes: Mapping[str, Any] | None = None
) -> Update:
  """Compare-and-set update guarded by current status and, optionally, the lease timestamp."""
  values: dict[str, Any] = {"status": to_status, "updated_at": now}
  for key, value in (changes or {}).items():
    if key not in _JOB_FIELDS:
      raise ValueError(f"Unsupported job field: {key}")
    values[key] = value

  stmt = update(ContentJob).where(ContentJob.id == job_id, ContentJob.status.in_(from_statuses))
  if expected_claimed_at is not None:
    stmt = stmt.where(ContentJob.claimed_at == expected_claimed_at)
  return stmt.values(**values).returning(ContentJob).execution_options(synchronize_session=False)


def close_runs_statement(job_id: str, *, status: RunStatus, finished_at: datetime, error_details: Mapping[str, Any] | None = None) -> Update:
  """Close every run of the job that is still marked started."""
  values = {"status": status, "finished_at": finished_at, "error_details": dict(error_details) if error_details else None}
  return update(JobRun).where(JobRun.job_id == job_id, JobRun.status == "started").values(**values).execution_options(synchronize_session=False)


class PostgresJobStore(JobStore):
  """Persist jobs, runs and idempotency keys to Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    factory = session_factory or get_session_factory()
    if factory is None:
      raise RuntimeError("Database not initialized")
    self._session_factory = factory

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        ContentJob(
          id=record.id,
          topic=record.topic,
          status=record.status,
          retry_count=record.retry_count,
          model=record.model,
          claimed_at=record.claimed_at,
          next_retry_at=record.next_retry_at,
          last_error=record.last_error,
          generated_title=record.generated_title,
          generated_content=record.generated_content,
          publish_id=record.publish_id,
          created_at=record.created_at,
          updated_at=record.updated_at,
          completed_at=record.completed_at,
        )
      )
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async def _get() -> JobRecord | None:
      async with self._session_factory() as session:
        row = await session.get(ContentJob, job_id)
        return None if row is None else self._job_to_record(row)

    return await execute_with_retry(operation_name="get_job", func=_get)

  async def claim_next(self, *, max_retries: int, now: datetime) -> JobRecord | None:
    async def _claim() -> JobRecord | None:
      async with self._session_factory() as session, session.begin():
        row = (await session.execute(claim_statement(max_retries=max_retries, now=now))).scalar_one_or_none()
        if row is None:
          return None
        row.status = "processing"
        row.claimed_at = now
        row.updated_at = now
        # The commit on leaving the block releases the row lock with the new status visible.
        return self._job_to_record(row)

    return await execute_with_retry(operation_name="claim_next", func=_claim)

  async def transition(
    self, job_id: str, *, from_statuses: tuple[JobStatus, ...], to_status: JobStatus, now: datetime, expected_claimed_at: datetime | None = None, changes: Mapping[str, Any] | None = None
  ) -> JobRecord | None:
    stmt = transition_statement(job_id, from_statuses=from_statuses, to_status=to_status, now=now, expected_claimed_at=expected_claimed_at, changes=changes)
    return await execute_with_retry(operation_name="transition", func=lambda: self._update_job(stmt))

  async def save_draft(self, job_id: str, *, title: str, content: str, now: datetime, expected_claimed_at: datetime | None = None) -> JobRecord | None:
    stmt = update(ContentJob).where(ContentJob.id == job_id, ContentJob.status == "processing")
    if expected_claimed_at is not None:
      stmt = stmt.where(ContentJob.claimed_at == expected_claimed_at)
    stmt = stmt.values(generated_title=title, generated_content=content, updated_at=now).returning(ContentJob).execution_options(synchronize_session=False)
    return await execute_with_retry(operation_name="save_draft", func=lambda: self._update_job(stmt))

  async def record_failure(self, job_id: str, *, error: str, next_retry_at: datetime, now: datetime) -> JobRecord | None:
    # Not retried: a replay after a lost commit would count the failure twice.
    stmt = (
      update(ContentJob)
      .where(ContentJob.id == job_id)
      .values(retry_count=ContentJob.retry_count + 1, last_error=error, next_retry_at=next_retry_at, updated_at=now)
      .returning(ContentJob)
      .execution_options(synchronize_session=False)
    )
    return await self._update_job(stmt)

  async def reset_retries(self, job_id: str, *, now: datetime) -> JobRecord | None:
    stmt = update(ContentJob).where(ContentJob.id == job_id).values(retry_count=0, last_error=None, updated_at=now).returning(ContentJob).execution_options(synchronize_session=False)
    return await execute_with_retry(operation_name="reset_retries", func=lambda: self._update_job(stmt))

  async def find_stale(self, *, claimed_before: datetime, limit: int) -> list[JobRecord]:
    stmt = select(ContentJob).where(ContentJob.status == "processing", ContentJob.claimed_at < claimed_before).order_by(ContentJob.claimed_at.asc()).limit(limit)
    return await execute_with_retry(operation_name="find_stale", func=lambda: self._select_jobs(stmt))

  async def reset_stale_lease(self, job_id: str, *, expected_claimed_at: datetime | None, now: datetime, error_details: Mapping[str, Any] | None = None) -> JobRecord | None:
    job_stmt = transition_statement(job_id, from_statuses=("processing",), to_status="pending", now=now, expected_claimed_at=expected_claimed_at, changes={"claimed_at": None})
    runs_stmt = close_runs_statement(job_id, status="abandoned", finished_at=now, error_details=error_details)

    async def _reset() -> JobRecord | None:
      # The job row stays locked until commit, so a claimer cannot open a run before the old one is closed.
      async with self._session_factory() as session, session.begin():
        row = (await session.execute(job_stmt)).scalar_one_or_none()
        if row is None:
          return None
        await session.execute(runs_stmt)
        return self._job_to_record(row)

    return await execute_with_retry(operation_name="reset_stale_lease", func=_reset)

  async def count_claimable(self, *, max_retries: int, now: datetime) -> int:
    stmt = select(func.count()).select_from(ContentJob).where(ContentJob.status == "pending", ContentJob.retry_count < max_retries, or_(ContentJob.next_retry_at.is_(None), ContentJob.next_retry_at <= now))

    async def _count() -> int:
      async with self._session_factory() as session:
        return int((await session.execute(stmt)).scalar_one())

    return await execute_with_retry(operation_name="count_claimable", func=_count)

  async def count_by_status(self) -> dict[str, int]:
    stmt = select(ContentJob.status, func.count()).group_by(ContentJob.status)

    async def _count() -> dict[str, int]:
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).all()
        return {str(status): int(count) for status, count in rows}

    return await execute_with_retry(operation_name="count_by_status", func=_count)

  async def list_completed_since(self, since: datetime, *, exclude_job_id: str | None = None, limit: int = 200) -> list[JobRecord]:
    stmt = select(ContentJob).where(ContentJob.status == "completed", ContentJob.completed_at >= since)
    if exclude_job_id is not None:
      stmt = stmt.where(ContentJob.id != exclude_job_id)
    stmt = stmt.order_by(ContentJob.completed_at.desc()).limit(limit)
    return await execute_with_retry(operation_name="list_completed_since", func=lambda: self._select_jobs(stmt))

  async def find_by_publish_id(self, publish_id: str, *, exclude_job_id: str | None = None) -> JobRecord | None:
    stmt = select(ContentJob).where(ContentJob.publish_id == publish_id)
    if exclude_job_id is not None:
      stmt = stmt.where(ContentJob.id != exclude_job_id)

    async def _find() -> JobRecord | None:
      async with self._session_factory() as session:
        row = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return None if row is None else self._job_to_record(row)

    return await execute_with_retry(operation_name="find_by_publish_id", func=_find)

  async def create_run(self, run: JobRunRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        JobRun(
          id=run.id,
          job_id=run.job_id,
          status=run.status,
          retry_attempt=run.retry_attempt,
          started_at=run.started_at,
          finished_at=run.finished_at,
          stage_timings=dict(run.stage_timings),
          total_duration_ms=run.total_duration_ms,
          error_details=run.error_details,
        )
      )
      await session.commit()

  async def update_run(
    self,
    run_id: str,
    *,
    status: RunStatus,
    finished_at: datetime | None = None,
    stage_timings: Mapping[str, float] | None = None,
    total_duration_ms: float | None = None,
    error_details: Mapping[str, Any] | None = None,
  ) -> JobRunRecord | None:
    async def _update() -> JobRunRecord | None:
      async with self._session_factory() as session:
        row = await session.get(JobRun, run_id)
        if row is None:
          return None
        row.status = status
        if finished_at is not None:
          row.finished_at = finished_at
        if stage_timings is not None:
          row.stage_timings = dict(stage_timings)
        if total_duration_ms is not None:
          row.total_duration_ms = total_duration_ms
        if error_details is not None:
          row.error_details = dict(error_details)
        await session.commit()
        return self._run_to_record(row)

    return await execute_with_retry(operation_name="update_run", func=_update)

  async def list_runs(self, job_id: str) -> list[JobRunRecord]:
    stmt = select(JobRun).where(JobRun.job_id == job_id).order_by(JobRun.started_at.asc())

    async def _list() -> list[JobRunRecord]:
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).scalars().all()
        return [self._run_to_record(row) for row in rows]

    return await execute_with_retry(operation_name="list_runs", func=_list)

  async def put_idempotency_key(self, record: IdempotencyKeyRecord) -> None:
    async def _put() -> None:
      async with self._session_factory() as session, session.begin():
        row = (await session.execute(select(IdempotencyKey).where(IdempotencyKey.key == record.key))).scalar_one_or_none()
        if row is None:
          row = IdempotencyKey(key=record.key, job_id=record.job_id)
          session.add(row)
        row.topic_hash = record.topic_hash
        row.content_hash = record.content_hash
        row.publish_id = record.publish_id
        row.created_at = record.created_at
        row.expires_at = record.expires_at

    await execute_with_retry(operation_name="put_idempotency_key", func=_put)

  async def get_idempotency_key(self, key: str) -> IdempotencyKeyRecord | None:
    async def _get() -> IdempotencyKeyRecord | None:
      async with self._session_factory() as session:
        row = (await session.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))).scalar_one_or_none()
        if row is None:
          return None
        return IdempotencyKeyRecord(
          key=row.key, job_id=row.job_id, topic_hash=row.topic_hash, content_hash=row.content_hash, publish_id=row.publish_id, created_at=row.created_at, expires_at=row.expires_at
        )

    return await execute_with_retry(operation_name="get_idempotency_key", func=_get)

  async def delete_expired_keys(self, *, now: datetime) -> int:
    return await execute_with_retry(operation_name="delete_expired_keys", func=lambda: self._delete(delete(IdempotencyKey).where(IdempotencyKey.expires_at <= now)))

  async def delete_finished_runs_before(self, cutoff: datetime, *, limit: int) -> int:
    oldest = select(JobRun.id).where(JobRun.status != "started", JobRun.started_at < cutoff).order_by(JobRun.started_at.asc()).limit(limit)
    return await execute_with_retry(operation_name="delete_finished_runs_before", func=lambda: self._delete(delete(JobRun).where(JobRun.id.in_(oldest))))

  async def delete_terminal_jobs_before(self, cutoff: datetime, *, limit: int) -> int:
    oldest = select(ContentJob.id).where(ContentJob.status.in_(TERMINAL_STATUSES), ContentJob.updated_at < cutoff).order_by(ContentJob.updated_at.asc()).limit(limit)
    # Runs and idempotency keys go with their job through ON DELETE CASCADE.
    return await execute_with_retry(operation_name="delete_terminal_jobs_before", func=lambda: self._delete(delete(ContentJob).where(ContentJob.id.in_(oldest))))

  async def _update_job(self, stmt: Update) -> JobRecord | None:
    async with self._session_factory() as session, session.begin():
      row = (await session.execute(stmt)).scalar_one_or_none()
      return None if row is None else self._job_to_record(row)

  async def _select_jobs(self, stmt: Select[tuple[ContentJob]]) -> list[JobRecord]:
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).scalars().all()
      return [self._job_to_record(row) for row in rows]

  async def _delete(self, stmt: Delete) -> int:
    async with self._session_factory() as session, session.begin():
      result = await session.execute(stmt.execution_options(synchronize_session=False))
      return int(result.rowcount or 0)

  def _job_to_record(self, row: ContentJob) -> JobRecord:
    return JobRecord(
      id=row.id,
      topic=row.topic,
      status=row.status,  # type: ignore[arg-type]
      retry_count=row.retry_count,
      model=row.model,
      claimed_at=row.claimed_at,
      next_retry_at=row.next_retry_at,
      last_error=row.last_error,
      generated_title=row.generated_title,
      generated_content=row.generated_content,
      publish_id=row.publish_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
      completed_at=row.completed_at,
    )

  def _run_to_record(self, row: JobRun) -> JobRunRecord:
    return JobRunRecord(
      id=row.id,
      job_id=row.job_id,
      status=row.status,  # type: ignore[arg-type]
      retry_attempt=row.retry_attempt,
      started_at=row.started_at,
      finished_at=row.finished_at,
      stage_timings=dict(row.stage_timings or {}),
      total_duration_ms=row.total_duration_ms,
      error_details=row.error_details,
    )
