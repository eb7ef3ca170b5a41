from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, StringConstraints
from starlette.responses import Response

from autopost.api.deps import get_orchestrator, require_task_secret
from autopost.api.msgspec_utils import encode_msgspec_response
from autopost.jobs.models import JobRecord
from autopost.orchestrator import ContentOrchestrator

router = APIRouter(dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)

Orchestrator = Annotated[ContentOrchestrator, Depends(get_orchestrator)]
NonBlankText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=500)]


class EnqueuePayload(BaseModel):
  topic: NonBlankText
  model: str | None = None


class CancelPayload(BaseModel):
  reason: NonBlankText = "Cancelled by operator"


def _job_payload(job: JobRecord) -> dict[str, object]:
  return {
    "id": job.id,
    "topic": job.topic,
    "status": job.status,
    "retry_count": job.retry_count,
    "model": job.model,
    "last_error": job.last_error,
    "publish_id": job.publish_id,
    "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
    "created_at": job.created_at.isoformat(),
    "updated_at": job.updated_at.isoformat(),
  }


@router.post("/run")
async def run_one(orchestrator: Orchestrator) -> Response:
  """Claim and process a single job."""
  result = await orchestrator.run_orchestration()
  return encode_msgspec_response(result)


@router.post("/run-concurrent")
async def run_concurrent(orchestrator: Orchestrator, max_jobs: Annotated[int | None, Query(ge=1, le=50)] = None) -> Response:
  """Process claimable jobs in parallel slots."""
  batch = await orchestrator.run_concurrent(max_jobs=max_jobs)
  return encode_msgspec_response(batch)


@router.post("/sweep")
async def sweep(orchestrator: Orchestrator, threshold_minutes: Annotated[int | None, Query(ge=1)] = None, dry_run: bool = False) -> Response:
  """Return jobs with expired leases to the queue."""
  result = await orchestrator.sweep_stale(threshold_minutes, dry_run=dry_run)
  return encode_msgspec_response({"job_ids": result.job_ids, "reset": result.reset, "dry_run": result.dry_run})


@router.post("/cleanup")
async def cleanup(
  orchestrator: Orchestrator, run_retention_days: Annotated[int | None, Query(ge=1)] = None, job_retention_days: Annotated[int | None, Query(ge=1)] = None
) -> Response:
  """Delete aged-out run history, terminal jobs and expired idempotency keys."""
  result = await orchestrator.purge_old_records(run_retention_days=run_retention_days, job_retention_days=job_retention_days)
  logger.info("Cleanup removed runs=%d jobs=%d keys=%d", result.runs_deleted, result.jobs_deleted, result.keys_deleted)
  return encode_msgspec_response({"runs_deleted": result.runs_deleted, "jobs_deleted": result.jobs_deleted, "keys_deleted": result.keys_deleted})


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
async def enqueue(payload: EnqueuePayload, orchestrator: Orchestrator) -> Response:
  job = await orchestrator.enqueue(payload.topic, model=payload.model)
  return encode_msgspec_response(_job_payload(job), status_code=status.HTTP_201_CREATED)


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, orchestrator: Orchestrator) -> Response:
  """Move a failed job back to pending."""
  job = await orchestrator.retry_failed_job(job_id)
  return encode_msgspec_response(_job_payload(job))


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, orchestrator: Orchestrator, payload: CancelPayload | None = None) -> Response:
  reason = payload.reason if payload is not None else CancelPayload().reason
  job = await orchestrator.cancel_job(job_id, reason)
  return encode_msgspec_response(_job_payload(job))


@router.get("/stats")
async def stats(orchestrator: Orchestrator) -> Response:
  return encode_msgspec_response(await orchestrator.job_statistics())


@router.get("/health")
async def health(orchestrator: Orchestrator) -> Response:
  """Breaker states and degradation health for this process."""
  return encode_msgspec_response(orchestrator.health())
