"""Shared FastAPI dependencies for task auth and orchestrator access."""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from autopost.config import Settings, get_settings
from autopost.orchestrator import ContentOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _cached_orchestrator() -> ContentOrchestrator:
  # Breaker and health state live on the instance, so one per process.
  return build_orchestrator(get_settings())


def get_orchestrator() -> ContentOrchestrator:
  """Dependency returning the process-wide orchestrator."""
  return _cached_orchestrator()


def require_task_secret(
  settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_autopost_task_secret: str | None = Header(default=None)
) -> None:
  """Reject calls that present neither the task secret header nor a matching bearer token."""
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  shared_secret_valid = secrets.compare_digest((x_autopost_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), f"Bearer {settings.task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized orchestration request")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
