import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from autopost.jobs.errors import InvalidTransitionError, JobNotFoundError, LeaseError, MaxRetriesExceededError


def _error_payload(detail: Any, **extra: Any) -> dict[str, Any]:
  payload: dict[str, Any] = {"detail": detail}
  payload.update({key: value for key, value in extra.items() if value is not None})
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx"}}
    sanitized.append({key: value if isinstance(value, str | int | float | bool | None | list | tuple) else str(value) for key, value in scrubbed.items()})
  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  logger.error("Global exception path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error"))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions while hiding 5xx details."""
  from autopost.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("uvicorn.error")
  if exc.status_code >= 500:
    logger.error("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error"))
  if settings.log_http_4xx:
    logger.warning("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail)
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail), headers=exc.headers)


async def lease_exception_handler(request: Request, exc: LeaseError) -> JSONResponse:
  """Map job lifecycle errors onto client-facing statuses."""
  logger = logging.getLogger("uvicorn.error")
  if isinstance(exc, JobNotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_payload(str(exc), job_id=exc.job_id))
  if isinstance(exc, InvalidTransitionError):
    logger.info("Rejected transition path=%s job=%s %s->%s", request.url.path, exc.job_id, exc.current, exc.target)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(str(exc), job_id=exc.job_id, current=exc.current, target=exc.target))
  if isinstance(exc, MaxRetriesExceededError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(str(exc), job_id=exc.job_id, retry_count=exc.retry_count, max_retries=exc.max_retries))
  logger.error("Lease failure path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(str(exc)))
