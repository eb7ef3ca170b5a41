"""Retry wrapper for store operations that hit transient Postgres failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTION_MARKERS = ("connection", "timeout", "reset", "broken pipe", "closed", "terminat")


@dataclass(frozen=True)
class DBFailureClassification:
  """Whether a database failure is worth another attempt."""

  retryable: bool
  category: str
  sqlstate: str | None


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  orig = getattr(exc, "orig", None) if isinstance(exc, DBAPIError) else None
  for attr in ("sqlstate", "pgcode"):
    value = getattr(orig, attr, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """
  Classify a database failure.

  Serialization failures, deadlocks and dropped connections are transient.
  Integrity, schema and permission errors are permanent, as is anything unknown.
  """
  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _RETRYABLE_SQLSTATES:
    return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)

  if isinstance(exc, IntegrityError) or (sqlstate or "").startswith("23"):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)

  if (sqlstate or "").startswith(("42", "28")):
    return DBFailureClassification(retryable=False, category="schema_or_permission_error", sqlstate=sqlstate)

  if isinstance(exc, OperationalError | InterfaceError | ConnectionError | OSError):
    message = str(exc).lower()
    if isinstance(exc, ConnectionError) or any(marker in message for marker in _CONNECTION_MARKERS):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category="unknown_error", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000) -> T:
  """
  Run an idempotent database operation, retrying transient failures.

  Backoff doubles per attempt up to max_backoff_ms with +/-25% jitter.
  Non-retryable errors and the final failed attempt re-raise the original exception.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      return await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      if not classification.retryable or attempt >= max_attempts:
        logger.error(
          "DB operation failed: operation=%s attempt=%d/%d category=%s sqlstate=%s",
          operation_name,
          attempt,
          max_attempts,
          classification.category,
          classification.sqlstate or "none",
          exc_info=not classification.retryable,
        )
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      logger.warning("Retrying DB operation: operation=%s attempt=%d/%d category=%s backoff_ms=%.1f", operation_name, attempt, max_attempts, classification.category, backoff_ms)
      await asyncio.sleep(backoff_ms / 1000.0)
