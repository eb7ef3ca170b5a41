"""Boundary adapters that turn raw upstream failures into tagged error kinds."""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx
import openai

from autopost.providers.interface import GenerationResult, PublishResult


class ErrorKind(str, Enum):
  AUTHENTICATION = "authentication"
  AUTHORIZATION = "authorization"
  RATE_LIMIT = "rate_limit"
  MODEL_UNAVAILABLE = "model_unavailable"
  CONTENT_POLICY = "content_policy"
  VALIDATION = "validation"
  NETWORK = "network"
  SERVER = "server"
  TOKEN_LIMIT = "token_limit"
  UNKNOWN = "unknown"


class Upstream(str, Enum):
  CONTENT_GENERATION = "content_generation"
  PUBLISHING = "publishing"


class UpstreamError(Exception):
  """A classified failure from the generator or the publisher."""

  def __init__(self, message: str, *, kind: ErrorKind, upstream: Upstream, status_code: int | None = None, retry_after: float | None = None, code: str | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.kind = kind
    self.upstream = upstream
    self.status_code = status_code
    self.retry_after = retry_after
    self.code = code

  def __repr__(self) -> str:
    return f"UpstreamError(kind={self.kind.value!r}, upstream={self.upstream.value!r}, status_code={self.status_code!r}, message={self.message!r})"


_CODE_KINDS: dict[str, ErrorKind] = {
  "invalid_api_key": ErrorKind.AUTHENTICATION,
  "invalid_username": ErrorKind.AUTHENTICATION,
  "incorrect_password": ErrorKind.AUTHENTICATION,
  "rest_not_logged_in": ErrorKind.AUTHENTICATION,
  "rest_cannot_create": ErrorKind.AUTHORIZATION,
  "rest_forbidden": ErrorKind.AUTHORIZATION,
  "rate_limit_exceeded": ErrorKind.RATE_LIMIT,
  "insufficient_quota": ErrorKind.RATE_LIMIT,
  "model_not_found": ErrorKind.MODEL_UNAVAILABLE,
  "content_policy_violation": ErrorKind.CONTENT_POLICY,
  "content_filter": ErrorKind.CONTENT_POLICY,
  "context_length_exceeded": ErrorKind.TOKEN_LIMIT,
  "rest_invalid_param": ErrorKind.VALIDATION,
  "econnrefused": ErrorKind.NETWORK,
  "etimedout": ErrorKind.NETWORK,
  "econnreset": ErrorKind.NETWORK,
  "enotfound": ErrorKind.NETWORK,
}

_KIND_VALUES = frozenset(kind.value for kind in ErrorKind)

# Cloudflare reports origin trouble as 521-524.
_SERVER_STATUSES = frozenset({500, 502, 503, 504, 521, 522, 523, 524})

_MESSAGE_PATTERNS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
  (ErrorKind.AUTHENTICATION, ("invalid api key", "incorrect api key", "unauthorized", "authentication")),
  (ErrorKind.AUTHORIZATION, ("permission", "forbidden", "not allowed")),
  (ErrorKind.RATE_LIMIT, ("rate limit", "quota", "too many requests")),
  (ErrorKind.TOKEN_LIMIT, ("context length", "maximum tokens", "token limit", "too many tokens")),
  (ErrorKind.CONTENT_POLICY, ("content policy", "safety", "moderation")),
  (ErrorKind.MODEL_UNAVAILABLE, ("model not found", "model overloaded", "model unavailable", "does not exist")),
  (ErrorKind.NETWORK, ("econnrefused", "etimedout", "econnreset", "enotfound", "timed out", "timeout", "connection")),
  (ErrorKind.SERVER, ("internal server error", "service unavailable", "bad gateway", "gateway timeout", "unavailable")),
)


def kind_from_message(message: str) -> ErrorKind | None:
  lowered = message.lower()
  for kind, patterns in _MESSAGE_PATTERNS:
    if any(pattern in lowered for pattern in patterns):
      return kind
  return None


def classify_failure(*, message: str, status_code: int | None = None, code: str | None = None) -> ErrorKind:
  """
  Pick an error kind from the most explicit signal available.

  Error codes win over HTTP statuses, which win over message patterns. Generic
  client statuses (400, 404, 422) defer to the message first because providers
  report token and policy problems through them.
  """
  if code:
    normalized = code.lower()
    if normalized in _CODE_KINDS:
      return _CODE_KINDS[normalized]
    # Adapters may pass an already-classified kind through as the code.
    if normalized in _KIND_VALUES:
      return ErrorKind(normalized)

  if status_code == 401:
    return ErrorKind.AUTHENTICATION
  if status_code == 403:
    return ErrorKind.AUTHORIZATION
  if status_code == 429:
    return ErrorKind.RATE_LIMIT
  if status_code is not None and (status_code in _SERVER_STATUSES or status_code >= 500):
    return ErrorKind.SERVER

  by_message = kind_from_message(message)
  if by_message is not None:
    return by_message

  if status_code in (400, 422):
    return ErrorKind.VALIDATION
  return ErrorKind.UNKNOWN


def _retry_after(headers: httpx.Headers | None) -> float | None:
  if headers is None:
    return None
  raw = headers.get("retry-after")
  if raw is None:
    return None
  try:
    return max(float(raw), 0.0)
  except ValueError:
    return None


def _error_code(body: Any) -> str | None:
  if isinstance(body, dict):
    code = body.get("code")
    if code is None and isinstance(body.get("error"), dict):
      code = body["error"].get("code")
    return str(code) if code else None
  return None


def _from_httpx(exc: Exception, upstream: Upstream) -> UpstreamError | None:
  if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
    return UpstreamError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.NETWORK, upstream=upstream)
  if isinstance(exc, httpx.HTTPStatusError):
    response = exc.response
    try:
      body = response.json()
    except ValueError:
      body = None
    code = _error_code(body)
    message = (body.get("message") if isinstance(body, dict) else None) or f"HTTP {response.status_code} {response.reason_phrase}"
    kind = classify_failure(message=str(message), status_code=response.status_code, code=code)
    return UpstreamError(str(message), kind=kind, upstream=upstream, status_code=response.status_code, retry_after=_retry_after(response.headers), code=code)
  return None


def generation_error_from_exception(exc: Exception) -> UpstreamError:
  """Adapt an exception raised while generating content."""
  upstream = Upstream.CONTENT_GENERATION
  if isinstance(exc, UpstreamError):
    return exc
  if isinstance(exc, openai.APIConnectionError):
    # Includes APITimeoutError.
    return UpstreamError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.NETWORK, upstream=upstream)
  if isinstance(exc, openai.APIStatusError):
    code = exc.code or _error_code(exc.body)
    kind = classify_failure(message=exc.message, status_code=exc.status_code, code=code)
    return UpstreamError(exc.message, kind=kind, upstream=upstream, status_code=exc.status_code, retry_after=_retry_after(exc.response.headers), code=code)
  adapted = _from_httpx(exc, upstream)
  if adapted is not None:
    return adapted
  if isinstance(exc, TimeoutError | ConnectionError):
    return UpstreamError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.NETWORK, upstream=upstream)
  message = str(exc) or type(exc).__name__
  return UpstreamError(message, kind=classify_failure(message=message), upstream=upstream)


def generation_error_from_result(result: GenerationResult) -> UpstreamError:
  """Adapt an unsuccessful generator result."""
  message = result.error or "Content generation failed"
  kind = classify_failure(message=message, status_code=result.status_code, code=result.error_code)
  return UpstreamError(message, kind=kind, upstream=Upstream.CONTENT_GENERATION, status_code=result.status_code, retry_after=result.retry_after, code=result.error_code)


def publish_error_from_exception(exc: Exception) -> UpstreamError:
  """Adapt an exception raised while publishing."""
  upstream = Upstream.PUBLISHING
  if isinstance(exc, UpstreamError):
    return exc
  adapted = _from_httpx(exc, upstream)
  if adapted is not None:
    return adapted
  if isinstance(exc, TimeoutError | ConnectionError):
    return UpstreamError(f"{type(exc).__name__}: {exc}", kind=ErrorKind.NETWORK, upstream=upstream)
  message = str(exc) or type(exc).__name__
  return UpstreamError(message, kind=classify_failure(message=message), upstream=upstream)


def publish_error_from_result(result: PublishResult) -> UpstreamError:
  """Adapt an unsuccessful publisher result."""
  message = result.error or "Publishing failed"
  kind = classify_failure(message=message, status_code=result.status_code, code=result.error_code)
  return UpstreamError(message, kind=kind, upstream=Upstream.PUBLISHING, status_code=result.status_code, retry_after=result.retry_after, code=result.error_code)
