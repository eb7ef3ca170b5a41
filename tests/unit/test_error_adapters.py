from __future__ import annotations

import httpx
import openai
import pytest

from autopost.providers.errors import (
  ErrorKind,
  Upstream,
  classify_failure,
  generation_error_from_exception,
  generation_error_from_result,
  publish_error_from_exception,
  publish_error_from_result,
)
from autopost.providers.interface import GenerationResult, PublishResult

OPENAI_URL = "https://api.openai.test/v1/chat/completions"


def _openai_request() -> httpx.Request:
  return httpx.Request("POST", OPENAI_URL)


@pytest.mark.parametrize(
  ("kwargs", "expected"),
  [
    ({"message": "whatever", "code": "invalid_api_key"}, ErrorKind.AUTHENTICATION),
    ({"message": "whatever", "code": "rest_cannot_create", "status_code": 403}, ErrorKind.AUTHORIZATION),
    ({"message": "whatever", "status_code": 401}, ErrorKind.AUTHENTICATION),
    ({"message": "whatever", "status_code": 429}, ErrorKind.RATE_LIMIT),
    ({"message": "whatever", "status_code": 502}, ErrorKind.SERVER),
    ({"message": "whatever", "status_code": 524}, ErrorKind.SERVER),
    ({"message": "This model's maximum context length is 8192 tokens", "status_code": 400}, ErrorKind.TOKEN_LIMIT),
    ({"message": "Your request was rejected by our safety system", "status_code": 400}, ErrorKind.CONTENT_POLICY),
    ({"message": "The model `gpt-9` does not exist", "status_code": 404}, ErrorKind.MODEL_UNAVAILABLE),
    ({"message": "missing field title", "status_code": 422}, ErrorKind.VALIDATION),
    ({"message": "read ETIMEDOUT"}, ErrorKind.NETWORK),
    ({"message": "something odd"}, ErrorKind.UNKNOWN),
    ({"message": "whatever", "code": "server"}, ErrorKind.SERVER),
  ],
)
def test_classify_failure(kwargs: dict[str, object], expected: ErrorKind) -> None:
  assert classify_failure(**kwargs) is expected  # type: ignore[arg-type]


def test_openai_rate_limit_carries_retry_after() -> None:
  response = httpx.Response(429, headers={"retry-after": "17"}, json={"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}}, request=_openai_request())
  exc = openai.RateLimitError("Rate limit reached", response=response, body={"message": "Rate limit reached", "code": "rate_limit_exceeded"})

  error = generation_error_from_exception(exc)

  assert error.kind is ErrorKind.RATE_LIMIT
  assert error.upstream is Upstream.CONTENT_GENERATION
  assert error.status_code == 429
  assert error.retry_after == 17.0


def test_openai_authentication_error() -> None:
  response = httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}}, request=_openai_request())
  exc = openai.AuthenticationError("Incorrect API key provided", response=response, body=None)

  assert generation_error_from_exception(exc).kind is ErrorKind.AUTHENTICATION


def test_openai_timeout_is_network() -> None:
  exc = openai.APITimeoutError(request=_openai_request())

  assert generation_error_from_exception(exc).kind is ErrorKind.NETWORK


def test_builtin_timeout_is_network() -> None:
  assert publish_error_from_exception(TimeoutError("deadline")).kind is ErrorKind.NETWORK


@pytest.mark.anyio
async def test_wordpress_status_error_through_mock_transport() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(403, json={"code": "rest_cannot_create", "message": "Sorry, you are not allowed to create posts as this user."})

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    response = await client.post("https://blog.test/wp-json/wp/v2/posts", json={})
    with pytest.raises(httpx.HTTPStatusError) as excinfo:
      response.raise_for_status()

  error = publish_error_from_exception(excinfo.value)

  assert error.kind is ErrorKind.AUTHORIZATION
  assert error.upstream is Upstream.PUBLISHING
  assert error.code == "rest_cannot_create"
  assert "not allowed" in error.message


@pytest.mark.anyio
async def test_connect_error_through_mock_transport() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    with pytest.raises(httpx.ConnectError) as excinfo:
      await client.get("https://blog.test/wp-json/wp/v2/posts")

  assert publish_error_from_exception(excinfo.value).kind is ErrorKind.NETWORK


def test_unsuccessful_results_are_adapted() -> None:
  generation = generation_error_from_result(GenerationResult(success=False, error="Service Unavailable", status_code=503))
  publish = publish_error_from_result(PublishResult(success=False, error="Bad Gateway", status_code=502))

  assert generation.kind is ErrorKind.SERVER
  assert generation.upstream is Upstream.CONTENT_GENERATION
  assert publish.kind is ErrorKind.SERVER
  assert publish.upstream is Upstream.PUBLISHING


def test_result_adapters_keep_retry_after() -> None:
  generation = generation_error_from_result(GenerationResult(success=False, error="Rate limit reached", status_code=429, error_code="rate_limit", retry_after=45.0))
  publish = publish_error_from_result(PublishResult(success=False, error="Too Many Requests", status_code=429, retry_after=30.0))

  assert generation.kind is ErrorKind.RATE_LIMIT
  assert generation.retry_after == 45.0
  assert publish.kind is ErrorKind.RATE_LIMIT
  assert publish.retry_after == 30.0
