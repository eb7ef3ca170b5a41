"""WordPress REST API publisher."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from autopost.providers.errors import publish_error_from_exception
from autopost.providers.interface import PublishRequest, PublishResult


class TaxonomyLookupError(Exception):
  """Raised when category or tag ids cannot be resolved."""


class WordPressPublisher:
  """Publish drafts as posts through the WordPress REST API."""

  def __init__(self, *, base_url: str, username: str, app_password: str, post_status: str = "publish", timeout_seconds: float = 15.0, client: httpx.AsyncClient | None = None) -> None:
    if not base_url:
      raise ValueError("AUTOPOST_WORDPRESS_URL is required for the WordPress publisher")
    self._base_url = base_url.rstrip("/")
    self._post_status = post_status
    self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
    self._auth = httpx.BasicAuth(username, app_password)
    self._logger = logging.getLogger(__name__)

  async def aclose(self) -> None:
    await self._client.aclose()

  async def publish(self, request: PublishRequest) -> PublishResult:
    payload: dict[str, Any] = {"title": request.title, "content": request.content, "status": self._post_status}
    if not request.skip_taxonomy and (request.categories or request.tags):
      try:
        if request.categories:
          payload["categories"] = await self._resolve_terms("categories", request.categories)
        if request.tags:
          payload["tags"] = await self._resolve_terms("tags", request.tags)
      except (httpx.HTTPError, TaxonomyLookupError) as exc:
        self._logger.warning("Taxonomy resolution failed for job %s: %s", request.job_id, exc)
        return PublishResult(success=False, error=f"Taxonomy resolution failed: {exc}", error_stage="taxonomy")

    try:
      response = await self._client.post(f"{self._base_url}/wp-json/wp/v2/posts", json=payload, auth=self._auth)
      response.raise_for_status()
    except httpx.HTTPError as exc:
      error = publish_error_from_exception(exc)
      self._logger.warning("Publish failed for job %s kind=%s status=%s: %s", request.job_id, error.kind.value, error.status_code, error.message)
      return PublishResult(success=False, error=error.message, status_code=error.status_code, error_code=error.kind.value, retry_after=error.retry_after)

    body = response.json()
    post_id = body.get("id") if isinstance(body, dict) else None
    if post_id is None:
      return PublishResult(success=False, error="Publisher response did not include a post id", status_code=response.status_code, error_code="unknown")
    self._logger.info("Published job %s as post %s", request.job_id, post_id)
    return PublishResult(success=True, external_id=str(post_id), status_code=response.status_code)

  async def _resolve_terms(self, taxonomy: str, names: tuple[str, ...]) -> list[int]:
    """Look up existing term ids by name; unknown names are skipped."""
    ids: list[int] = []
    for name in names:
      response = await self._client.get(f"{self._base_url}/wp-json/wp/v2/{taxonomy}", params={"search": name, "per_page": 10}, auth=self._auth)
      response.raise_for_status()
      terms = response.json()
      if not isinstance(terms, list):
        raise TaxonomyLookupError(f"Unexpected {taxonomy} response")
      match = next((term for term in terms if str(term.get("name", "")).lower() == name.lower()), None)
      if match is not None:
        ids.append(int(match["id"]))
    return ids
