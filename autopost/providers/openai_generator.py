"""OpenAI-compatible chat completions generator."""

from __future__ import annotations

import logging
from typing import Final

from openai import AsyncOpenAI

from autopost.providers.errors import generation_error_from_exception
from autopost.providers.interface import GenerationRequest, GenerationResult

_SYSTEM_PROMPT: Final[str] = "You write blog posts. Reply with a title on the first line followed by the article body in plain paragraphs."
_SIMPLIFIED_PROMPT: Final[str] = "Write a short blog post. First line is the title."


def split_title(text: str) -> tuple[str, str]:
  """Take the first non-empty line as the title and the rest as the body."""
  lines = text.strip().splitlines()
  while lines and not lines[0].strip():
    lines.pop(0)
  if not lines:
    return "", ""
  title = lines[0].strip().lstrip("#").strip().strip("*").strip()
  return title, "\n".join(lines[1:]).strip()


def template_draft(topic: str) -> tuple[str, str]:
  """Deterministic draft used when generation degrades to a template."""
  title = topic.strip().title()
  paragraphs = [
    f"This article introduces {topic} and explains why it matters for teams getting started.",
    f"We cover the core ideas behind {topic}, common mistakes to avoid, and practical first steps you can take this week.",
    f"Start small, measure what changes, and revisit your approach to {topic} as you learn what works for your audience.",
    f"With a clear plan and steady iteration, {topic} becomes a repeatable part of how you work rather than a one-off project.",
  ]
  return title, "\n\n".join(paragraphs)


class OpenAIContentGenerator:
  """Generate drafts through any OpenAI-compatible endpoint."""

  def __init__(self, *, api_key: str, model: str, base_url: str | None = None, timeout_seconds: float = 25.0, client: AsyncOpenAI | None = None) -> None:
    if not api_key and client is None:
      raise ValueError("AUTOPOST_GENERATOR_API_KEY is required for the OpenAI generator")
    self._model = model
    # Retries belong to the orchestrator; the SDK must not retry on its own.
    self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0)
    self._logger = logging.getLogger(__name__)

  async def generate(self, request: GenerationRequest) -> GenerationResult:
    model = request.model or self._model
    if request.hints.get("template_fallback"):
      title, content = template_draft(request.topic)
      return GenerationResult(success=True, title=title, content=content, tokens_used=0, model="template")

    system_prompt = _SIMPLIFIED_PROMPT if request.hints.get("simplified_prompt") else _SYSTEM_PROMPT
    try:
      response = await self._client.chat.completions.create(model=model, messages=[{"role": "system", "content": system_prompt}, {"role": "user", "content": f"Topic: {request.topic}"}])
    except Exception as exc:  # noqa: BLE001
      error = generation_error_from_exception(exc)
      self._logger.warning("Generation failed model=%s kind=%s: %s", model, error.kind.value, error.message)
      return GenerationResult(success=False, model=model, error=error.message, status_code=error.status_code, error_code=error.kind.value, retry_after=error.retry_after)

    text = (response.choices[0].message.content or "") if response.choices else ""
    title, content = split_title(text)
    if not title or not content:
      return GenerationResult(success=False, model=model, error="Generator returned an empty draft", error_code="unknown")
    tokens = response.usage.total_tokens if response.usage else None
    self._logger.info("Generated draft model=%s tokens=%s title=%r", model, tokens, title)
    return GenerationResult(success=True, title=title, content=content, tokens_used=tokens, model=model)
