"""Contracts for the upstreams the pipeline delegates to."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class GenerationRequest:
  """What to write and any degradation hints for the generator."""

  topic: str
  model: str | None = None
  hints: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
  success: bool
  title: str | None = None
  content: str | None = None
  tokens_used: int | None = None
  model: str | None = None
  error: str | None = None
  status_code: int | None = None
  error_code: str | None = None
  retry_after: float | None = None


@dataclass(frozen=True)
class PublishRequest:
  job_id: str
  title: str
  content: str
  categories: tuple[str, ...] = ()
  tags: tuple[str, ...] = ()
  skip_taxonomy: bool = False


@dataclass(frozen=True)
class PublishResult:
  """Outcome of a publish call; error_stage is "taxonomy" when term resolution failed."""

  success: bool
  external_id: str | None = None
  error: str | None = None
  status_code: int | None = None
  error_code: str | None = None
  error_stage: str | None = None
  retry_after: float | None = None


@dataclass(frozen=True)
class ValidationOutcome:
  valid: bool
  errors: tuple[str, ...] = ()


class ContentGenerator(Protocol):
  async def generate(self, request: GenerationRequest) -> GenerationResult:
    """Produce a titled draft for a topic."""


class Publisher(Protocol):
  async def publish(self, request: PublishRequest) -> PublishResult:
    """Post a draft to the publishing target."""


class ContentValidator(Protocol):
  async def validate(self, title: str, content: str, *, relaxed: bool = False) -> ValidationOutcome:
    """Check a draft before it is published."""
