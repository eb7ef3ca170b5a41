"""Structural checks applied to drafts before publishing."""

from __future__ import annotations

from autopost.providers.interface import ValidationOutcome

MAX_TITLE_CHARS = 200


class BasicContentValidator:
  """Rejects drafts with no usable title or too little body text."""

  def __init__(self, *, min_word_count: int = 50) -> None:
    self._min_word_count = min_word_count

  async def validate(self, title: str, content: str, *, relaxed: bool = False) -> ValidationOutcome:
    errors: list[str] = []
    if not title or not title.strip():
      errors.append("Title is empty")
    elif len(title) > MAX_TITLE_CHARS and not relaxed:
      errors.append(f"Title exceeds {MAX_TITLE_CHARS} characters")

    # Relaxed mode halves the word floor.
    minimum = self._min_word_count // 2 if relaxed else self._min_word_count
    words = len((content or "").split())
    if words < minimum:
      errors.append(f"Content has {words} words; at least {minimum} required")
    return ValidationOutcome(valid=not errors, errors=tuple(errors))
