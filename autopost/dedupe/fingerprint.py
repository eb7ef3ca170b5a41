"""Cheap comparable fingerprints of topics and drafts."""

from __future__ import annotations

import re
import string
import zlib
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")
_BASE36 = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class ContentFingerprint:
  topic_hash: str
  content_hash: str | None
  title_hash: str | None
  word_count: int
  key_phrases: tuple[str, ...]


def normalize(text: str) -> str:
  """Lower-case and collapse whitespace."""
  return _WHITESPACE.sub(" ", text.lower()).strip()


def _base36(value: int) -> str:
  if value == 0:
    return "0"
  digits = []
  while value:
    value, remainder = divmod(value, 36)
    digits.append(_BASE36[remainder])
  return "".join(reversed(digits))


def text_hash(text: str) -> str:
  """Non-cryptographic hash of normalized text, for equality checks only."""
  return _base36(zlib.crc32(normalize(text).encode("utf-8")))


def word_set(text: str) -> set[str]:
  return set(_PUNCTUATION.sub(" ", normalize(text)).split())


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
  a, b = set(left), set(right)
  union = a | b
  if not union:
    return 0.0
  return len(a & b) / len(union)


class ContentFingerprinter:
  """Derives fingerprints used by duplicate detection."""

  def __init__(self, *, key_phrase_count: int = 10, min_word_length: int = 4) -> None:
    self._key_phrase_count = key_phrase_count
    self._min_word_length = min_word_length

  def fingerprint(self, topic: str, content: str | None = None, title: str | None = None) -> ContentFingerprint:
    return ContentFingerprint(
      topic_hash=text_hash(topic),
      content_hash=text_hash(content) if content else None,
      title_hash=text_hash(title) if title else None,
      word_count=len(content.split()) if content else 0,
      key_phrases=self.key_phrases(content) if content else (),
    )

  def key_phrases(self, text: str) -> tuple[str, ...]:
    """Most frequent words longer than three characters; ties keep first-seen order."""
    words = [word for word in _PUNCTUATION.sub(" ", normalize(text)).split() if len(word) >= self._min_word_length]
    return tuple(word for word, _ in Counter(words).most_common(self._key_phrase_count))
