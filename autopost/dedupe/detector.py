"""Duplicate screening and idempotency receipts for content jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from autopost.config import DuplicateConfig
from autopost.dedupe.fingerprint import ContentFingerprint, ContentFingerprinter, jaccard, word_set
from autopost.jobs.models import IdempotencyKeyRecord, JobRecord
from autopost.storage.jobs_repo import JobStore
from autopost.utils.clock import Clock

DuplicateType = Literal["topic", "publish", "content"]

_TOPIC_WEIGHT = 0.3
_CONTENT_WEIGHT = 0.5
_PHRASE_WEIGHT = 0.2


@dataclass(frozen=True)
class DuplicateCheck:
  is_duplicate: bool
  type: DuplicateType | None = None
  existing_job_id: str | None = None
  confidence: float = 0.0
  reason: str | None = None


@dataclass(frozen=True)
class IdempotencyCheck:
  valid: bool
  job_id: str | None = None
  publish_id: str | None = None
  expired: bool = False


NOT_DUPLICATE = DuplicateCheck(is_duplicate=False)


def content_score(fingerprint: ContentFingerprint, other: ContentFingerprint) -> float:
  """Weighted similarity normalized over the factors both fingerprints carry."""
  score = _TOPIC_WEIGHT if fingerprint.topic_hash == other.topic_hash else 0.0
  available = _TOPIC_WEIGHT
  if fingerprint.content_hash and other.content_hash:
    available += _CONTENT_WEIGHT
    if fingerprint.content_hash == other.content_hash:
      score += _CONTENT_WEIGHT
  if fingerprint.key_phrases and other.key_phrases:
    available += _PHRASE_WEIGHT
    score += _PHRASE_WEIGHT * jaccard(fingerprint.key_phrases, other.key_phrases)
  return score / available


class DuplicateDetector:
  """Classifies a job as novel or a duplicate of recently completed work.

  Lookups fail open: a store error yields a non-duplicate so the pipeline keeps
  running when the history cannot be read.
  """

  def __init__(self, store: JobStore, *, clock: Clock, fingerprinter: ContentFingerprinter | None = None, config: DuplicateConfig | None = None) -> None:
    self._store = store
    self._clock = clock
    self._config = config or DuplicateConfig()
    self._fingerprinter = fingerprinter or ContentFingerprinter(key_phrase_count=self._config.key_phrase_count)
    self._logger = logging.getLogger(__name__)

  async def check(self, job: JobRecord, fingerprint: ContentFingerprint) -> DuplicateCheck:
    try:
      result = await self._check_topic(job)
      if result.is_duplicate:
        return result
      result = await self._check_publish_target(job)
      if result.is_duplicate:
        return result
      if fingerprint.content_hash:
        return await self._check_content(job, fingerprint)
      return NOT_DUPLICATE
    except Exception as exc:  # noqa: BLE001
      self._logger.warning("Duplicate check failed open for job %s: %s", job.id, exc, exc_info=True)
      return NOT_DUPLICATE

  async def _check_topic(self, job: JobRecord) -> DuplicateCheck:
    since = self._clock.now() - timedelta(days=self._config.topic_lookback_days)
    candidates = await self._store.list_completed_since(since, exclude_job_id=job.id, limit=self._config.candidate_limit)
    words = word_set(job.topic)
    for candidate in candidates:
      similarity = jaccard(words, word_set(candidate.topic))
      if similarity >= self._config.topic_threshold:
        return DuplicateCheck(
          is_duplicate=True, type="topic", existing_job_id=candidate.id, confidence=round(similarity, 4), reason=f"Topic matches job {candidate.id} ({similarity:.0%} word overlap)"
        )
    return NOT_DUPLICATE

  async def _check_publish_target(self, job: JobRecord) -> DuplicateCheck:
    if not job.publish_id:
      return NOT_DUPLICATE
    existing = await self._store.find_by_publish_id(job.publish_id, exclude_job_id=job.id)
    if existing is None:
      return NOT_DUPLICATE
    return DuplicateCheck(is_duplicate=True, type="publish", existing_job_id=existing.id, confidence=1.0, reason=f"Publish id {job.publish_id} already belongs to job {existing.id}")

  async def _check_content(self, job: JobRecord, fingerprint: ContentFingerprint) -> DuplicateCheck:
    since = self._clock.now() - timedelta(days=self._config.content_lookback_days)
    candidates = await self._store.list_completed_since(since, exclude_job_id=job.id, limit=self._config.candidate_limit)
    best: DuplicateCheck = NOT_DUPLICATE
    for candidate in candidates:
      if not candidate.generated_content:
        continue
      other = self._fingerprinter.fingerprint(candidate.topic, candidate.generated_content, candidate.generated_title)
      score = content_score(fingerprint, other)
      if score >= self._config.content_threshold and score > best.confidence:
        best = DuplicateCheck(is_duplicate=True, type="content", existing_job_id=candidate.id, confidence=round(score, 4), reason=f"Draft matches job {candidate.id} (score {score:.2f})")
    return best

  def idempotency_key_for(self, job_id: str, topic_hash: str) -> str:
    return f"{job_id}:{topic_hash}"

  async def create_idempotency_key(self, job: JobRecord, fingerprint: ContentFingerprint, publish_id: str | None) -> IdempotencyKeyRecord | None:
    """Store a receipt for a published job; errors are logged and ignored."""
    now = self._clock.now()
    record = IdempotencyKeyRecord(
      key=self.idempotency_key_for(job.id, fingerprint.topic_hash),
      job_id=job.id,
      topic_hash=fingerprint.topic_hash,
      content_hash=fingerprint.content_hash,
      publish_id=publish_id,
      created_at=now,
      expires_at=now + timedelta(hours=self._config.idempotency_ttl_hours),
    )
    try:
      await self._store.put_idempotency_key(record)
    except Exception as exc:  # noqa: BLE001
      self._logger.warning("Failed to store idempotency key for job %s: %s", job.id, exc)
      return None
    return record

  async def validate_idempotency_key(self, key: str) -> IdempotencyCheck:
    try:
      record = await self._store.get_idempotency_key(key)
    except Exception as exc:  # noqa: BLE001
      self._logger.warning("Idempotency lookup failed open for key %s: %s", key, exc)
      return IdempotencyCheck(valid=False)
    if record is None:
      return IdempotencyCheck(valid=False)
    if record.expires_at <= self._clock.now():
      return IdempotencyCheck(valid=False, job_id=record.job_id, publish_id=record.publish_id, expired=True)
    return IdempotencyCheck(valid=True, job_id=record.job_id, publish_id=record.publish_id)

  async def purge_expired_keys(self) -> int:
    removed = await self._store.delete_expired_keys(now=self._clock.now())
    if removed:
      self._logger.info("Removed %d expired idempotency keys", removed)
    return removed
