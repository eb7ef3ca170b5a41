"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from functools import lru_cache

from autopost.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class LeaseConfig:
  """Limits for claiming and sweeping job leases."""

  max_retries: int = 3
  stale_threshold_minutes: int = 10
  sweep_limit: int = 50


@dataclass(frozen=True)
class RetryPolicy:
  """Backoff parameters applied to recorded failures."""

  max_retries: int = 3
  delay_cap_seconds: float = 600.0
  jitter_ratio: float = 0.1


@dataclass(frozen=True)
class BreakerConfig:
  """Circuit breaker thresholds shared by every upstream."""

  failure_threshold: int = 5
  cooldown_seconds: float = 300.0


@dataclass(frozen=True)
class DuplicateConfig:
  """Lookback windows and similarity thresholds for duplicate screening."""

  topic_lookback_days: int = 7
  content_lookback_days: int = 30
  topic_threshold: float = 0.8
  content_threshold: float = 0.85
  idempotency_ttl_hours: int = 24
  key_phrase_count: int = 10
  candidate_limit: int = 200


@dataclass(frozen=True)
class DegradationConfig:
  """Health bookkeeping and fallback data for degraded pipeline stages."""

  health_step: float = 0.1
  healthy_threshold: float = 0.8
  critical_threshold: float = 0.5
  history_size: int = 100
  fallback_models: tuple[str, ...] = ("gpt-4o-mini", "gpt-3.5-turbo")
  default_categories: tuple[str, ...] = ("General", "Technology", "Business")
  default_tags: tuple[str, ...] = ("automated", "content", "draft")
  retry_later_base_seconds: float = 30.0
  retry_later_cap_seconds: float = 600.0


@dataclass(frozen=True)
class SchedulerConfig:
  """Slot pool sizing for concurrent runs."""

  slots: int = 5
  batch_size: int = 3
  job_timeout_seconds: float = 30.0
  max_rounds: int = 50


@dataclass(frozen=True)
class UpstreamRateLimit:
  """Sliding-window request budgets for one upstream."""

  requests_per_minute: int
  requests_per_hour: int
  burst_limit: int
  burst_window_seconds: float


@dataclass(frozen=True)
class RateLimitConfig:
  """Proactive request budgets keyed by upstream name."""

  generation: UpstreamRateLimit = field(default_factory=lambda: UpstreamRateLimit(requests_per_minute=60, requests_per_hour=3600, burst_limit=10, burst_window_seconds=10.0))
  publishing: UpstreamRateLimit = field(default_factory=lambda: UpstreamRateLimit(requests_per_minute=100, requests_per_hour=1000, burst_limit=20, burst_window_seconds=5.0))


@dataclass(frozen=True)
class RetentionConfig:
  """How long finished runs and terminal jobs are kept."""

  run_retention_days: int = 30
  job_retention_days: int = 365
  batch_size: int = 1000


@dataclass(frozen=True)
class OrchestratorConfig:
  """Aggregate of every component config used by the orchestrator."""

  lease: LeaseConfig = field(default_factory=LeaseConfig)
  retry: RetryPolicy = field(default_factory=RetryPolicy)
  breaker: BreakerConfig = field(default_factory=BreakerConfig)
  duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
  degradation: DegradationConfig = field(default_factory=DegradationConfig)
  scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
  rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
  retention: RetentionConfig = field(default_factory=RetentionConfig)
  min_word_count: int = 50


@dataclass(frozen=True)
class Settings:
  """Typed settings for the autopost service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  task_secret: str | None
  max_retries: int
  retry_delay_cap_seconds: float
  breaker_failure_threshold: int
  breaker_cooldown_seconds: float
  stale_threshold_minutes: int
  scheduler_slots: int
  scheduler_batch_size: int
  job_timeout_seconds: float
  scheduler_max_rounds: int
  topic_lookback_days: int
  content_lookback_days: int
  topic_similarity_threshold: float
  content_similarity_threshold: float
  idempotency_ttl_hours: int
  min_word_count: int
  generator_api_key: str | None
  generator_base_url: str | None
  generator_model: str
  generator_timeout_seconds: float
  fallback_models: tuple[str, ...]
  wordpress_url: str | None
  wordpress_username: str | None
  wordpress_app_password: str | None
  wordpress_post_status: str
  publisher_timeout_seconds: float
  generation_requests_per_minute: int
  publishing_requests_per_minute: int
  run_retention_days: int
  job_retention_days: int

  def orchestrator_config(self) -> OrchestratorConfig:
    """Map environment-level settings onto component configs."""

    return OrchestratorConfig(
      lease=LeaseConfig(max_retries=self.max_retries, stale_threshold_minutes=self.stale_threshold_minutes),
      retry=RetryPolicy(max_retries=self.max_retries, delay_cap_seconds=self.retry_delay_cap_seconds),
      breaker=BreakerConfig(failure_threshold=self.breaker_failure_threshold, cooldown_seconds=self.breaker_cooldown_seconds),
      duplicates=DuplicateConfig(
        topic_lookback_days=self.topic_lookback_days,
        content_lookback_days=self.content_lookback_days,
        topic_threshold=self.topic_similarity_threshold,
        content_threshold=self.content_similarity_threshold,
        idempotency_ttl_hours=self.idempotency_ttl_hours,
      ),
      degradation=DegradationConfig(fallback_models=self.fallback_models),
      scheduler=SchedulerConfig(slots=self.scheduler_slots, batch_size=self.scheduler_batch_size, job_timeout_seconds=self.job_timeout_seconds, max_rounds=self.scheduler_max_rounds),
      rate_limits=RateLimitConfig(
        generation=replace(RateLimitConfig().generation, requests_per_minute=self.generation_requests_per_minute),
        publishing=replace(RateLimitConfig().publishing, requests_per_minute=self.publishing_requests_per_minute),
      ),
      retention=RetentionConfig(run_retention_days=self.run_retention_days, job_retention_days=self.job_retention_days),
      min_word_count=self.min_word_count,
    )


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("AUTOPOST_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins) or ("http://localhost:3000",)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _ratio(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if not 0 < value <= 1:
    raise ValueError(f"{name} must be within (0, 1].")
  return value


def _parse_models(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return DegradationConfig().fallback_models
  return tuple(model.strip() for model in raw.split(",") if model.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("AUTOPOST_ENV", "development").lower()
  debug = _parse_bool(os.getenv("AUTOPOST_DEBUG"))

  log_max_bytes = _positive_int("AUTOPOST_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("AUTOPOST_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("AUTOPOST_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Retry and breaker knobs share one max so the claim predicate and backoff agree.
  max_retries = _positive_int("AUTOPOST_MAX_RETRIES", "3")

  database = get_database_settings()

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("AUTOPOST_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("AUTOPOST_LOG_HTTP_4XX")),
    pg_dsn=database.pg_dsn,
    pg_connect_timeout=database.pg_connect_timeout,
    task_secret=_optional_str(os.getenv("AUTOPOST_TASK_SECRET")),
    max_retries=max_retries,
    retry_delay_cap_seconds=_positive_float("AUTOPOST_RETRY_DELAY_CAP_SECONDS", "600"),
    breaker_failure_threshold=_positive_int("AUTOPOST_BREAKER_FAILURE_THRESHOLD", "5"),
    breaker_cooldown_seconds=_positive_float("AUTOPOST_BREAKER_COOLDOWN_SECONDS", "300"),
    stale_threshold_minutes=_positive_int("AUTOPOST_STALE_THRESHOLD_MINUTES", "10"),
    scheduler_slots=_positive_int("AUTOPOST_SCHEDULER_SLOTS", "5"),
    scheduler_batch_size=_positive_int("AUTOPOST_SCHEDULER_BATCH_SIZE", "3"),
    job_timeout_seconds=_positive_float("AUTOPOST_JOB_TIMEOUT_SECONDS", "30"),
    scheduler_max_rounds=_positive_int("AUTOPOST_SCHEDULER_MAX_ROUNDS", "50"),
    topic_lookback_days=_positive_int("AUTOPOST_TOPIC_LOOKBACK_DAYS", "7"),
    content_lookback_days=_positive_int("AUTOPOST_CONTENT_LOOKBACK_DAYS", "30"),
    topic_similarity_threshold=_ratio("AUTOPOST_TOPIC_SIMILARITY_THRESHOLD", "0.8"),
    content_similarity_threshold=_ratio("AUTOPOST_CONTENT_SIMILARITY_THRESHOLD", "0.85"),
    idempotency_ttl_hours=_positive_int("AUTOPOST_IDEMPOTENCY_TTL_HOURS", "24"),
    min_word_count=_positive_int("AUTOPOST_MIN_WORD_COUNT", "50"),
    generator_api_key=_optional_str(os.getenv("AUTOPOST_GENERATOR_API_KEY")) or _optional_str(os.getenv("OPENAI_API_KEY")),
    generator_base_url=_optional_str(os.getenv("AUTOPOST_GENERATOR_BASE_URL")),
    generator_model=(os.getenv("AUTOPOST_GENERATOR_MODEL") or "gpt-4o").strip(),
    generator_timeout_seconds=_positive_float("AUTOPOST_GENERATOR_TIMEOUT_SECONDS", "25"),
    fallback_models=_parse_models(os.getenv("AUTOPOST_FALLBACK_MODELS")),
    wordpress_url=_optional_str(os.getenv("AUTOPOST_WORDPRESS_URL")),
    wordpress_username=_optional_str(os.getenv("AUTOPOST_WORDPRESS_USERNAME")),
    wordpress_app_password=_optional_str(os.getenv("AUTOPOST_WORDPRESS_APP_PASSWORD")),
    wordpress_post_status=(os.getenv("AUTOPOST_WORDPRESS_POST_STATUS") or "publish").strip().lower(),
    publisher_timeout_seconds=_positive_float("AUTOPOST_PUBLISHER_TIMEOUT_SECONDS", "15"),
    generation_requests_per_minute=_positive_int("AUTOPOST_GENERATION_REQUESTS_PER_MINUTE", "60"),
    publishing_requests_per_minute=_positive_int("AUTOPOST_PUBLISHING_REQUESTS_PER_MINUTE", "100"),
    run_retention_days=_positive_int("AUTOPOST_RUN_RETENTION_DAYS", "30"),
    job_retention_days=_positive_int("AUTOPOST_JOB_RETENTION_DAYS", "365"),
  )


def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the rest of the service configuration."""
  debug = _parse_bool(os.getenv("AUTOPOST_DEBUG"))
  pg_connect_timeout = _positive_int("AUTOPOST_PG_CONNECT_TIMEOUT", "5")

  # Support fallback to DATABASE_URL for hosted Postgres providers
  pg_dsn = os.getenv("AUTOPOST_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
