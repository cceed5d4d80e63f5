"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from vizqueue.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_QUEUE_BACKENDS = {"firestore", "memory"}


@dataclass(frozen=True)
class ModelRateLimit:
  """Fixed-window limits applied to one provider model."""

  max_requests: int
  max_tokens: int | None
  window_ms: int


@dataclass(frozen=True)
class Settings:
  """Typed settings for the vizqueue service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  queue_backend: str
  queue_collection: str
  queue_batch_collection: str
  queue_rate_collection: str
  queue_batch_limit: int
  queue_contention_round_limit: int
  queue_claim_max_attempts: int
  queue_offload_threshold_bytes: int
  queue_stuck_threshold_ms: int
  batch_update_max_attempts: int
  batch_update_initial_backoff_ms: int
  batch_update_max_backoff_ms: int
  provider_backoff_seconds: float
  wavespeed_initial_wait_ms: int
  wavespeed_poll_interval_ms: int
  wavespeed_max_attempts: int
  model_rate_limits: dict[str, ModelRateLimit] = field(hash=False)
  mock_images: bool
  mock_llm: bool
  storage_bucket: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  firebase_database_url: str | None
  openai_api_key: str | None
  gemini_api_key: str | None
  stability_api_key: str | None
  wavespeed_api_key: str | None
  modal_api_key: str | None
  modal_outpaint_endpoint: str | None
  modal_outpaint_steps: int
  modal_callback_token: str | None
  cloudflare_account_id: str | None
  cloudflare_images_token: str | None
  task_service_provider: str
  cloud_tasks_queue_path: str | None
  cloud_run_invoker_service_account: str | None
  base_url: str | None
  callback_base_url: str | None
  task_secret: str | None


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("VIZQ_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("VIZQ_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("VIZQ_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


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


def _parse_rate_limits(raw: str | None) -> dict[str, ModelRateLimit]:
  """Parse per-model limits from a JSON object keyed by model name."""
  if not raw:
    return {}
  try:
    payload: dict[str, Any] = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("VIZQ_MODEL_RATE_LIMITS must be a JSON object.") from exc
  if not isinstance(payload, dict):
    raise ValueError("VIZQ_MODEL_RATE_LIMITS must be a JSON object.")

  limits: dict[str, ModelRateLimit] = {}
  for model, limit_config in payload.items():
    # Each entry mirrors the provider dashboards: requests and tokens per window.
    if not isinstance(limit_config, dict) or "maxRequests" not in limit_config:
      raise ValueError(f"VIZQ_MODEL_RATE_LIMITS entry for {model!r} must include maxRequests.")
    max_tokens = limit_config.get("maxTokens")
    limits[model] = ModelRateLimit(max_requests=int(limit_config["maxRequests"]), max_tokens=int(max_tokens) if max_tokens is not None else None, window_ms=int(limit_config.get("windowSize", 60000)))
  return limits


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("VIZQ_ENV", "development").lower()
  debug = _parse_bool(os.getenv("VIZQ_DEBUG"))

  log_max_bytes = _positive_int("VIZQ_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("VIZQ_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("VIZQ_LOG_BACKUP_COUNT must be zero or a positive integer.")

  queue_backend = os.getenv("VIZQ_QUEUE_BACKEND", "firestore").strip().lower()
  if queue_backend not in _QUEUE_BACKENDS:
    raise ValueError(f"VIZQ_QUEUE_BACKEND must be one of {sorted(_QUEUE_BACKENDS)}.")

  # Contention retry bounds stay tunable per deployment.
  batch_update_max_attempts = _positive_int("VIZQ_BATCH_UPDATE_MAX_ATTEMPTS", "5")
  batch_update_initial_backoff_ms = _positive_int("VIZQ_BATCH_UPDATE_INITIAL_BACKOFF_MS", "50")
  batch_update_max_backoff_ms = _positive_int("VIZQ_BATCH_UPDATE_MAX_BACKOFF_MS", "2000")

  provider_backoff_seconds = float(os.getenv("VIZQ_PROVIDER_BACKOFF_SECONDS", "10"))
  if provider_backoff_seconds < 0:
    raise ValueError("VIZQ_PROVIDER_BACKOFF_SECONDS must not be negative.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("VIZQ_ALLOWED_ORIGINS")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("VIZQ_LOG_HTTP_4XX")),
    queue_backend=queue_backend,
    queue_collection=os.getenv("VIZQ_QUEUE_COLLECTION", "Queue"),
    queue_batch_collection=os.getenv("VIZQ_QUEUE_BATCH_COLLECTION", "QueueBatches"),
    queue_rate_collection=os.getenv("VIZQ_QUEUE_RATE_COLLECTION", "QueueRateLimits"),
    queue_batch_limit=_positive_int("VIZQ_QUEUE_BATCH_LIMIT", "2000"),
    queue_contention_round_limit=_positive_int("VIZQ_QUEUE_CONTENTION_ROUND_LIMIT", "3"),
    queue_claim_max_attempts=_positive_int("VIZQ_QUEUE_CLAIM_MAX_ATTEMPTS", "3"),
    queue_offload_threshold_bytes=_positive_int("VIZQ_QUEUE_OFFLOAD_THRESHOLD_BYTES", "900000"),
    queue_stuck_threshold_ms=_positive_int("VIZQ_QUEUE_STUCK_THRESHOLD_MS", "900000"),
    batch_update_max_attempts=batch_update_max_attempts,
    batch_update_initial_backoff_ms=batch_update_initial_backoff_ms,
    batch_update_max_backoff_ms=batch_update_max_backoff_ms,
    provider_backoff_seconds=provider_backoff_seconds,
    wavespeed_initial_wait_ms=int(os.getenv("VIZQ_WAVESPEED_INITIAL_WAIT_MS", "5000")),
    wavespeed_poll_interval_ms=_positive_int("VIZQ_WAVESPEED_POLL_INTERVAL_MS", "1000"),
    wavespeed_max_attempts=_positive_int("VIZQ_WAVESPEED_MAX_ATTEMPTS", "60"),
    model_rate_limits=_parse_rate_limits(os.getenv("VIZQ_MODEL_RATE_LIMITS")),
    mock_images=_parse_bool(os.getenv("VIZQ_MOCK_IMAGES")),
    mock_llm=_parse_bool(os.getenv("VIZQ_MOCK_LLM")),
    storage_bucket=os.getenv("VIZQ_STORAGE_BUCKET", "vizqueue-assets"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    firebase_project_id=_optional_str(os.getenv("FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    firebase_database_url=_optional_str(os.getenv("FIREBASE_DATABASE_URL")),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
    stability_api_key=_optional_str(os.getenv("STABILITY_API_KEY")),
    wavespeed_api_key=_optional_str(os.getenv("WAVESPEED_API_KEY")),
    modal_api_key=_optional_str(os.getenv("MODAL_API_KEY")),
    modal_outpaint_endpoint=_optional_str(os.getenv("MODAL_OUTPAINT_ENDPOINT")),
    modal_outpaint_steps=_positive_int("MODAL_OUTPAINT_STEPS", "30"),
    modal_callback_token=_optional_str(os.getenv("MODAL_CALLBACK_TOKEN")),
    cloudflare_account_id=_optional_str(os.getenv("CLOUDFLARE_ACCOUNT_ID")),
    cloudflare_images_token=_optional_str(os.getenv("CLOUDFLARE_IMAGES_API_TOKEN")),
    task_service_provider=os.getenv("VIZQ_TASK_SERVICE_PROVIDER", "local-http").lower(),
    cloud_tasks_queue_path=_optional_str(os.getenv("VIZQ_CLOUD_TASKS_QUEUE_PATH")),
    cloud_run_invoker_service_account=_optional_str(os.getenv("VIZQ_CLOUD_RUN_INVOKER_SERVICE_ACCOUNT")),
    base_url=_optional_str(os.getenv("VIZQ_BASE_URL")),
    callback_base_url=_optional_str(os.getenv("VIZQ_CALLBACK_BASE_URL")),
    task_secret=_optional_str(os.getenv("VIZQ_TASK_SECRET")),
  )
