"""Store transaction retry logic with contention vs permanent error classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from google.api_core import exceptions as gcloud_exceptions

from vizqueue.queue.errors import StoreContention

T = TypeVar("T")

logger = logging.getLogger(__name__)

_CONTENTION_HINTS: tuple[str, ...] = ("aborted", "contention", "lock", "failed to commit transaction", "too much contention")


class StoreFailureClassification:
  """Classification result for a store failure."""

  def __init__(self, *, retryable: bool, reason: str, category: str) -> None:
    self.retryable = retryable
    self.reason = reason
    self.category = category


def classify_store_failure(exc: Exception) -> StoreFailureClassification:
  """
  Classify a store failure as retryable or permanent.

  Retryable (transient):
    - StoreContention raised by our own repositories
    - Firestore Aborted / Conflict (transaction lost a race)
    - DeadlineExceeded / ServiceUnavailable (backend hiccup)
    - Transaction commit exhaustion messages

  Everything else is permanent and fails fast.
  """
  if isinstance(exc, StoreContention):
    return StoreFailureClassification(retryable=True, reason="Transaction contention", category="contention")

  if isinstance(exc, gcloud_exceptions.Aborted | gcloud_exceptions.Conflict):
    return StoreFailureClassification(retryable=True, reason="Transaction aborted by concurrent writer", category="contention")

  if isinstance(exc, gcloud_exceptions.DeadlineExceeded | gcloud_exceptions.ServiceUnavailable):
    return StoreFailureClassification(retryable=True, reason="Store temporarily unavailable", category="unavailable")

  # Programming errors are never worth a retry.
  if isinstance(exc, AttributeError | TypeError | KeyError | IndexError):
    return StoreFailureClassification(retryable=False, reason=f"Programming error: {type(exc).__name__}", category="programming_error")

  # The firestore transactional decorator reports exhausted attempts as a ValueError.
  message = str(exc).lower()
  if any(hint in message for hint in _CONTENTION_HINTS):
    return StoreFailureClassification(retryable=True, reason="Contention reported by store", category="contention")

  return StoreFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", category="unknown_error")


def backoff_delay_ms(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int, jitter: bool = True) -> float:
  """Return the capped exponential delay for a 1-based attempt, with up to 50% extra jitter."""
  delay = float(min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms))
  if jitter:
    delay += delay * random.random() * 0.5
  return delay


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 5, initial_backoff_ms: int = 50, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """
  Execute a store transaction with retry logic for contention failures.

  Args:
    operation_name: Human-readable name for logging (e.g., "batch_update:batch_123")
    func: Async callable to execute; must run one whole transaction so retries are all-or-nothing
    max_attempts: Maximum number of attempts (initial + retries)
    initial_backoff_ms: Starting backoff delay in milliseconds
    max_backoff_ms: Maximum backoff delay in milliseconds
    jitter: Add randomness to backoff to avoid thundering herd

  Raises:
    StoreContention when retryable failures exhaust max_attempts; the original
    exception when it is not retryable.
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be at least 1")

  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_store_failure(exc)
      logger.warning("Store operation failed: operation=%s, attempt=%d/%d, category=%s, retryable=%s, reason=%s", operation_name, attempt, max_attempts, classification.category, classification.retryable, classification.reason)

      # Non-retryable error - fail fast
      if not classification.retryable:
        raise

      # Retryable but out of attempts
      if attempt >= max_attempts:
        logger.error("Store operation failed after %d attempts: operation=%s, category=%s - giving up", max_attempts, operation_name, classification.category)
        raise StoreContention(f"{operation_name} failed after {max_attempts} attempts: {exc}") from exc

      delay_ms = backoff_delay_ms(attempt, initial_backoff_ms=initial_backoff_ms, max_backoff_ms=max_backoff_ms, jitter=jitter)
      logger.info("Retrying store operation after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f", operation_name, attempt, max_attempts, delay_ms)
      await asyncio.sleep(delay_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("Store operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
