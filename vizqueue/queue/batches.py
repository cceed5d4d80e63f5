"""Batch counters, completion signalling and webhook delivery."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from vizqueue.queue.models import BatchRecord, BatchTransition
from vizqueue.storage.queue_repo import QueueRepository
from vizqueue.utils.ids import generate_batch_id, now_ms
from vizqueue.utils.store_retry import execute_with_retry

logger = logging.getLogger(__name__)


class BatchTracker:
  """Aggregate progress for groups of queue entries sharing a batchId."""

  def __init__(self, repo: QueueRepository, *, max_attempts: int = 5, initial_backoff_ms: int = 50, max_backoff_ms: int = 2000, http_client_factory: Callable[[], httpx.AsyncClient] | None = None) -> None:
    self._repo = repo
    self._max_attempts = max_attempts
    self._initial_backoff_ms = initial_backoff_ms
    self._max_backoff_ms = max_backoff_ms
    self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=30.0, trust_env=False))

  async def create_batch(self, queue_name: str, total_items: int, *, webhook_url: str | None = None, metadata: dict[str, Any] | None = None, batch_id: str | None = None) -> BatchRecord:
    if total_items < 1:
      raise ValueError("A batch must contain at least one item.")
    now = now_ms()
    record = BatchRecord(batch_id=batch_id or generate_batch_id(now), queue_name=queue_name, total_items=total_items, webhook_url=webhook_url, metadata=metadata or {}, created_at=now, updated_at=now)
    await self._repo.create_batch(record)
    logger.info("Created batch %s on %s with %d items", record.batch_id, queue_name, total_items)
    return record

  async def update_batch_counts(self, batch_id: str, *, completed_delta: int = 0, error_delta: int = 0, processing_delta: int = 0) -> BatchTransition | None:
    """Apply counter deltas atomically; fires the webhook once on completion.

    Contention is retried with backoff; StoreContention escapes once the bound is spent.
    """
    if completed_delta == 0 and error_delta == 0 and processing_delta == 0:
      return None

    async def _apply() -> BatchTransition | None:
      return await self._repo.apply_batch_deltas(batch_id, completed=completed_delta, failed=error_delta, processing=processing_delta)

    transition = await execute_with_retry(operation_name=f"batch_update:{batch_id}", func=_apply, max_attempts=self._max_attempts, initial_backoff_ms=self._initial_backoff_ms, max_backoff_ms=self._max_backoff_ms)
    if transition is None:
      logger.warning("Batch %s not found while applying deltas", batch_id)
      return None

    if transition.should_trigger_webhook:
      logger.info("Batch %s complete: %d completed, %d failed", batch_id, transition.record.completed_items, transition.record.failed_items)
      if transition.webhook_url:
        await self._send_webhook(transition.record)
    return transition

  async def _send_webhook(self, record: BatchRecord) -> None:
    """POST the completion payload; delivery failures are logged, counters stay committed."""
    try:
      async with self._http_client_factory() as client:
        response = await client.post(record.webhook_url, json=record.webhook_payload())
        response.raise_for_status()
      logger.info("Webhook delivered for batch %s", record.batch_id)
    except httpx.HTTPError as exc:
      logger.error("Webhook delivery failed for batch %s to %s: %s", record.batch_id, record.webhook_url, exc)

  async def get_batch_status(self, batch_id: str) -> dict[str, Any] | None:
    record = await self._repo.get_batch(batch_id)
    return record.status_view() if record else None

  async def wait_for_batch_completion(self, batch_id: str, *, max_wait_ms: int = 300000, poll_interval_ms: int = 1000) -> dict[str, Any]:
    """Poll until the batch completes; raises TimeoutError after max_wait_ms."""
    deadline = time.monotonic() + max_wait_ms / 1000
    while True:
      status = await self.get_batch_status(batch_id)
      if status is None:
        raise LookupError(f"Batch {batch_id} not found")
      if status["isComplete"]:
        return status
      if time.monotonic() >= deadline:
        raise TimeoutError(f"Batch {batch_id} did not complete within {max_wait_ms}ms ({status['completionPercentage']}%)")
      await asyncio.sleep(poll_interval_ms / 1000)
