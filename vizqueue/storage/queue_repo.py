"""Repository interface for the durable queue, batches and rate windows."""

from __future__ import annotations

from typing import Protocol

from vizqueue.config import ModelRateLimit
from vizqueue.queue.models import BatchRecord, BatchTransition, EntryQuery, EntryUpdate, QueueEntry


class QueueRepository(Protocol):
  """Storage contract for queue entries.

  Every mutation that reads before it writes (claim, batch deltas, rate windows)
  must run as one transaction and raise StoreContention when it loses a race,
  leaving nothing applied.
  """

  async def add_entries(self, entries: list[QueueEntry]) -> list[str]:
    """Create entries whose id is absent; return the ids actually created."""
    ...

  async def get_entries(self, query: EntryQuery) -> list[QueueEntry]:
    """Return entries for the single strategy selected by the query."""
    ...

  async def update_entries(self, updates: list[EntryUpdate]) -> None:
    """Apply field-path updates in one batch write; raises KeyError when an id does not exist."""
    ...

  async def delete_entries(self, ids: list[str]) -> int:
    ...

  async def nuke(self) -> int:
    """Delete every queue entry."""
    ...

  async def claim_pending(self, queue_type: str, *, status: str = "pending", limit: int) -> list[QueueEntry]:
    """Atomically flip up to `limit` oldest matching entries to processing."""
    ...

  async def create_batch(self, record: BatchRecord) -> None:
    ...

  async def get_batch(self, batch_id: str) -> BatchRecord | None:
    ...

  async def apply_batch_deltas(self, batch_id: str, *, completed: int, failed: int, processing: int) -> BatchTransition | None:
    """Apply counter deltas in one transaction; None when the batch is missing."""
    ...

  async def consume_rate_window(self, key: str, *, limit: ModelRateLimit, token_costs: list[int]) -> int:
    """Reserve capacity in the current fixed window; return how many requests were granted."""
    ...


def grant_from_window(window: dict | None, *, limit: ModelRateLimit, token_costs: list[int], now: int) -> tuple[int, dict]:
  """Compute the granted prefix of requests and the next window document.

  Shared by every backend so the fixed-window arithmetic lives in one place.
  """
  if not window or now - int(window.get("windowStart", 0)) >= limit.window_ms:
    window = {"windowStart": now, "requests": 0, "tokens": 0}
  requests = int(window.get("requests", 0))
  tokens = int(window.get("tokens", 0))

  granted = 0
  for cost in token_costs:
    if requests + 1 > limit.max_requests:
      break
    if limit.max_tokens is not None and tokens + cost > limit.max_tokens:
      break
    requests += 1
    tokens += cost
    granted += 1
  return granted, {"windowStart": window["windowStart"], "requests": requests, "tokens": tokens}
