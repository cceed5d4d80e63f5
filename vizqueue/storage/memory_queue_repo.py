"""In-process queue repository with optimistic concurrency.

Used for local development (VIZQ_QUEUE_BACKEND=memory) and tests. Every
read-modify-write records document versions, yields to the event loop, and
refuses to commit if another writer touched the same documents in between,
so concurrent claims behave like Firestore transactions.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass

from vizqueue.config import ModelRateLimit
from vizqueue.queue.errors import StoreContention
from vizqueue.queue.models import BatchRecord, BatchTransition, EntryQuery, EntryUpdate, QueueEntry
from vizqueue.storage.queue_repo import grant_from_window
from vizqueue.utils.ids import now_ms


@dataclass
class _Versioned:
  document: dict
  version: int = 0


class InMemoryQueueRepository:
  """Dict-backed implementation of QueueRepository."""

  def __init__(self) -> None:
    self._entries: dict[str, _Versioned] = {}
    self._batches: dict[str, _Versioned] = {}
    self._windows: dict[str, _Versioned] = {}

  def _snapshot(self, store: dict[str, _Versioned], key: str) -> tuple[dict | None, int]:
    current = store.get(key)
    if current is None:
      return None, -1
    return copy.deepcopy(current.document), current.version

  def _commit(self, store: dict[str, _Versioned], writes: dict[str, tuple[dict, int]]) -> None:
    """Write all documents or none; any version drift aborts the commit."""
    for key, (_, expected) in writes.items():
      current = store.get(key)
      version = current.version if current is not None else -1
      if version != expected:
        raise StoreContention(f"Document {key} changed during transaction")
    for key, (document, expected) in writes.items():
      store[key] = _Versioned(document=document, version=expected + 1)

  async def add_entries(self, entries: list[QueueEntry]) -> list[str]:
    created: list[str] = []
    for entry in entries:
      if entry.id in self._entries:
        continue
      self._entries[entry.id] = _Versioned(document=entry.to_document())
      created.append(entry.id)
    return created

  async def get_entries(self, query: EntryQuery) -> list[QueueEntry]:
    strategy = query.strategy
    if strategy == "id":
      current = self._entries.get(query.id or "")
      return [QueueEntry.from_document(copy.deepcopy(current.document))] if current else []

    entries = [QueueEntry.from_document(copy.deepcopy(item.document)) for item in self._entries.values()]
    if strategy == "batch":
      matched = [entry for entry in entries if entry.batch_id == query.batch_id and (not query.status or entry.status == query.status)]
      return sorted(matched, key=lambda entry: entry.time_requested)
    if strategy == "params":
      return [entry for entry in entries if entry.params.get(query.params_key or "") == query.params_value]
    if strategy == "type":
      matched = [entry for entry in entries if query.matches_scan(entry)]
      return sorted(matched, key=lambda entry: entry.time_requested)[: query.limit]
    return []

  async def update_entries(self, updates: list[EntryUpdate]) -> None:
    now = now_ms()
    for update in updates:
      current = self._entries.get(update.id)
      if current is None:
        raise KeyError(f"Queue entry {update.id} not found")
      current.document.update(update.to_fields(now))
      current.version += 1

  async def delete_entries(self, ids: list[str]) -> int:
    removed = 0
    for entry_id in ids:
      if self._entries.pop(entry_id, None) is not None:
        removed += 1
    return removed

  async def nuke(self) -> int:
    removed = len(self._entries)
    self._entries.clear()
    return removed

  async def claim_pending(self, queue_type: str, *, status: str = "pending", limit: int) -> list[QueueEntry]:
    # Read phase: ordered query bounded by limit.
    candidates = sorted((item for item in self._entries.values() if item.document.get("type") == queue_type and item.document.get("status") == status), key=lambda item: item.document.get("timeRequested", 0))[:limit]
    reads = {item.document["id"]: (copy.deepcopy(item.document), item.version) for item in candidates}

    # Let other claimers interleave, as a remote transaction would.
    await asyncio.sleep(0)

    now = now_ms()
    writes: dict[str, tuple[dict, int]] = {}
    for entry_id, (document, version) in reads.items():
      document.update({"status": "processing", "timeUpdated": now, "processingStarted": now})
      writes[entry_id] = (document, version)
    self._commit(self._entries, writes)
    return [QueueEntry.from_document(copy.deepcopy(document)) for document, _ in writes.values()]

  async def create_batch(self, record: BatchRecord) -> None:
    if record.batch_id in self._batches:
      raise ValueError(f"Batch {record.batch_id} already exists")
    self._batches[record.batch_id] = _Versioned(document=record.to_document())

  async def get_batch(self, batch_id: str) -> BatchRecord | None:
    document, _ = self._snapshot(self._batches, batch_id)
    return BatchRecord.from_document(document) if document else None

  async def apply_batch_deltas(self, batch_id: str, *, completed: int, failed: int, processing: int) -> BatchTransition | None:
    document, version = self._snapshot(self._batches, batch_id)
    if document is None:
      return None
    await asyncio.sleep(0)
    transition = BatchRecord.from_document(document).apply_deltas(completed=completed, failed=failed, processing=processing, now=now_ms())
    self._commit(self._batches, {batch_id: (transition.record.to_document(), version)})
    return transition

  async def consume_rate_window(self, key: str, *, limit: ModelRateLimit, token_costs: list[int]) -> int:
    document, version = self._snapshot(self._windows, key)
    await asyncio.sleep(0)
    granted, window = grant_from_window(document, limit=limit, token_costs=token_costs, now=now_ms())
    self._commit(self._windows, {key: (window, version)})
    return granted
