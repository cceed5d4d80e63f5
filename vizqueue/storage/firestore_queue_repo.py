"""Firestore-backed queue repository."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from starlette.concurrency import run_in_threadpool

from vizqueue.config import ModelRateLimit, Settings
from vizqueue.queue.errors import StoreContention
from vizqueue.queue.models import BatchRecord, BatchTransition, EntryQuery, EntryUpdate, QueueEntry
from vizqueue.storage.queue_repo import grant_from_window
from vizqueue.utils.ids import now_ms
from vizqueue.utils.store_retry import classify_store_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Firestore caps a WriteBatch at 500 operations.
_WRITE_BATCH_LIMIT = 500


class FirestoreQueueRepository:
  """Queue, batch and rate-window persistence on Firestore collections."""

  def __init__(self, client: firestore.Client, *, collection: str = "Queue", batch_collection: str = "QueueBatches", rate_collection: str = "QueueRateLimits") -> None:
    self._client = client
    self._entries = client.collection(collection)
    self._batches = client.collection(batch_collection)
    self._windows = client.collection(rate_collection)

  @classmethod
  def from_settings(cls, client: firestore.Client, settings: Settings) -> FirestoreQueueRepository:
    return cls(client, collection=settings.queue_collection, batch_collection=settings.queue_batch_collection, rate_collection=settings.queue_rate_collection)

  async def _run_transaction(self, operation_name: str, body: Callable[[firestore.Transaction], T]) -> T:
    """Run `body` in a single-attempt transaction; contention surfaces as StoreContention.

    Retries are owned by callers (execute_with_retry) so the bound stays configurable.
    """

    def _execute() -> T:
      transaction = self._client.transaction(max_attempts=1)
      return firestore.transactional(body)(transaction)

    try:
      return await run_in_threadpool(_execute)
    except StoreContention:
      raise
    except Exception as exc:
      if classify_store_failure(exc).retryable:
        raise StoreContention(f"{operation_name} aborted: {exc}") from exc
      raise

  async def add_entries(self, entries: list[QueueEntry]) -> list[str]:
    def _create_all() -> list[str]:
      created: list[str] = []
      for entry in entries:
        # create() fails when the document exists, which makes the id the dedup guard.
        try:
          self._entries.document(entry.id).create(entry.to_document())
        except gcloud_exceptions.AlreadyExists:
          logger.debug("Queue entry %s already exists; skipping", entry.id)
          continue
        created.append(entry.id)
      return created

    return await run_in_threadpool(_create_all)

  async def get_entries(self, query: EntryQuery) -> list[QueueEntry]:
    strategy = query.strategy

    def _fetch() -> list[QueueEntry]:
      if strategy == "id":
        snapshot = self._entries.document(query.id).get()
        return [QueueEntry.from_document(snapshot.to_dict(), doc_id=snapshot.id)] if snapshot.exists else []

      if strategy == "batch":
        q = self._entries.where(filter=FieldFilter("batchId", "==", query.batch_id))
        if query.status:
          q = q.where(filter=FieldFilter("status", "==", query.status))
        entries = [QueueEntry.from_document(doc.to_dict(), doc_id=doc.id) for doc in q.stream()]
        return sorted(entries, key=lambda entry: entry.time_requested)

      if strategy == "params":
        q = self._entries.where(filter=FieldFilter(f"params.{query.params_key}", "==", query.params_value))
        return [QueueEntry.from_document(doc.to_dict(), doc_id=doc.id) for doc in q.stream()]

      if strategy == "type":
        q = self._entries.where(filter=FieldFilter("type", "==", query.type))
        if query.status:
          q = q.where(filter=FieldFilter("status", "==", query.status))
        if query.time_requested_after is not None:
          q = q.where(filter=FieldFilter("timeRequested", ">", query.time_requested_after))
        q = q.order_by("timeRequested", direction=firestore.Query.ASCENDING).limit(query.limit)
        return [QueueEntry.from_document(doc.to_dict(), doc_id=doc.id) for doc in q.stream()]

      return []

    return await run_in_threadpool(_fetch)

  async def update_entries(self, updates: list[EntryUpdate]) -> None:
    now = now_ms()

    def _write() -> None:
      for start in range(0, len(updates), _WRITE_BATCH_LIMIT):
        chunk = updates[start : start + _WRITE_BATCH_LIMIT]
        batch = self._client.batch()
        for update in chunk:
          batch.update(self._entries.document(update.id), update.to_fields(now))
        try:
          batch.commit()
        except gcloud_exceptions.NotFound as exc:
          # update() requires the document; the whole chunk is rejected.
          raise KeyError(f"Queue entry not found among {', '.join(update.id for update in chunk)}") from exc

    await run_in_threadpool(_write)

  async def delete_entries(self, ids: list[str]) -> int:
    def _delete() -> int:
      for start in range(0, len(ids), _WRITE_BATCH_LIMIT):
        batch = self._client.batch()
        for entry_id in ids[start : start + _WRITE_BATCH_LIMIT]:
          batch.delete(self._entries.document(entry_id))
        batch.commit()
      return len(ids)

    return await run_in_threadpool(_delete)

  async def nuke(self) -> int:
    def _collect_ids() -> list[str]:
      return [doc.id for doc in self._entries.select([]).stream()]

    ids = await run_in_threadpool(_collect_ids)
    logger.warning("Nuking queue collection: %d entries", len(ids))
    return await self.delete_entries(ids)

  async def claim_pending(self, queue_type: str, *, status: str = "pending", limit: int) -> list[QueueEntry]:
    def _claim(transaction: firestore.Transaction) -> list[QueueEntry]:
      q = self._entries.where(filter=FieldFilter("type", "==", queue_type)).where(filter=FieldFilter("status", "==", status)).order_by("timeRequested", direction=firestore.Query.ASCENDING).limit(limit)
      snapshots = list(q.stream(transaction=transaction))
      now = now_ms()
      claimed: list[QueueEntry] = []
      for snapshot in snapshots:
        fields = {"status": "processing", "timeUpdated": now, "processingStarted": now}
        transaction.update(snapshot.reference, fields)
        claimed.append(QueueEntry.from_document({**snapshot.to_dict(), **fields}, doc_id=snapshot.id))
      return claimed

    return await self._run_transaction(f"claim:{queue_type}", _claim)

  async def create_batch(self, record: BatchRecord) -> None:
    await run_in_threadpool(self._batches.document(record.batch_id).create, record.to_document())

  async def get_batch(self, batch_id: str) -> BatchRecord | None:
    snapshot = await run_in_threadpool(self._batches.document(batch_id).get)
    return BatchRecord.from_document(snapshot.to_dict()) if snapshot.exists else None

  async def apply_batch_deltas(self, batch_id: str, *, completed: int, failed: int, processing: int) -> BatchTransition | None:
    ref = self._batches.document(batch_id)

    def _apply(transaction: firestore.Transaction) -> BatchTransition | None:
      snapshot = ref.get(transaction=transaction)
      if not snapshot.exists:
        return None
      transition = BatchRecord.from_document(snapshot.to_dict()).apply_deltas(completed=completed, failed=failed, processing=processing, now=now_ms())
      record = transition.record
      fields = {"completedItems": record.completed_items, "failedItems": record.failed_items, "processingItems": record.processing_items, "status": record.status, "updatedAt": record.updated_at}
      if transition.should_trigger_webhook:
        fields["completedAt"] = record.completed_at
      transaction.update(ref, fields)
      return transition

    return await self._run_transaction(f"batch_update:{batch_id}", _apply)

  async def consume_rate_window(self, key: str, *, limit: ModelRateLimit, token_costs: list[int]) -> int:
    ref = self._windows.document(key.replace("/", "_"))

    def _consume(transaction: firestore.Transaction) -> int:
      snapshot = ref.get(transaction=transaction)
      granted, window = grant_from_window(snapshot.to_dict() if snapshot.exists else None, limit=limit, token_costs=token_costs, now=now_ms())
      transaction.set(ref, window)
      return granted

    return await self._run_transaction(f"rate_window:{key}", _consume)
