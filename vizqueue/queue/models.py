"""Queue entry and batch records plus their Firestore document mapping."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

EntryStatus = Literal["pending", "processing", "complete", "error"]
BatchStatus = Literal["pending", "processing", "complete"]

ENTRY_STATUSES: frozenset[str] = frozenset({"pending", "processing", "complete", "error"})
RETRY_SUFFIX = "_retry"

# Optional document fields, written only when set.
_OPTIONAL_ENTRY_FIELDS: tuple[tuple[str, str], ...] = (
  ("result", "result"),
  ("retry_count", "retryCount"),
  ("processing_started", "processingStarted"),
  ("batch_id", "batchId"),
  ("params_gcs_path", "paramsGcsPath"),
  ("result_gcs_path", "resultGcsPath"),
)


@dataclass
class QueueEntry:
  """One unit of queued provider work."""

  id: str
  type: str
  entry_type: str
  params: dict[str, Any]
  status: EntryStatus = "pending"
  trace: str = ""
  time_requested: int = 0
  time_updated: int = 0
  result: dict[str, Any] | None = None
  retry_count: int | None = None
  processing_started: int | None = None
  batch_id: str | None = None
  params_gcs_path: str | None = None
  result_gcs_path: str | None = None

  @property
  def is_retry(self) -> bool:
    """Return True for the one-shot retry copy of an entry."""
    return bool(self.params.get("retry")) or self.id.endswith(RETRY_SUFFIX)

  def to_document(self) -> dict[str, Any]:
    """Serialize to the persisted camelCase document schema."""
    document: dict[str, Any] = {
      "id": self.id,
      "type": self.type,
      "entryType": self.entry_type,
      "params": self.params,
      "status": self.status,
      "trace": self.trace,
      "timeRequested": self.time_requested,
      "timeUpdated": self.time_updated,
    }
    for attr, key in _OPTIONAL_ENTRY_FIELDS:
      value = getattr(self, attr)
      if value is not None:
        document[key] = value
    return document

  @classmethod
  def from_document(cls, data: dict[str, Any], *, doc_id: str | None = None) -> QueueEntry:
    """Build an entry from a stored document."""
    kwargs = {attr: data.get(key) for attr, key in _OPTIONAL_ENTRY_FIELDS}
    return cls(
      id=data.get("id") or doc_id or "",
      type=data.get("type", ""),
      entry_type=data.get("entryType", ""),
      params=dict(data.get("params") or {}),
      status=data.get("status", "pending"),
      trace=data.get("trace", ""),
      time_requested=int(data.get("timeRequested") or 0),
      time_updated=int(data.get("timeUpdated") or 0),
      **kwargs,
    )


@dataclass(frozen=True)
class EntryUpdate:
  """Partial update for one entry; None fields are left untouched."""

  id: str
  status: EntryStatus
  trace: str | None = None
  result: dict[str, Any] | None = None
  retry_count: int | None = None
  time_requested: int | None = None
  result_gcs_path: str | None = None

  def to_fields(self, now: int) -> dict[str, Any]:
    """Return the field-path map written to the store."""
    fields: dict[str, Any] = {"status": self.status, "timeUpdated": now}
    if self.trace is not None:
      fields["trace"] = self.trace
    if self.result is not None:
      fields["result"] = self.result
    if self.retry_count is not None:
      fields["retryCount"] = self.retry_count
    if self.time_requested is not None:
      fields["timeRequested"] = self.time_requested
    if self.result_gcs_path is not None:
      fields["resultGcsPath"] = self.result_gcs_path
    return fields


@dataclass(frozen=True)
class EntryQuery:
  """Lookup request; exactly one strategy applies, in priority order id > batchId > params > type."""

  id: str | None = None
  batch_id: str | None = None
  params_key: str | None = None
  params_value: Any = None
  type: str | None = None
  status: str | None = None
  limit: int = 10
  time_requested_after: int | None = None

  @property
  def strategy(self) -> Literal["id", "batch", "params", "type", "none"]:
    if self.id:
      return "id"
    if self.batch_id:
      return "batch"
    if self.params_key:
      return "params"
    if self.type:
      return "type"
    return "none"

  def matches_scan(self, entry: QueueEntry) -> bool:
    """Return True when an entry satisfies the type/status scan filters."""
    if entry.type != self.type:
      return False
    if self.status and entry.status != self.status:
      return False
    if self.time_requested_after is not None and entry.time_requested <= self.time_requested_after:
      return False
    return True


@dataclass(frozen=True)
class BatchTransition:
  """Outcome of applying deltas to a batch inside one transaction."""

  record: BatchRecord
  should_trigger_webhook: bool

  @property
  def webhook_url(self) -> str | None:
    return self.record.webhook_url if self.should_trigger_webhook else None


@dataclass
class BatchRecord:
  """Aggregate counters for entries sharing a batchId."""

  batch_id: str
  queue_name: str
  total_items: int
  completed_items: int = 0
  failed_items: int = 0
  processing_items: int = 0
  status: BatchStatus = "pending"
  webhook_url: str | None = None
  metadata: dict[str, Any] = field(default_factory=dict)
  created_at: int = 0
  updated_at: int = 0
  completed_at: int | None = None

  @property
  def is_complete(self) -> bool:
    return self.total_items > 0 and self.completed_items + self.failed_items >= self.total_items

  def apply_deltas(self, *, completed: int = 0, failed: int = 0, processing: int = 0, now: int) -> BatchTransition:
    """Return the record after applying counter deltas.

    Counters floor at zero and are clamped so completed + failed + processing
    never exceeds total_items. The completion signal is raised only on the
    pending/processing -> complete edge.
    """
    completed_items = min(max(0, self.completed_items + completed), self.total_items)
    failed_items = min(max(0, self.failed_items + failed), self.total_items - completed_items)
    processing_items = min(max(0, self.processing_items + processing), self.total_items - completed_items - failed_items)
    updated = replace(self, completed_items=completed_items, failed_items=failed_items, processing_items=processing_items, updated_at=now)

    should_trigger = False
    if updated.is_complete and self.status != "complete":
      updated.status = "complete"
      updated.completed_at = now
      should_trigger = True
    elif updated.status == "pending":
      updated.status = "processing"
    return BatchTransition(record=updated, should_trigger_webhook=should_trigger)

  def status_view(self) -> dict[str, Any]:
    """Return the document plus derived completion fields."""
    view = self.to_document()
    resolved = self.completed_items + self.failed_items
    view["completionPercentage"] = int(resolved / self.total_items * 100 + 0.5) if self.total_items else 0
    view["isComplete"] = self.is_complete
    return view

  def webhook_payload(self) -> dict[str, Any]:
    return {
      "batchId": self.batch_id,
      "status": self.status,
      "totalItems": self.total_items,
      "completedItems": self.completed_items,
      "failedItems": self.failed_items,
      "metadata": self.metadata,
      "completedAt": self.completed_at,
    }

  def to_document(self) -> dict[str, Any]:
    return {
      "batchId": self.batch_id,
      "queueName": self.queue_name,
      "totalItems": self.total_items,
      "completedItems": self.completed_items,
      "failedItems": self.failed_items,
      "processingItems": self.processing_items,
      "status": self.status,
      "webhookUrl": self.webhook_url,
      "metadata": self.metadata,
      "createdAt": self.created_at,
      "updatedAt": self.updated_at,
      "completedAt": self.completed_at,
    }

  @classmethod
  def from_document(cls, data: dict[str, Any]) -> BatchRecord:
    return cls(
      batch_id=data["batchId"],
      queue_name=data.get("queueName", ""),
      total_items=int(data.get("totalItems") or 0),
      completed_items=int(data.get("completedItems") or 0),
      failed_items=int(data.get("failedItems") or 0),
      processing_items=int(data.get("processingItems") or 0),
      status=data.get("status", "pending"),
      webhook_url=data.get("webhookUrl"),
      metadata=dict(data.get("metadata") or {}),
      created_at=int(data.get("createdAt") or 0),
      updated_at=int(data.get("updatedAt") or 0),
      completed_at=data.get("completedAt"),
    )
