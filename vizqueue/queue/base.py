"""Provider queue: enqueue, claim, dispatch to handlers and record outcomes."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from vizqueue.queue.batches import BatchTracker
from vizqueue.queue.errors import ContentPolicyViolation, InvalidQueueParams, ProviderError, StoreContention, TerminalProviderError
from vizqueue.queue.keys import deduplicate_entries, key_for, retry_key
from vizqueue.queue.models import BatchRecord, EntryQuery, EntryUpdate, QueueEntry
from vizqueue.queue.params import normalize_params
from vizqueue.queue.rate_limit import RateLimiter
from vizqueue.storage.blob_store import AssetStore
from vizqueue.storage.queue_repo import QueueRepository
from vizqueue.utils.ids import iso_from_ms, now_ms
from vizqueue.utils.store_retry import execute_with_retry

logger = logging.getLogger(__name__)

EntryOutcome = Literal["complete", "error", "retry", "waiting"]


@dataclass(frozen=True)
class HandlerOutcome:
  """What a handler produced; `wait_callback` keeps the entry processing until a callback lands."""

  result: dict[str, Any] | None = None
  wait_callback: bool = False


Handler = Callable[[QueueEntry], Awaitable[HandlerOutcome]]
PostProcessor = Callable[[QueueEntry, dict[str, Any]], Awaitable[None]]
Launcher = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class QueueOptions:
  batch_limit: int = 2000
  claim_max_attempts: int = 3
  contention_round_limit: int = 3
  requeue_on_failure: bool = False
  offload_threshold_bytes: int | None = None
  concurrency: int = 8


@dataclass
class ProcessSummary:
  claimed: int = 0
  completed: int = 0
  failed: int = 0
  requeued: int = 0
  waiting: int = 0
  deferred: int = 0

  def record(self, outcome: EntryOutcome) -> None:
    if outcome == "complete":
      self.completed += 1
    elif outcome == "error":
      self.failed += 1
    elif outcome == "retry":
      self.requeued += 1
    else:
      self.waiting += 1

  def merge(self, other: ProcessSummary) -> None:
    for name in ("claimed", "completed", "failed", "requeued", "waiting", "deferred"):
      setattr(self, name, getattr(self, name) + getattr(other, name))

  def to_dict(self) -> dict[str, int]:
    return {"claimed": self.claimed, "completed": self.completed, "failed": self.failed, "requeued": self.requeued, "waiting": self.waiting, "deferred": self.deferred}


@dataclass
class _BatchDeltas:
  """Per-batch counter deltas accumulated during one processing round."""

  completed: Counter = field(default_factory=Counter)
  failed: Counter = field(default_factory=Counter)
  processing: Counter = field(default_factory=Counter)

  def add(self, batch_id: str | None, *, completed: int = 0, failed: int = 0, processing: int = 0) -> None:
    if not batch_id:
      return
    self.completed[batch_id] += completed
    self.failed[batch_id] += failed
    self.processing[batch_id] += processing

  def for_outcome(self, entry: QueueEntry, outcome: EntryOutcome) -> None:
    if outcome == "complete":
      self.add(entry.batch_id, completed=1, processing=-1)
    elif outcome == "error":
      self.add(entry.batch_id, failed=1, processing=-1)
    elif outcome == "retry":
      # The _retry copy carries the batchId and is counted when it resolves.
      self.add(entry.batch_id, processing=-1)

  def batch_ids(self) -> set[str]:
    return set(self.completed) | set(self.failed) | set(self.processing)


def build_entries(raw_entries: Iterable[Mapping[str, Any]], *, default_type: str | None = None, batch_id: str | None = None, now: int | None = None) -> list[QueueEntry]:
  """Derive ids, check params and drop in-submission duplicates (first wins).

  The id comes from the raw identity first, so an incomplete identity is reported
  as IdentityIncomplete before any params check runs.
  """
  stamp = now if now is not None else now_ms()
  prepared: list[dict[str, Any]] = []
  for raw in raw_entries:
    queue_type = raw.get("type") or default_type
    entry_type = raw.get("entryType")
    if not queue_type or not entry_type:
      raise ValueError("Queue entries need a type and an entryType.")
    raw_params = dict(raw.get("params") or {})
    entry_id = raw.get("id") or key_for(queue_type, entry_type, raw_params)
    params = normalize_params(queue_type, entry_type, raw_params)
    prepared.append({"id": entry_id, "type": queue_type, "entryType": entry_type, "params": params, "timeRequested": raw.get("timeRequested") or stamp})

  return [
    QueueEntry(id=item["id"], type=item["type"], entry_type=item["entryType"], params=item["params"], status="pending", trace=f"Added to queue at {iso_from_ms(stamp)}", time_requested=item["timeRequested"], time_updated=stamp, batch_id=batch_id)
    for item in deduplicate_entries(prepared)
  ]


async def offload_params(entries: list[QueueEntry], *, assets: AssetStore | None, threshold_bytes: int | None) -> None:
  """Move oversized params to object storage, leaving the retry flag inline."""
  if assets is None or not threshold_bytes:
    return
  for entry in entries:
    if len(json.dumps(entry.params).encode("utf-8")) <= threshold_bytes:
      continue
    path = f"queue/params/{entry.id}.json"
    await assets.write_json(path, entry.params)
    entry.params = {"retry": bool(entry.params.get("retry"))}
    entry.params_gcs_path = path
    logger.info("Offloaded params for %s to %s", entry.id, path)


async def enqueue_entries(repo: QueueRepository, raw_entries: Iterable[Mapping[str, Any]], *, default_type: str | None = None, assets: AssetStore | None = None, offload_threshold_bytes: int | None = None) -> list[str]:
  """Create entries that are not already queued; returns the ids actually created."""
  entries = build_entries(raw_entries, default_type=default_type)
  await offload_params(entries, assets=assets, threshold_bytes=offload_threshold_bytes)
  created = await repo.add_entries(entries)
  if len(created) < len(entries):
    logger.info("Skipped %d already-queued entries", len(entries) - len(created))
  return created


class ProviderQueue:
  """Processing loop for one provider type.

  Handlers are keyed by entryType and receive entries with hydrated params.
  """

  def __init__(self, queue_type: str, *, repo: QueueRepository, batches: BatchTracker, handlers: Mapping[str, Handler] | None = None, options: QueueOptions | None = None, assets: AssetStore | None = None, rate_limiter: RateLimiter | None = None, launcher: Launcher | None = None) -> None:
    self.queue_type = queue_type
    self._repo = repo
    self._batches = batches
    self._handlers: dict[str, Handler] = dict(handlers or {})
    self.options = options or QueueOptions()
    self._assets = assets
    self._rate_limiter = rate_limiter
    self._launcher = launcher
    self._post_processors: list[PostProcessor] = []

  @property
  def repo(self) -> QueueRepository:
    return self._repo

  @property
  def batches(self) -> BatchTracker:
    return self._batches

  @property
  def entry_types(self) -> list[str]:
    return sorted(self._handlers)

  def register_handler(self, entry_type: str, handler: Handler) -> None:
    self._handlers[entry_type] = handler

  def handler_for(self, entry_type: str) -> Handler | None:
    return self._handlers.get(entry_type)

  def add_post_processor(self, hook: PostProcessor) -> None:
    self._post_processors.append(hook)

  def token_cost(self, entry: QueueEntry) -> int:
    """Estimated tokens for rate limiting; queues with token budgets override this."""
    return 1

  def rate_limit_key(self, entry: QueueEntry) -> str | None:
    return entry.params.get("model")

  # Producers

  async def add_to_queue(self, entries: Iterable[Mapping[str, Any]]) -> list[str]:
    raw = list(entries)
    for item in raw:
      if item.get("type") and item["type"] != self.queue_type:
        raise ValueError(f"Entry type {item['type']!r} does not belong to the {self.queue_type} queue.")
    return await enqueue_entries(self._repo, raw, default_type=self.queue_type, assets=self._assets, offload_threshold_bytes=self.options.offload_threshold_bytes)

  async def add_to_queue_batch(self, entries: Iterable[Mapping[str, Any]], *, webhook_url: str | None = None, metadata: dict[str, Any] | None = None) -> BatchRecord:
    """Enqueue entries under a new batch; already-queued ids are excluded from the batch."""
    raw = list(entries)
    prepared = build_entries(raw, default_type=self.queue_type)
    existing = await self._existing_ids([entry.id for entry in prepared])
    fresh = [entry for entry in prepared if entry.id not in existing]
    if not fresh:
      raise ValueError("Every entry in the batch is already queued.")

    batch = await self._batches.create_batch(self.queue_type, len(fresh), webhook_url=webhook_url, metadata=metadata)
    for entry in fresh:
      entry.batch_id = batch.batch_id
    await offload_params(fresh, assets=self._assets, threshold_bytes=self.options.offload_threshold_bytes)
    created = await self._repo.add_entries(fresh)

    # Entries created by a concurrent producer in between never join this batch; count them resolved.
    lost = len(fresh) - len(created)
    if lost:
      logger.warning("Batch %s lost %d entries to concurrent producers", batch.batch_id, lost)
      await self._batches.update_batch_counts(batch.batch_id, completed_delta=lost)
    return batch

  async def wait_for_batch_completion(self, batch_id: str, *, max_wait_ms: int = 300000, poll_interval_ms: int = 1000) -> dict[str, Any]:
    return await self._batches.wait_for_batch_completion(batch_id, max_wait_ms=max_wait_ms, poll_interval_ms=poll_interval_ms)

  async def add_to_queue_batch_and_wait(self, entries: Iterable[Mapping[str, Any]], *, webhook_url: str | None = None, metadata: dict[str, Any] | None = None, max_wait_ms: int = 300000, poll_interval_ms: int = 1000) -> dict[str, Any]:
    batch = await self.add_to_queue_batch(entries, webhook_url=webhook_url, metadata=metadata)
    await self.launch()
    return await self.wait_for_batch_completion(batch.batch_id, max_wait_ms=max_wait_ms, poll_interval_ms=poll_interval_ms)

  async def launch(self) -> None:
    """Kick a processing run through the task dispatcher, or inline when none is configured."""
    if self._launcher is not None:
      await self._launcher(self.queue_type)
      return
    await self.process_queue()

  async def _existing_ids(self, ids: list[str]) -> set[str]:
    found: set[str] = set()
    for entry_id in ids:
      if await self._repo.get_entries(EntryQuery(id=entry_id)):
        found.add(entry_id)
    return found

  # Workers

  async def claim(self, limit: int | None = None) -> list[QueueEntry]:
    """Atomically claim the oldest pending entries; contention is retried as a whole."""
    size = limit or self.options.batch_limit

    async def _claim() -> list[QueueEntry]:
      return await self._repo.claim_pending(self.queue_type, status="pending", limit=size)

    entries = await execute_with_retry(operation_name=f"claim:{self.queue_type}", func=_claim, max_attempts=self.options.claim_max_attempts, initial_backoff_ms=50, max_backoff_ms=2000)
    if entries:
      logger.info("Claimed %d %s entries", len(entries), self.queue_type)
    return entries

  async def process_batch(self) -> ProcessSummary:
    """Claim one batch of work, run it and record every outcome."""
    return await self.run_claimed(await self.claim())

  async def run_claimed(self, entries: list[QueueEntry]) -> ProcessSummary:
    """Run entries that are already claimed and record every outcome.

    Once entries are claimed their handlers always run. Batch counters that could
    not be written at claim time are carried into the final flush, and a failed
    final flush or outcome write is raised after every resolved outcome is counted.
    """
    summary = ProcessSummary()
    if not entries:
      return summary
    summary.claimed = len(entries)

    carried = _BatchDeltas()
    claimed = _BatchDeltas()
    for entry in entries:
      claimed.add(entry.batch_id, processing=1)
    await self._flush_or_carry(claimed, carried)

    runnable, deferred = await self._apply_rate_limits(entries)
    if deferred:
      summary.deferred = len(deferred)
      await self._repo.update_entries([EntryUpdate(id=entry.id, status="pending", trace=f"Deferred by rate limit at {iso_from_ms(now_ms())}") for entry in deferred])
      # Released with the outcomes so a carried claim count is never clamped below zero first.
      for entry in deferred:
        carried.add(entry.batch_id, processing=-1)

    semaphore = asyncio.Semaphore(self.options.concurrency)

    async def _bounded(entry: QueueEntry) -> EntryOutcome:
      async with semaphore:
        return await self.run_entry(entry)

    outcomes = await asyncio.gather(*(_bounded(entry) for entry in runnable), return_exceptions=True)
    results = carried
    failures: list[BaseException] = []
    for entry, outcome in zip(runnable, outcomes):
      if isinstance(outcome, BaseException):
        # The entry stays processing in the store; the checkup sweep resolves it and its batch count.
        logger.error("Recording outcome for %s failed: %s", entry.id, outcome, exc_info=outcome)
        failures.append(outcome)
        continue
      summary.record(outcome)
      results.for_outcome(entry, outcome)
    await self._flush_deltas(results)
    logger.info("Processed %s batch: %s", self.queue_type, summary.to_dict())
    if failures:
      raise failures[0]
    return summary

  async def process_queue(self, *, max_rounds: int | None = None) -> ProcessSummary:
    """Process batches until nothing is claimable or only rate-limited work remains.

    Contention on the claim itself is retried up to `contention_round_limit` times;
    failures after entries are claimed are raised to the caller.
    """
    total = ProcessSummary()
    rounds = 0
    contention_failures = 0
    while max_rounds is None or rounds < max_rounds:
      try:
        entries = await self.claim()
      except StoreContention:
        contention_failures += 1
        if contention_failures >= self.options.contention_round_limit:
          raise
        logger.warning("Claim for %s hit contention (%d/%d); retrying", self.queue_type, contention_failures, self.options.contention_round_limit)
        continue
      summary = await self.run_claimed(entries)
      rounds += 1
      total.merge(summary)
      if summary.claimed == 0 or summary.claimed == summary.deferred:
        break
    return total

  async def _apply_rate_limits(self, entries: list[QueueEntry]) -> tuple[list[QueueEntry], list[QueueEntry]]:
    if self._rate_limiter is None:
      return entries, []
    grouped: dict[str | None, list[QueueEntry]] = defaultdict(list)
    for entry in entries:
      grouped[self.rate_limit_key(entry)].append(entry)

    runnable: list[QueueEntry] = []
    deferred: list[QueueEntry] = []
    for model, group in grouped.items():
      if model is None:
        runnable.extend(group)
        continue
      granted = await self._rate_limiter.acquire(model, [self.token_cost(entry) for entry in group])
      runnable.extend(group[:granted])
      deferred.extend(group[granted:])
    return runnable, deferred

  async def run_entry(self, entry: QueueEntry) -> EntryOutcome:
    """Run one claimed entry through its handler and persist the outcome."""
    handler = self.handler_for(entry.entry_type)
    if handler is None:
      await self._mark_error(entry, f"No handler for {self.queue_type}/{entry.entry_type}")
      return "error"

    try:
      work = await self._hydrate(entry)
      outcome = await handler(work)
    except ContentPolicyViolation as exc:
      logger.warning("Entry %s rejected by content policy", entry.id)
      await self._mark_error(entry, exc.diagnostic(), content_filtered=True)
      return "error"
    except TerminalProviderError as exc:
      if exc.requeue and self.options.requeue_on_failure and not entry.is_retry:
        await self._requeue(entry, exc)
        return "retry"
      await self._mark_error(entry, exc.diagnostic())
      return "error"
    except ProviderError as exc:
      await self._mark_error(entry, exc.diagnostic())
      return "error"
    except InvalidQueueParams as exc:
      # Fields left out at enqueue time are required once the handler parses them.
      await self._mark_error(entry, str(exc))
      return "error"
    except Exception as exc:
      # Worker boundary: record the failure on the entry instead of losing the claim.
      logger.error("Handler failed for %s: %s", entry.id, exc, exc_info=True)
      await self._mark_error(entry, f"{type(exc).__name__}: {exc}")
      return "error"

    if outcome.wait_callback:
      await self._repo.update_entries([EntryUpdate(id=entry.id, status="processing", trace=f"Awaiting callback since {iso_from_ms(now_ms())}", result=outcome.result)])
      return "waiting"

    await self.mark_complete(entry, outcome.result or {})
    return "complete"

  async def mark_complete(self, entry: QueueEntry, result: dict[str, Any]) -> None:
    stored, result_path = await self._store_result(entry, result)
    await self._repo.update_entries([EntryUpdate(id=entry.id, status="complete", trace=f"Completed at {iso_from_ms(now_ms())}", result=stored, result_gcs_path=result_path)])
    logger.info("Entry %s complete", entry.id)
    for hook in self._post_processors:
      try:
        await hook(entry, result)
      except Exception as exc:
        logger.error("Post-processing failed for %s: %s", entry.id, exc, exc_info=True)
        await self._note_post_processing_failure(entry, exc)

  async def _note_post_processing_failure(self, entry: QueueEntry, exc: Exception) -> None:
    # The entry is already complete; a lost trace note must not undo its outcome.
    try:
      await self._repo.update_entries([EntryUpdate(id=entry.id, status="complete", trace=f"Completed; post-processing failed: {exc}")])
    except Exception as write_exc:
      logger.error("Could not record post-processing failure on %s: %s", entry.id, write_exc, exc_info=True)

  async def _mark_error(self, entry: QueueEntry, diagnostic: str, *, content_filtered: bool = False, retry_id: str | None = None) -> None:
    result: dict[str, Any] = {"error": diagnostic}
    if content_filtered:
      result["contentFiltered"] = True
    if retry_id:
      result["retryId"] = retry_id
    trace = f"Retrying as {retry_id}: {diagnostic}" if retry_id else f"Error at {iso_from_ms(now_ms())}: {diagnostic}"
    await self._repo.update_entries([EntryUpdate(id=entry.id, status="error", trace=trace, result=result)])
    logger.info("Entry %s error (content_filtered=%s, retry=%s)", entry.id, content_filtered, retry_id)

  async def _requeue(self, entry: QueueEntry, exc: TerminalProviderError) -> str:
    """Create the single _retry copy of a failed entry, then close the original."""
    now = now_ms()
    retry_id = retry_key(entry.id)
    retry_entry = QueueEntry(
      id=retry_id,
      type=entry.type,
      entry_type=entry.entry_type,
      params={**entry.params, "retry": True},
      status="pending",
      trace=f"Retry of {entry.id} queued at {iso_from_ms(now)}",
      time_requested=now,
      time_updated=now,
      retry_count=(entry.retry_count or 0) + 1,
      batch_id=entry.batch_id,
      params_gcs_path=entry.params_gcs_path,
    )
    await self._repo.add_entries([retry_entry])
    await self._mark_error(entry, exc.diagnostic(), retry_id=retry_id)
    return retry_id

  async def complete_from_callback(self, results: Mapping[str, Mapping[str, Any]]) -> dict[str, int]:
    """Resolve entries that were waiting on an external callback; repeats are ignored."""
    counts = {"completed": 0, "failed": 0, "ignored": 0}
    deltas = _BatchDeltas()
    for entry_id, payload in results.items():
      found = await self._repo.get_entries(EntryQuery(id=entry_id))
      if not found or found[0].status != "processing":
        logger.info("Ignoring callback for %s (missing or already resolved)", entry_id)
        counts["ignored"] += 1
        continue
      entry = found[0]
      if payload.get("error"):
        await self._mark_error(entry, str(payload["error"]))
        deltas.for_outcome(entry, "error")
        counts["failed"] += 1
        continue
      await self.mark_complete(entry, {**(entry.result or {}), **payload})
      deltas.for_outcome(entry, "complete")
      counts["completed"] += 1
    await self._flush_deltas(deltas)
    return counts

  async def get_result(self, entry: QueueEntry) -> dict[str, Any] | None:
    """Return an entry's result, reading it back from storage when offloaded."""
    if entry.result_gcs_path and self._assets is not None:
      return await self._assets.read_json(entry.result_gcs_path)
    return entry.result

  async def _hydrate(self, entry: QueueEntry) -> QueueEntry:
    if not entry.params_gcs_path or self._assets is None:
      return entry
    params = await self._assets.read_json(entry.params_gcs_path)
    return replace(entry, params={**params, "retry": entry.params.get("retry", False)})

  async def _store_result(self, entry: QueueEntry, result: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    threshold = self.options.offload_threshold_bytes
    if self._assets is None or not threshold or len(json.dumps(result).encode("utf-8")) <= threshold:
      return result, None
    path = f"queue/results/{entry.id}.json"
    await self._assets.write_json(path, result)
    return {"offloaded": True}, path

  async def _flush_or_carry(self, deltas: _BatchDeltas, carried: _BatchDeltas) -> None:
    for batch_id in sorted(deltas.batch_ids()):
      try:
        await self._batches.update_batch_counts(batch_id, completed_delta=deltas.completed[batch_id], error_delta=deltas.failed[batch_id], processing_delta=deltas.processing[batch_id])
      except StoreContention as exc:
        logger.warning("Deferring counter update for batch %s to the end of the round: %s", batch_id, exc)
        carried.add(batch_id, completed=deltas.completed[batch_id], failed=deltas.failed[batch_id], processing=deltas.processing[batch_id])

  async def _flush_deltas(self, deltas: _BatchDeltas) -> None:
    for batch_id in sorted(deltas.batch_ids()):
      await self._batches.update_batch_counts(batch_id, completed_delta=deltas.completed[batch_id], error_delta=deltas.failed[batch_id], processing_delta=deltas.processing[batch_id])
