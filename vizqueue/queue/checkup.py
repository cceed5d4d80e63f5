"""Find entries stuck in processing and optionally fail them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from vizqueue.queue.base import ProviderQueue
from vizqueue.queue.models import EntryQuery, EntryUpdate, QueueEntry
from vizqueue.storage.queue_repo import QueueRepository
from vizqueue.utils.ids import iso_from_ms, now_ms

logger = logging.getLogger(__name__)


@dataclass
class CheckupReport:
  queue_type: str
  stuck_ids: list[str] = field(default_factory=list)
  marked_error: int = 0

  def to_dict(self) -> dict[str, Any]:
    return {"queueType": self.queue_type, "stuck": self.stuck_ids, "markedError": self.marked_error}


async def find_stuck_entries(repo: QueueRepository, queue_type: str, *, threshold_ms: int, now: int | None = None, limit: int = 2000) -> list[QueueEntry]:
  """Processing entries whose claim (or last update) is older than the threshold."""
  cutoff = (now if now is not None else now_ms()) - threshold_ms
  processing = await repo.get_entries(EntryQuery(type=queue_type, status="processing", limit=limit))
  return [entry for entry in processing if (entry.processing_started or entry.time_updated) < cutoff]


async def sweep_stuck_entries(queue: ProviderQueue, *, threshold_ms: int, mark_error: bool = False, now: int | None = None) -> CheckupReport:
  stamp = now if now is not None else now_ms()
  stuck = await find_stuck_entries(queue.repo, queue.queue_type, threshold_ms=threshold_ms, now=stamp, limit=queue.options.batch_limit)
  report = CheckupReport(queue_type=queue.queue_type, stuck_ids=[entry.id for entry in stuck])
  if not stuck:
    return report

  logger.warning("Checkup found %d stuck %s entries", len(stuck), queue.queue_type)
  if not mark_error:
    return report

  await queue.repo.update_entries(
    [EntryUpdate(id=entry.id, status="error", trace=f"Checkup at {iso_from_ms(stamp)}: stuck in processing since {iso_from_ms(entry.processing_started or entry.time_updated)}", result={"error": "Stuck in processing"}) for entry in stuck]
  )
  report.marked_error = len(stuck)

  failed_per_batch: dict[str, int] = {}
  for entry in stuck:
    if entry.batch_id:
      failed_per_batch[entry.batch_id] = failed_per_batch.get(entry.batch_id, 0) + 1
  for batch_id, count in sorted(failed_per_batch.items()):
    await queue.batches.update_batch_counts(batch_id, error_delta=count, processing_delta=-count)
  return report
