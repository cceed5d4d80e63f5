"""Queue store semantics against the in-memory repository."""

from __future__ import annotations

import asyncio

import pytest

from vizqueue.queue.base import build_entries
from vizqueue.queue.errors import StoreContention
from vizqueue.queue.generic import GenericQueue
from vizqueue.queue.models import EntryQuery, EntryUpdate, QueueEntry


def _entry(entry_id: str, *, queue_type: str = "generic", status: str = "pending", time_requested: int = 1, params: dict | None = None, batch_id: str | None = None) -> QueueEntry:
  return QueueEntry(id=entry_id, type=queue_type, entry_type="task", params=params or {}, status=status, time_requested=time_requested, time_updated=time_requested, batch_id=batch_id)


@pytest.mark.anyio
async def test_add_entries_skips_existing_ids(repo) -> None:
  assert await repo.add_entries([_entry("a"), _entry("b")]) == ["a", "b"]
  await repo.update_entries([EntryUpdate(id="a", status="complete", trace="done")])

  created = await repo.add_entries([_entry("a"), _entry("c")])

  assert created == ["c"]
  stored = await repo.get_entries(EntryQuery(id="a"))
  assert stored[0].status == "complete"
  assert stored[0].trace == "done"


@pytest.mark.anyio
async def test_get_entries_strategy_priority(repo) -> None:
  await repo.add_entries([_entry("a", params={"sceneId": "S1"}, batch_id="batch_1"), _entry("b", params={"sceneId": "S1"}), _entry("c", queue_type="other")])

  by_id = await repo.get_entries(EntryQuery(id="c", batch_id="batch_1", type="generic"))
  assert [entry.id for entry in by_id] == ["c"]

  by_batch = await repo.get_entries(EntryQuery(batch_id="batch_1", params_key="sceneId", params_value="S1"))
  assert [entry.id for entry in by_batch] == ["a"]

  by_params = await repo.get_entries(EntryQuery(params_key="sceneId", params_value="S1", type="other"))
  assert sorted(entry.id for entry in by_params) == ["a", "b"]

  assert await repo.get_entries(EntryQuery()) == []


@pytest.mark.anyio
async def test_params_lookup_matches_chapter_zero(repo) -> None:
  await repo.add_entries([_entry("zero", params={"chapter": 0}), _entry("one", params={"chapter": 1})])
  found = await repo.get_entries(EntryQuery(params_key="chapter", params_value=0))
  assert [entry.id for entry in found] == ["zero"]


@pytest.mark.anyio
async def test_type_scan_orders_filters_and_limits(repo) -> None:
  await repo.add_entries([_entry("late", time_requested=30), _entry("early", time_requested=10), _entry("mid", time_requested=20), _entry("done", time_requested=5, status="complete")])

  pending = await repo.get_entries(EntryQuery(type="generic", status="pending", limit=2))
  assert [entry.id for entry in pending] == ["early", "mid"]

  recent = await repo.get_entries(EntryQuery(type="generic", time_requested_after=15, limit=10))
  assert [entry.id for entry in recent] == ["mid", "late"]


@pytest.mark.anyio
async def test_update_missing_entry_raises_key_error(repo) -> None:
  with pytest.raises(KeyError):
    await repo.update_entries([EntryUpdate(id="ghost", status="error")])


@pytest.mark.anyio
async def test_delete_and_nuke(repo) -> None:
  await repo.add_entries([_entry("a"), _entry("b"), _entry("c")])
  assert await repo.delete_entries(["a", "missing"]) == 1
  assert await repo.nuke() == 2
  assert await repo.get_entries(EntryQuery(type="generic", limit=10)) == []


@pytest.mark.anyio
async def test_claim_marks_oldest_pending_processing(repo) -> None:
  await repo.add_entries([_entry("b", time_requested=2), _entry("a", time_requested=1), _entry("c", time_requested=3)])

  claimed = await repo.claim_pending("generic", limit=2)

  assert [entry.id for entry in claimed] == ["a", "b"]
  assert all(entry.status == "processing" and entry.processing_started for entry in claimed)
  remaining = await repo.get_entries(EntryQuery(type="generic", status="pending", limit=10))
  assert [entry.id for entry in remaining] == ["c"]


@pytest.mark.anyio
async def test_concurrent_raw_claims_conflict(repo) -> None:
  await repo.add_entries([_entry("a"), _entry("b")])
  results = await asyncio.gather(repo.claim_pending("generic", limit=10), repo.claim_pending("generic", limit=10), return_exceptions=True)
  assert sum(isinstance(result, StoreContention) for result in results) == 1


@pytest.mark.anyio
async def test_concurrent_queue_claims_never_overlap(repo, batches) -> None:
  await repo.add_entries([_entry(f"e{index}", time_requested=index) for index in range(10)])
  first = GenericQueue(repo=repo, batches=batches)
  second = GenericQueue(repo=repo, batches=batches)

  claimed_a, claimed_b = await asyncio.gather(first.claim(), second.claim())

  ids_a = {entry.id for entry in claimed_a}
  ids_b = {entry.id for entry in claimed_b}
  assert ids_a.isdisjoint(ids_b)
  assert ids_a | ids_b == {f"e{index}" for index in range(10)}


def test_build_entries_sets_pending_trace_and_dedups() -> None:
  raw = [
    {"type": "stability", "entryType": "structure", "params": {"sceneId": "S1", "chapter": 0, "scene_number": 2, "inputPath": "in.webp", "outputPathWithoutExtension": "out", "prompt": "first"}},
    {"type": "stability", "entryType": "structure", "params": {"sceneId": "S1", "chapter": 0, "scene_number": 2, "inputPath": "in.webp", "outputPathWithoutExtension": "out", "prompt": "second"}},
  ]
  entries = build_entries(raw, now=1_700_000_000_000)
  assert len(entries) == 1
  assert entries[0].id == "stability_structure_S1_0_2"
  assert entries[0].params["prompt"] == "first"
  assert entries[0].status == "pending"
  assert entries[0].trace == "Added to queue at 2023-11-14T22:13:20Z"
