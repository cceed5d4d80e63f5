"""Processing loop behaviour: outcomes, requeue, batches, callbacks, offload and rate limits."""

from __future__ import annotations

import json

import httpx
import pytest

from vizqueue.config import ModelRateLimit
from vizqueue.providers.modal import ModalOutpaintClient
from vizqueue.providers.openai_llm import OpenAIChatClient
from vizqueue.providers.stability import StabilityClient
from vizqueue.queue.base import HandlerOutcome, QueueOptions
from vizqueue.queue.batches import BatchTracker
from vizqueue.queue.checkup import sweep_stuck_entries
from vizqueue.queue.dispatcher import LlmDispatcher
from vizqueue.queue.errors import ContentPolicyViolation, IdentityIncomplete, InvalidQueueParams, StoreContention, TerminalProviderError
from vizqueue.queue.generic import GenericQueue
from vizqueue.queue.image_queues import ModalQueue, StabilityQueue
from vizqueue.queue.llm_queues import LlmQueue
from vizqueue.queue.models import EntryQuery
from vizqueue.queue.rate_limit import RateLimiter
from vizqueue.queue.registry import QueueRegistry
from vizqueue.storage.memory_queue_repo import InMemoryQueueRepository
from vizqueue.utils.ids import now_ms

SCENE = {"sceneId": "S1", "chapter": 0, "scene_number": 2}


def _structure_entry(scene_number: int = 2) -> dict:
  params = {**SCENE, "scene_number": scene_number, "inputPath": "scenes/S1.webp", "outputPathWithoutExtension": f"styled/S1_{scene_number}", "prompt": "ink wash"}
  return {"type": "stability", "entryType": "structure", "params": params}


def _failure_entry() -> dict:
  return {"type": "stability", "entryType": "failure", "params": {**SCENE, "scene_number": 9}}


async def _get(repo, entry_id: str):
  found = await repo.get_entries(EntryQuery(id=entry_id))
  return found[0] if found else None


@pytest.fixture
def stability_queue(repo, batches, assets, fake_sleep) -> StabilityQueue:
  return StabilityQueue(client=StabilityClient(None, assets=assets, mock=True, sleep=fake_sleep), repo=repo, batches=batches, assets=assets)


@pytest.mark.anyio
async def test_stability_entry_completes_with_uploaded_asset(stability_queue, repo, assets) -> None:
  created = await stability_queue.add_to_queue([_structure_entry()])
  assert created == ["stability_structure_S1_0_2"]

  summary = await stability_queue.process_queue()

  assert summary.to_dict() == {"claimed": 1, "completed": 1, "failed": 0, "requeued": 0, "waiting": 0, "deferred": 0}
  entry = await _get(repo, "stability_structure_S1_0_2")
  assert entry.status == "complete"
  assert entry.trace.startswith("Completed at ")
  assert entry.result["outputPath"] == "styled/S1_2.webp"
  assert entry.result["cdnUrl"] == "https://cdn.test/styled/S1_2.webp"
  assert "styled/S1_2.webp" in assets.blobs


@pytest.mark.anyio
async def test_add_to_queue_is_idempotent(stability_queue) -> None:
  assert await stability_queue.add_to_queue([_structure_entry()]) == ["stability_structure_S1_0_2"]
  assert await stability_queue.add_to_queue([_structure_entry()]) == []


@pytest.mark.anyio
async def test_add_to_queue_rejects_foreign_type(stability_queue) -> None:
  with pytest.raises(ValueError):
    await stability_queue.add_to_queue([{"type": "dalle", "entryType": "scene", "params": {}}])


@pytest.mark.anyio
async def test_failure_requeues_once_then_errors(stability_queue, repo) -> None:
  await stability_queue.add_to_queue([_failure_entry()])

  summary = await stability_queue.process_queue()

  assert summary.requeued == 1
  assert summary.failed == 1
  original = await _get(repo, "stability_failure_S1_0_9")
  assert original.status == "error"
  assert original.trace.startswith("Retrying as stability_failure_S1_0_9_retry: ")
  assert original.result["retryId"] == "stability_failure_S1_0_9_retry"

  retry = await _get(repo, "stability_failure_S1_0_9_retry")
  assert retry.status == "error"
  assert retry.params["retry"] is True
  assert retry.retry_count == 1
  assert retry.trace.startswith("Error at ")
  assert await _get(repo, "stability_failure_S1_0_9_retry_retry") is None


@pytest.mark.anyio
async def test_batch_counts_follow_outcomes_through_requeue(stability_queue, repo, batches) -> None:
  record = await stability_queue.add_to_queue_batch([_structure_entry(), _failure_entry()], metadata={"sku": "sku1"})
  assert record.total_items == 2

  await stability_queue.process_queue()

  status = await batches.get_batch_status(record.batch_id)
  assert status["completedItems"] == 1
  assert status["failedItems"] == 1
  assert status["processingItems"] == 0
  assert status["status"] == "complete"
  retry = await _get(repo, "stability_failure_S1_0_9_retry")
  assert retry.batch_id == record.batch_id


@pytest.mark.anyio
async def test_batch_excludes_already_queued_entries(stability_queue) -> None:
  await stability_queue.add_to_queue([_structure_entry()])

  record = await stability_queue.add_to_queue_batch([_structure_entry(), _structure_entry(scene_number=3)])
  assert record.total_items == 1

  with pytest.raises(ValueError):
    await stability_queue.add_to_queue_batch([_structure_entry()])


@pytest.mark.anyio
async def test_content_policy_marks_entry_filtered(repo, batches) -> None:
  async def _moderated(entry):
    raise ContentPolicyViolation("HTTP 400: violated content policy", provider="generic", trace=("attempt 1 failed: violated",))

  queue = GenericQueue(handlers={"moderated": _moderated}, repo=repo, batches=batches, options=QueueOptions(requeue_on_failure=True))
  [entry_id] = await queue.add_to_queue([{"entryType": "moderated", "params": {}}])

  summary = await queue.process_queue()

  assert summary.failed == 1
  entry = await _get(repo, entry_id)
  assert entry.status == "error"
  assert entry.result["contentFiltered"] is True
  assert "attempt 1 failed: violated" in entry.result["error"]
  assert await _get(repo, f"{entry_id}_retry") is None


@pytest.mark.anyio
async def test_unhandled_errors_and_missing_handlers_fail_the_entry(repo, batches) -> None:
  async def _boom(entry):
    raise RuntimeError("boom")

  queue = GenericQueue(handlers={"boom": _boom}, repo=repo, batches=batches)
  [boom_id, unknown_id] = await queue.add_to_queue([{"entryType": "boom", "params": {}}, {"entryType": "unknown", "params": {}}])

  await queue.process_queue()

  boom = await _get(repo, boom_id)
  assert boom.status == "error"
  assert boom.result["error"] == "RuntimeError: boom"
  unknown = await _get(repo, unknown_id)
  assert unknown.result["error"] == "No handler for generic/unknown"


@pytest.mark.anyio
async def test_terminal_errors_without_requeue_flag_are_final(repo, batches) -> None:
  queue = GenericQueue(repo=repo, batches=batches, options=QueueOptions(requeue_on_failure=True))
  [entry_id] = await queue.add_to_queue([{"entryType": "failure", "params": {}}])

  summary = await queue.process_queue()

  assert summary.requeued == 0
  entry = await _get(repo, entry_id)
  assert entry.status == "error"
  assert entry.result["error"] == f"Forced failure {entry_id}"


@pytest.mark.anyio
async def test_post_processor_failure_keeps_entry_complete(repo, batches) -> None:
  seen: list[str] = []

  async def _ok(entry):
    return HandlerOutcome(result={"value": 1})

  async def _record(entry, result):
    seen.append(entry.id)

  async def _explode(entry, result):
    raise RuntimeError("index offline")

  queue = GenericQueue(handlers={"ok": _ok}, repo=repo, batches=batches)
  queue.add_post_processor(_record)
  queue.add_post_processor(_explode)
  [entry_id] = await queue.add_to_queue([{"entryType": "ok", "params": {}}])

  await queue.process_queue()

  entry = await _get(repo, entry_id)
  assert seen == [entry_id]
  assert entry.status == "complete"
  assert entry.result == {"value": 1}
  assert entry.trace == "Completed; post-processing failed: index offline"


@pytest.mark.anyio
async def test_modal_entry_waits_for_callback(repo, batches, assets, fake_sleep) -> None:
  submitted: list[dict] = []

  def _handler(request: httpx.Request) -> httpx.Response:
    submitted.append(json.loads(request.content))
    return httpx.Response(200, json={"accepted": True})

  client = ModalOutpaintClient(
    "https://modal.test/outpaint",
    "modal-key",
    assets=assets,
    callback_url="https://api.test/callbacks/modal",
    mock=False,
    sleep=fake_sleep,
    http_client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
  )
  queue = ModalQueue(client=client, repo=repo, batches=batches, assets=assets)
  entry = {"entryType": "outpaintTall", "params": {**SCENE, "inputPath": "scenes/S1.webp", "outputPathWithoutExtension": "outpainted/S1", "pixels": 256}}
  record = await queue.add_to_queue_batch([entry])
  entry_id = "modal_outpaintTall_S1_0_2"

  summary = await queue.process_queue()

  assert summary.waiting == 1
  assert submitted[0]["result_key"] == entry_id
  assert submitted[0]["top"] == 256 and submitted[0]["left"] == 0
  assert assets.signed == ["outpainted/S1.9.16.webp"]
  waiting = await _get(repo, entry_id)
  assert waiting.status == "processing"
  assert waiting.trace.startswith("Awaiting callback since ")
  assert (await batches.get_batch_status(record.batch_id))["processingItems"] == 1

  counts = await queue.complete_from_callback({entry_id: {"response": "done"}})
  assert counts == {"completed": 1, "failed": 0, "ignored": 0}
  done = await _get(repo, entry_id)
  assert done.status == "complete"
  assert done.result["outputPath"] == "outpainted/S1.9.16.webp"
  assert done.result["response"] == "done"
  assert (await batches.get_batch_status(record.batch_id))["status"] == "complete"

  repeat = await queue.complete_from_callback({entry_id: {"response": "again"}, "modal_unknown": {}})
  assert repeat == {"completed": 0, "failed": 0, "ignored": 2}


@pytest.mark.anyio
async def test_callback_error_marks_entry_failed(repo, batches, assets) -> None:
  queue = ModalQueue(client=ModalOutpaintClient(None, None, assets=assets, callback_url=None, mock=True), repo=repo, batches=batches, assets=assets)
  [entry_id] = await queue.add_to_queue([{"entryType": "outpaint", "params": {**SCENE, "inputPath": "in.webp", "outputPathWithoutExtension": "out/S1"}}])
  await queue.claim()

  counts = await queue.complete_from_callback({entry_id: {"error": "GPU out of memory"}})

  assert counts["failed"] == 1
  entry = await _get(repo, entry_id)
  assert entry.status == "error"
  assert entry.result["error"] == "GPU out of memory"


@pytest.mark.anyio
async def test_large_params_and_results_are_offloaded(repo, batches, assets) -> None:
  seen_params: list[dict] = []

  async def _echo(entry):
    seen_params.append(entry.params)
    return HandlerOutcome(result={"echo": entry.params["payload"]})

  queue = GenericQueue(handlers={"echo": _echo}, repo=repo, batches=batches, assets=assets, options=QueueOptions(offload_threshold_bytes=64))
  [entry_id] = await queue.add_to_queue([{"entryType": "echo", "params": {"payload": "x" * 200}}])

  stored = await _get(repo, entry_id)
  assert stored.params == {"retry": False}
  assert stored.params_gcs_path == f"queue/params/{entry_id}.json"

  await queue.process_queue()

  assert seen_params[0]["payload"] == "x" * 200
  done = await _get(repo, entry_id)
  assert done.result == {"offloaded": True}
  assert done.result_gcs_path == f"queue/results/{entry_id}.json"
  assert await queue.get_result(done) == {"echo": "x" * 200}


@pytest.mark.anyio
async def test_rate_limited_entries_are_deferred(repo, batches) -> None:
  limiter = RateLimiter(repo, {"gpt-4o": ModelRateLimit(max_requests=2, max_tokens=None, window_ms=60_000)}, namespace="llm")
  queue = LlmQueue("openai", client=OpenAIChatClient(None, mock=True), repo=repo, batches=batches, rate_limiter=limiter)
  await queue.add_to_queue([{"entryType": "summarize", "params": {"model": "gpt-4o", "prompt": f"chapter {index}", "referenceKey": f"r{index}"}} for index in range(3)])

  summary = await queue.process_queue()

  assert summary.completed == 2
  assert summary.deferred == 2
  deferred = await repo.get_entries(EntryQuery(type="openai", status="pending", limit=10))
  assert [entry.id for entry in deferred] == ["openai_gpt-4o_summarize_r2"]
  assert deferred[0].trace.startswith("Deferred by rate limit at ")


@pytest.mark.anyio
async def test_dispatcher_returns_completion(repo, batches, fake_sleep) -> None:
  queue = LlmQueue("openai", client=OpenAIChatClient(None, mock=True), repo=repo, batches=batches)
  dispatcher = LlmDispatcher(QueueRegistry({"openai": queue}, repo=repo, batches=batches), sleep=fake_sleep)

  result = await dispatcher.dispatch("openai", "gpt-4o", "summarize", "Tell me a story", reference_key="story-1")

  assert result == {"content": "[mock openai:gpt-4o]", "model": "gpt-4o"}
  assert (await _get(repo, "openai_gpt-4o_summarize_story-1")).status == "complete"


@pytest.mark.anyio
async def test_dispatcher_raises_on_failed_entry(repo, batches, fake_sleep) -> None:
  queue = LlmQueue("openai", client=OpenAIChatClient(None, mock=True), repo=repo, batches=batches)
  dispatcher = LlmDispatcher(QueueRegistry({"openai": queue}, repo=repo, batches=batches), sleep=fake_sleep)

  with pytest.raises(TerminalProviderError, match="Forced failure"):
    await dispatcher.dispatch("openai", "gpt-4o", "failure", "anything", reference_key="forced")


class _ContendedBatchRepo(InMemoryQueueRepository):
  """Batch counter writes lose their transaction `failures` times, or always when None."""

  def __init__(self, failures: int | None) -> None:
    super().__init__()
    self.failures = failures

  async def apply_batch_deltas(self, batch_id, *, completed, failed, processing):
    if self.failures is None or self.failures > 0:
      if self.failures is not None:
        self.failures -= 1
      raise StoreContention(f"batch {batch_id} contended")
    return await super().apply_batch_deltas(batch_id, completed=completed, failed=failed, processing=processing)


class _FailingWriteRepo(InMemoryQueueRepository):
  """The next outcome write for each listed id fails."""

  def __init__(self, failing_ids: set[str]) -> None:
    super().__init__()
    self.failing_ids = failing_ids

  async def update_entries(self, updates):
    for update in updates:
      if update.id in self.failing_ids:
        self.failing_ids.discard(update.id)
        raise RuntimeError("store write failed")
    await super().update_entries(updates)


class _ContendedClaimRepo(InMemoryQueueRepository):
  """Claims lose their transaction `failures` times before going through."""

  def __init__(self, failures: int) -> None:
    super().__init__()
    self.failures = failures
    self.claim_calls = 0

  async def claim_pending(self, queue_type, *, status="pending", limit):
    self.claim_calls += 1
    if self.failures > 0:
      self.failures -= 1
      raise StoreContention(f"claim {queue_type} contended")
    return await super().claim_pending(queue_type, status=status, limit=limit)


def _counting_queue(repo, ran: list[str], options: QueueOptions | None = None) -> GenericQueue:
  async def _ok(entry):
    ran.append(entry.id)
    return HandlerOutcome(result={"ok": True})

  return GenericQueue(handlers={"ok": _ok}, repo=repo, options=options, batches=BatchTracker(repo, max_attempts=1, initial_backoff_ms=1, max_backoff_ms=1))


@pytest.mark.anyio
async def test_incomplete_identity_is_reported_before_params_checks(stability_queue) -> None:
  entry = _structure_entry()
  del entry["params"]["sceneId"]

  with pytest.raises(IdentityIncomplete) as excinfo:
    await stability_queue.add_to_queue([entry])

  assert excinfo.value.missing == ("sceneId",)


@pytest.mark.anyio
async def test_identity_only_entry_enqueues_once(stability_queue, repo) -> None:
  entry = {"type": "stability", "entryType": "structure", "params": {"sceneId": "S1", "chapter": 0, "scene_number": 2, "retry": False}}

  assert await stability_queue.add_to_queue([entry]) == ["stability_structure_S1_0_2"]
  assert await stability_queue.add_to_queue([entry]) == []

  stored = await repo.get_entries(EntryQuery(type="stability", limit=10))
  assert [item.id for item in stored] == ["stability_structure_S1_0_2"]


@pytest.mark.anyio
async def test_identity_only_entry_fails_when_its_handler_runs(stability_queue, repo) -> None:
  await stability_queue.add_to_queue([{"entryType": "structure", "params": SCENE}])

  summary = await stability_queue.process_queue()

  assert summary.failed == 1
  assert summary.requeued == 0
  entry = await _get(repo, "stability_structure_S1_0_2")
  assert entry.status == "error"
  assert entry.result["error"].startswith("Invalid params for stability/structure")
  assert await _get(repo, "stability_structure_S1_0_2_retry") is None


@pytest.mark.anyio
async def test_supplied_params_with_wrong_shape_are_rejected(stability_queue, repo) -> None:
  entry = _structure_entry()
  entry["params"]["controlStrength"] = 5

  with pytest.raises(InvalidQueueParams):
    await stability_queue.add_to_queue([entry])
  assert await repo.get_entries(EntryQuery(type="stability", limit=10)) == []


@pytest.mark.anyio
async def test_claimed_entries_run_when_claim_counters_are_contended() -> None:
  repo = _ContendedBatchRepo(failures=0)
  ran: list[str] = []
  queue = _counting_queue(repo, ran)
  record = await queue.add_to_queue_batch([{"entryType": "ok", "params": {}}])
  repo.failures = 1

  summary = await queue.process_queue()

  assert summary.completed == 1
  assert len(ran) == 1
  assert (await _get(repo, ran[0])).status == "complete"
  status = await queue.batches.get_batch_status(record.batch_id)
  assert (status["completedItems"], status["processingItems"], status["status"]) == (1, 0, "complete")


@pytest.mark.anyio
async def test_persistent_counter_contention_is_raised_after_entries_run() -> None:
  repo = _ContendedBatchRepo(failures=0)
  ran: list[str] = []
  queue = _counting_queue(repo, ran)
  await queue.add_to_queue_batch([{"entryType": "ok", "params": {}}])
  repo.failures = None

  with pytest.raises(StoreContention):
    await queue.process_queue()

  assert len(ran) == 1
  assert (await _get(repo, ran[0])).status == "complete"


@pytest.mark.anyio
async def test_failed_outcome_write_keeps_sibling_batch_counts() -> None:
  repo = _FailingWriteRepo(set())
  ran: list[str] = []
  queue = _counting_queue(repo, ran)
  record = await queue.add_to_queue_batch([{"entryType": "ok", "params": {"n": 1}}, {"entryType": "ok", "params": {"n": 2}}])
  [first, second] = [entry.id for entry in await repo.get_entries(EntryQuery(batch_id=record.batch_id))]
  repo.failing_ids = {second}

  with pytest.raises(RuntimeError, match="store write failed"):
    await queue.process_queue()

  assert (await _get(repo, first)).status == "complete"
  assert (await _get(repo, second)).status == "processing"
  status = await queue.batches.get_batch_status(record.batch_id)
  assert (status["completedItems"], status["processingItems"], status["status"]) == (1, 1, "processing")

  report = await sweep_stuck_entries(queue, threshold_ms=0, mark_error=True, now=now_ms() + 1000)

  assert report.stuck_ids == [second]
  status = await queue.batches.get_batch_status(record.batch_id)
  assert (status["completedItems"], status["failedItems"], status["processingItems"], status["status"]) == (1, 1, 0, "complete")


@pytest.mark.anyio
async def test_claim_contention_is_retried_within_the_round_limit() -> None:
  repo = _ContendedClaimRepo(failures=1)
  ran: list[str] = []
  queue = _counting_queue(repo, ran, QueueOptions(claim_max_attempts=1, contention_round_limit=2))
  await queue.add_to_queue([{"entryType": "ok", "params": {}}])

  summary = await queue.process_queue()

  assert summary.completed == 1
  assert len(ran) == 1


@pytest.mark.anyio
async def test_claim_contention_past_the_round_limit_is_raised() -> None:
  repo = _ContendedClaimRepo(failures=5)
  ran: list[str] = []
  queue = _counting_queue(repo, ran, QueueOptions(claim_max_attempts=1, contention_round_limit=2))
  [entry_id] = await queue.add_to_queue([{"entryType": "ok", "params": {}}])

  with pytest.raises(StoreContention):
    await queue.process_queue()

  assert repo.claim_calls == 2
  assert ran == []
  assert (await _get(repo, entry_id)).status == "pending"
