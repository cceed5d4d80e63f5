"""Request/response facade over the LLM queues."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from vizqueue.providers.retry import Sleep
from vizqueue.queue.base import build_entries
from vizqueue.queue.errors import TerminalProviderError
from vizqueue.queue.models import EntryQuery
from vizqueue.queue.registry import QueueRegistry

logger = logging.getLogger(__name__)


class LlmDispatcher:
  """Enqueue one prompt, launch the queue and wait for that entry to resolve."""

  def __init__(self, registry: QueueRegistry, *, poll_interval_ms: int = 1000, max_wait_ms: int = 300000, sleep: Sleep = asyncio.sleep) -> None:
    self._registry = registry
    self._poll_interval_ms = poll_interval_ms
    self._max_wait_ms = max_wait_ms
    self._sleep = sleep

  async def dispatch(
    self,
    queue_name: str,
    model: str,
    entry_type: str,
    prompt: str | None = None,
    *,
    messages: list[dict[str, str]] | None = None,
    response_format: str = "text",
    reference_key: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
  ) -> dict[str, Any]:
    queue = self._registry.resolve(queue_name)
    params: dict[str, Any] = {"model": model, "prompt": prompt, "messages": messages, "responseFormat": response_format, "referenceKey": reference_key, "temperature": temperature, "maxTokens": max_tokens}
    raw = {"entryType": entry_type, "params": {key: value for key, value in params.items() if value is not None}}

    # Derive the id up front so a prompt that is already queued is awaited rather than duplicated.
    entry_id = build_entries([raw], default_type=queue_name)[0].id
    await queue.add_to_queue([{**raw, "id": entry_id}])
    await queue.launch()
    logger.info("Dispatched %s via %s; waiting for completion", entry_id, queue_name)

    deadline = time.monotonic() + self._max_wait_ms / 1000
    while True:
      found = await queue.repo.get_entries(EntryQuery(id=entry_id))
      if not found:
        raise LookupError(f"Queue entry {entry_id} disappeared while waiting")
      entry = found[0]
      if entry.status == "complete":
        return await queue.get_result(entry) or {}
      if entry.status == "error":
        error = (entry.result or {}).get("error") or entry.trace
        raise TerminalProviderError(str(error), provider=queue_name)
      if time.monotonic() >= deadline:
        raise TimeoutError(f"Entry {entry_id} did not resolve within {self._max_wait_ms}ms (status {entry.status})")
      await self._sleep(self._poll_interval_ms / 1000)
