"""Text-generation queues backed by OpenAI and Gemini."""

from __future__ import annotations

import logging
from typing import Any

from vizqueue.providers.base import LlmClient
from vizqueue.queue.base import Handler, HandlerOutcome, ProviderQueue
from vizqueue.queue.errors import TerminalProviderError
from vizqueue.queue.models import QueueEntry
from vizqueue.queue.params import LlmParams, parse_params

logger = logging.getLogger(__name__)


async def _forced_failure(entry: QueueEntry) -> HandlerOutcome:
  raise TerminalProviderError(f"Forced failure {entry.id}", provider=entry.type)


class LlmQueue(ProviderQueue):
  """Every entryType is a prompt for the same client; entryType only names the caller's purpose."""

  def __init__(self, queue_type: str, *, client: LlmClient, **kwargs: Any) -> None:
    super().__init__(queue_type, **kwargs)
    self._client = client
    self.register_handler("failure", _forced_failure)

  @property
  def client(self) -> LlmClient:
    return self._client

  def handler_for(self, entry_type: str) -> Handler | None:
    return super().handler_for(entry_type) or self._complete

  def token_cost(self, entry: QueueEntry) -> int:
    if entry.params_gcs_path:
      return 1
    return LlmParams.model_validate(entry.params).estimated_tokens()

  async def _complete(self, entry: QueueEntry) -> HandlerOutcome:
    params = parse_params(entry.type, entry.entry_type, entry.params)
    response = await self._client.complete(params)
    logger.info("%s completion for %s (%s chars)", self.queue_type, entry.id, len(response.content))
    return HandlerOutcome(result=response.to_result())
