"""Queue for entry types whose work is supplied by the caller."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from vizqueue.queue.base import Handler, HandlerOutcome, ProviderQueue
from vizqueue.queue.errors import TerminalProviderError
from vizqueue.queue.models import QueueEntry


class GenericQueue(ProviderQueue):
  """Free-form queue: entries of this type run the handler registered for their entryType.

  Entry types without a handler fail terminally so they are never left claimed.
  """

  def __init__(self, queue_type: str = "generic", *, handlers: Mapping[str, Handler] | None = None, **kwargs: Any) -> None:
    super().__init__(queue_type, handlers=handlers, **kwargs)
    if "failure" not in (handlers or {}):
      self.register_handler("failure", self._forced_failure)

  async def _forced_failure(self, entry: QueueEntry) -> HandlerOutcome:
    raise TerminalProviderError(f"Forced failure {entry.id}", provider=self.queue_type)
