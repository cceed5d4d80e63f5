"""Image queues: Stability structure control, DALL-E, Modal outpainting and Wavespeed."""

from __future__ import annotations

from typing import Any

from vizqueue.providers.dalle import DalleClient
from vizqueue.providers.modal import ModalOutpaintClient
from vizqueue.providers.stability import StabilityClient
from vizqueue.providers.wavespeed import WavespeedClient
from vizqueue.queue.base import Handler, HandlerOutcome, ProviderQueue, QueueOptions
from vizqueue.queue.errors import TerminalProviderError
from vizqueue.queue.models import QueueEntry
from vizqueue.queue.params import parse_params

OUTPAINT_ENTRY_TYPES = ("outpaint", "outpaintTall", "outpaintWideAndTall")


async def _forced_failure(entry: QueueEntry) -> HandlerOutcome:
  # Image failures ask for a requeue so the _retry path can be exercised end to end.
  raise TerminalProviderError(f"Forced failure {entry.id}", provider=entry.type, requeue=True)


def _image_options(options: QueueOptions | None) -> QueueOptions:
  base = options or QueueOptions()
  return QueueOptions(batch_limit=base.batch_limit, claim_max_attempts=base.claim_max_attempts, contention_round_limit=base.contention_round_limit, requeue_on_failure=True, offload_threshold_bytes=base.offload_threshold_bytes, concurrency=base.concurrency)


class StabilityQueue(ProviderQueue):
  def __init__(self, *, client: StabilityClient, options: QueueOptions | None = None, **kwargs: Any) -> None:
    super().__init__("stability", options=_image_options(options), **kwargs)
    self._client = client
    self.register_handler("structure", self._structure)
    self.register_handler("failure", _forced_failure)

  async def _structure(self, entry: QueueEntry) -> HandlerOutcome:
    result = await self._client.style_structure(parse_params(entry.type, entry.entry_type, entry.params))
    return HandlerOutcome(result=result)


class DalleQueue(ProviderQueue):
  def __init__(self, *, client: DalleClient, options: QueueOptions | None = None, **kwargs: Any) -> None:
    super().__init__("dalle", options=_image_options(options), **kwargs)
    self._client = client
    self.register_handler("failure", _forced_failure)

  def handler_for(self, entry_type: str) -> Handler | None:
    # Any dalle entryType (scene, characterImage, locationImage...) is a plain generation.
    return super().handler_for(entry_type) or self._generate

  async def _generate(self, entry: QueueEntry) -> HandlerOutcome:
    return HandlerOutcome(result=await self._client.generate(parse_params(entry.type, entry.entry_type, entry.params)))


class ModalQueue(ProviderQueue):
  """Outpainting finishes out of band; entries wait in processing until the callback lands."""

  def __init__(self, *, client: ModalOutpaintClient, options: QueueOptions | None = None, **kwargs: Any) -> None:
    super().__init__("modal", options=_image_options(options), **kwargs)
    self._client = client
    for entry_type in OUTPAINT_ENTRY_TYPES:
      self.register_handler(entry_type, self._outpaint)
    self.register_handler("failure", _forced_failure)

  async def _outpaint(self, entry: QueueEntry) -> HandlerOutcome:
    submission = await self._client.submit(entry.id, entry.entry_type, parse_params(entry.type, entry.entry_type, entry.params))
    return HandlerOutcome(result=submission.to_result(), wait_callback=submission.awaiting_callback)


class WavespeedQueue(ProviderQueue):
  def __init__(self, *, client: WavespeedClient, options: QueueOptions | None = None, **kwargs: Any) -> None:
    super().__init__("wavespeed", options=_image_options(options), **kwargs)
    self._client = client
    self.register_handler("generate", self._generate)
    self.register_handler("failure", _forced_failure)

  async def _generate(self, entry: QueueEntry) -> HandlerOutcome:
    return HandlerOutcome(result=await self._client.generate(parse_params(entry.type, entry.entry_type, entry.params)))
