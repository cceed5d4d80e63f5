"""Build the provider queues from settings and resolve them by name."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator, Mapping

import httpx

from vizqueue.config import Settings
from vizqueue.providers.dalle import DalleClient
from vizqueue.providers.gemini import GeminiClient
from vizqueue.providers.modal import ModalOutpaintClient
from vizqueue.providers.openai_llm import OpenAIChatClient
from vizqueue.providers.polling import PollingConfig
from vizqueue.providers.retry import RetryPolicy, Sleep
from vizqueue.providers.stability import StabilityClient
from vizqueue.providers.wavespeed import WavespeedClient
from vizqueue.queue.base import Handler, Launcher, ProviderQueue, QueueOptions
from vizqueue.queue.batches import BatchTracker
from vizqueue.queue.errors import UnknownQueueType
from vizqueue.queue.generic import GenericQueue
from vizqueue.queue.image_queues import DalleQueue, ModalQueue, StabilityQueue, WavespeedQueue
from vizqueue.queue.llm_queues import LlmQueue
from vizqueue.queue.rate_limit import RateLimiter
from vizqueue.storage.blob_store import AssetStore
from vizqueue.storage.queue_repo import QueueRepository

logger = logging.getLogger(__name__)


class QueueRegistry:
  """Named provider queues sharing one repository and batch tracker."""

  def __init__(self, queues: Mapping[str, ProviderQueue] | None = None, *, repo: QueueRepository | None = None, batches: BatchTracker | None = None) -> None:
    self._queues: dict[str, ProviderQueue] = dict(queues or {})
    self.repo = repo
    self.batches = batches

  def register(self, queue: ProviderQueue) -> None:
    self._queues[queue.queue_type] = queue

  def get(self, queue_name: str) -> ProviderQueue | None:
    return self._queues.get(queue_name)

  def resolve(self, queue_name: str) -> ProviderQueue:
    queue = self._queues.get(queue_name)
    if queue is None:
      raise UnknownQueueType(queue_name)
    return queue

  def names(self) -> list[str]:
    return sorted(self._queues)

  def __contains__(self, queue_name: object) -> bool:
    return queue_name in self._queues

  def __iter__(self) -> Iterator[ProviderQueue]:
    return iter(self._queues.values())


def modal_callback_url(settings: Settings) -> str | None:
  if not settings.callback_base_url:
    return None
  return f"{settings.callback_base_url.rstrip('/')}/callbacks/modal"


def build_queue_registry(
  settings: Settings,
  *,
  repo: QueueRepository,
  assets: AssetStore,
  launcher: Launcher | None = None,
  generic_handlers: Mapping[str, Handler] | None = None,
  http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
  sleep: Sleep = asyncio.sleep,
) -> QueueRegistry:
  """Wire every provider queue with the mock switches and tuning from settings."""
  batches = BatchTracker(
    repo,
    max_attempts=settings.batch_update_max_attempts,
    initial_backoff_ms=settings.batch_update_initial_backoff_ms,
    max_backoff_ms=settings.batch_update_max_backoff_ms,
  )
  options = QueueOptions(
    batch_limit=settings.queue_batch_limit,
    claim_max_attempts=settings.queue_claim_max_attempts,
    contention_round_limit=settings.queue_contention_round_limit,
    offload_threshold_bytes=settings.queue_offload_threshold_bytes,
  )
  policy = RetryPolicy(backoff_seconds=settings.provider_backoff_seconds)
  rate_limiter = RateLimiter(repo, settings.model_rate_limits, namespace="llm")
  shared = {"repo": repo, "batches": batches, "assets": assets, "launcher": launcher}
  # Only pass a factory through when one was supplied so each client keeps its own timeout default.
  http = {"http_client_factory": http_client_factory} if http_client_factory else {}

  registry = QueueRegistry(repo=repo, batches=batches)
  registry.register(LlmQueue("openai", client=OpenAIChatClient(settings.openai_api_key, mock=settings.mock_llm, policy=policy, sleep=sleep), options=options, rate_limiter=rate_limiter, **shared))
  registry.register(LlmQueue("gemini", client=GeminiClient(settings.gemini_api_key, mock=settings.mock_llm, policy=policy, sleep=sleep), options=options, rate_limiter=rate_limiter, **shared))
  registry.register(StabilityQueue(client=StabilityClient(settings.stability_api_key, assets=assets, mock=settings.mock_images, policy=policy, sleep=sleep, **http), options=options, **shared))
  registry.register(DalleQueue(client=DalleClient(settings.openai_api_key, assets=assets, mock=settings.mock_images, policy=policy, sleep=sleep), options=options, **shared))
  registry.register(
    ModalQueue(
      client=ModalOutpaintClient(
        settings.modal_outpaint_endpoint,
        settings.modal_api_key,
        assets=assets,
        callback_url=modal_callback_url(settings),
        steps=settings.modal_outpaint_steps,
        mock=settings.mock_images,
        policy=policy,
        sleep=sleep,
        **http,
      ),
      options=options,
      **shared,
    )
  )
  polling = PollingConfig(initial_wait_ms=settings.wavespeed_initial_wait_ms, interval_ms=settings.wavespeed_poll_interval_ms, max_attempts=settings.wavespeed_max_attempts)
  registry.register(WavespeedQueue(client=WavespeedClient(settings.wavespeed_api_key, assets=assets, polling=polling, mock=settings.mock_images, policy=policy, sleep=sleep, **http), options=options, **shared))
  registry.register(GenericQueue("generic", handlers=generic_handlers, options=options, **shared))
  logger.info("Queue registry ready: %s", ", ".join(registry.names()))
  return registry
