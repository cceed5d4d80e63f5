"""Submit-then-poll helper for providers that run jobs asynchronously."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from vizqueue.queue.errors import TerminalProviderError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollingConfig:
  """Initial wait, fixed interval and hard attempt cap for a polling loop."""

  initial_wait_ms: int = 5000
  interval_ms: int = 1000
  max_attempts: int = 60


@dataclass(frozen=True)
class PollResult(Generic[T]):
  """One poll observation: done with a value, or still running."""

  done: bool
  value: T | None = None

  @classmethod
  def pending(cls) -> PollResult[T]:
    return cls(done=False)

  @classmethod
  def finished(cls, value: T) -> PollResult[T]:
    return cls(done=True, value=value)


async def poll_until_done(operation_name: str, check: Callable[[int], Awaitable[PollResult[T]]], *, config: PollingConfig, provider: str | None = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
  """Call `check(attempt)` until it reports done; exceeding max_attempts is a terminal timeout.

  `check` raises its own terminal errors for failed or empty remote results.
  """
  if config.initial_wait_ms > 0:
    await sleep(config.initial_wait_ms / 1000)

  for attempt in range(1, config.max_attempts + 1):
    observation = await check(attempt)
    if observation.done:
      logger.info("Polling finished: operation=%s attempt=%d", operation_name, attempt)
      return observation.value  # type: ignore[return-value]
    if attempt < config.max_attempts:
      await sleep(config.interval_ms / 1000)

  timeout_seconds = (config.initial_wait_ms + config.interval_ms * (config.max_attempts - 1)) / 1000
  raise TerminalProviderError(f"Polling timed out after {config.max_attempts} attempts ({timeout_seconds:g}s)", provider=provider, requeue=True)
