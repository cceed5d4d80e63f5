"""Per-model fixed-window rate limiting shared across worker instances."""

from __future__ import annotations

import logging

from vizqueue.config import ModelRateLimit
from vizqueue.storage.queue_repo import QueueRepository
from vizqueue.utils.store_retry import execute_with_retry

logger = logging.getLogger(__name__)


class RateLimiter:
  """Reserve request/token budget per model before calling a provider.

  Windows live in the store so every worker sees the same counters; models
  without configured limits are unbounded.
  """

  def __init__(self, repo: QueueRepository, limits: dict[str, ModelRateLimit], *, namespace: str) -> None:
    self._repo = repo
    self._limits = limits
    self._namespace = namespace

  def limit_for(self, model: str) -> ModelRateLimit | None:
    return self._limits.get(model)

  async def acquire(self, model: str, token_costs: list[int]) -> int:
    """Return how many of the requests (in order) may run in the current window."""
    limit = self._limits.get(model)
    if limit is None or not token_costs:
      return len(token_costs)

    async def _consume() -> int:
      return await self._repo.consume_rate_window(f"{self._namespace}:{model}", limit=limit, token_costs=token_costs)

    granted = await execute_with_retry(operation_name=f"rate_window:{self._namespace}:{model}", func=_consume)
    if granted < len(token_costs):
      logger.info("Rate limit deferring %d/%d requests for %s", len(token_costs) - granted, len(token_costs), model)
    return granted
