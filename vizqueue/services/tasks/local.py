from __future__ import annotations

import logging
from urllib.parse import urlparse

import httpx

from vizqueue.config import Settings

logger = logging.getLogger(__name__)


class LocalHttpEnqueuer:
  """Dispatches queue launches via local HTTP requests to simulate Cloud Tasks."""

  def __init__(self, settings: Settings) -> None:
    self.settings = settings

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Decide if we should route requests in-process via ASGITransport."""
    parsed = urlparse(base_url)
    hostname = (parsed.hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self, base_url: str) -> httpx.AsyncClient:
    """Build an httpx client for local task dispatch."""
    # Never trust environment proxy variables for internal task dispatch.
    if self._should_use_asgi_transport(base_url):
      from vizqueue.main import app

      transport = httpx.ASGITransport(app=app)
      return httpx.AsyncClient(transport=transport, base_url=base_url, trust_env=False)
    return httpx.AsyncClient(trust_env=False)

  def _task_headers(self) -> dict[str, str]:
    """Build task authentication headers for internal endpoints."""
    if not self.settings.task_secret:
      raise RuntimeError("Task secret not configured.")
    return {"authorization": f"Bearer {self.settings.task_secret}"}

  async def enqueue_launch(self, queue_name: str) -> None:
    """Launch a queue by POSTing to the local task endpoint."""
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured, strictly required for LocalHttpEnqueuer.")

    url = f"{self.settings.base_url.rstrip('/')}/internal/tasks/launch-queue"

    try:
      async with self._build_client(self.settings.base_url) as client:
        logger.info("Dispatching launch of %s locally to %s", queue_name, url)
        response = await client.post(url, json={"queueName": queue_name}, headers=self._task_headers(), timeout=60.0)
        response.raise_for_status()

    except httpx.HTTPStatusError as exc:
      logger.error("Local launch dispatch returned %s for queue %s: %s", exc.response.status_code, queue_name, exc.response.text)
      raise
    except httpx.RequestError as exc:
      logger.error("Failed to dispatch local launch for queue %s: %s", queue_name, exc)
      raise
