from __future__ import annotations

from typing import Protocol


class TaskEnqueuer(Protocol):
  """Interface for dispatching queue processing runs."""

  async def enqueue_launch(self, queue_name: str) -> None:
    """Ask a worker to run process_queue for the named queue."""
    ...
