from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status
from pydantic import BaseModel

from vizqueue.api.deps import get_queue_registry
from vizqueue.config import Settings, get_settings
from vizqueue.queue.base import ProviderQueue
from vizqueue.queue.errors import StoreContention
from vizqueue.queue.registry import QueueRegistry

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


class LaunchQueuePayload(BaseModel):
  queueName: str


async def run_queue(queue: ProviderQueue) -> None:
  """Drain a queue outside the request; contention that outlives its retries ends the run."""
  try:
    summary = await queue.process_queue()
  except StoreContention as exc:
    logger.error("Processing run for %s stopped on store contention: %s", queue.queue_type, exc)
    return
  logger.info("Processing run for %s finished: %s", queue.queue_type, summary.to_dict())


@router.post("/launch-queue", status_code=status.HTTP_200_OK)
async def launch_queue_task(
  payload: LaunchQueuePayload,
  background_tasks: BackgroundTasks,
  settings: Annotated[Settings, Depends(get_settings)],
  registry: Annotated[QueueRegistry, Depends(get_queue_registry)],
  authorization: str | None = Header(default=None),
  x_vizq_task_secret: str | None = Header(default=None),
) -> dict[str, str]:
  """
  Handler for Cloud Tasks (and local simulation).
  Accepts the task quickly and processes the queue in the background.
  """
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  # Cloud Tasks OIDC occupies Authorization for Cloud Run, so the dedicated header is checked first.
  shared_secret_valid = secrets.compare_digest((x_vizq_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /launch-queue")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")

  queue = registry.resolve(payload.queueName)
  logger.info("Received launch task for queue %s", payload.queueName)
  background_tasks.add_task(run_queue, queue)
  return {"status": "accepted"}
