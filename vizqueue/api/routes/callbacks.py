"""Inbound completion callbacks from asynchronous providers."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from vizqueue.api.deps import get_queue_registry
from vizqueue.config import Settings, get_settings
from vizqueue.queue.base import ProviderQueue
from vizqueue.queue.registry import QueueRegistry

router = APIRouter(prefix="/callbacks", tags=["callbacks"])
logger = logging.getLogger(__name__)


class ModalCallbackPayload(BaseModel):
  # Each item maps one result key (the queue entry id) to its outcome.
  results: list[dict[str, Any]] = Field(min_length=1)


def _flatten_results(items: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
  flattened: dict[str, dict[str, Any]] = {}
  for item in items:
    for result_key, outcome in item.items():
      flattened[result_key] = outcome if isinstance(outcome, dict) else {"response": outcome}
  return flattened


async def _complete_outpaints(queue: ProviderQueue, results: dict[str, dict[str, Any]]) -> None:
  counts = await queue.complete_from_callback(results)
  logger.info("Modal callback processed: %s", counts)


@router.post("/modal")
async def modal_callback(
  payload: ModalCallbackPayload,
  background_tasks: BackgroundTasks,
  settings: Annotated[Settings, Depends(get_settings)],
  registry: Annotated[QueueRegistry, Depends(get_queue_registry)],
  authorization: str | None = Header(default=None),
) -> dict[str, Any]:
  """Acknowledge Modal immediately and resolve the waiting entries in the background."""
  token = settings.modal_callback_token
  if not token or not secrets.compare_digest((authorization or ""), f"Bearer {token}"):
    logger.warning("Rejected modal callback with invalid authorization")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

  results = _flatten_results(payload.results)
  background_tasks.add_task(_complete_outpaints, registry.resolve("modal"), results)
  return {"success": True, "message": "Callback received", "received": len(results)}
