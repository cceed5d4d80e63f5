"""Admin operations on the queue store."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from vizqueue.api.deps import get_queue_registry, get_task_launcher, require_admin
from vizqueue.config import Settings, get_settings
from vizqueue.queue.base import enqueue_entries
from vizqueue.queue.checkup import sweep_stuck_entries
from vizqueue.queue.errors import IdentityIncomplete, InvalidQueueParams
from vizqueue.queue.models import EntryQuery, EntryStatus, EntryUpdate
from vizqueue.queue.registry import QueueRegistry
from vizqueue.services.tasks.interface import TaskEnqueuer

router = APIRouter(prefix="/queue", tags=["queue"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class EntryIn(BaseModel):
  model_config = ConfigDict(extra="forbid")

  id: str | None = None
  type: str
  entryType: str
  params: dict[str, Any] = Field(default_factory=dict)


class AddEntriesRequest(BaseModel):
  entries: list[EntryIn] = Field(min_length=1)
  batch: bool = False
  webhookUrl: str | None = None
  metadata: dict[str, Any] | None = None


class EntryUpdateIn(BaseModel):
  id: str
  status: EntryStatus
  trace: str | None = None
  result: dict[str, Any] | None = None
  retryCount: int | None = None


class UpdateEntriesRequest(BaseModel):
  updates: list[EntryUpdateIn] = Field(min_length=1)


class DeleteEntriesRequest(BaseModel):
  ids: list[str] = Field(min_length=1)


class NukeRequest(BaseModel):
  confirm: bool = False


class CheckupRequest(BaseModel):
  thresholdMs: int | None = Field(default=None, gt=0)
  markError: bool = False


def _parse_params_value(raw: str | None) -> Any:
  """Query strings carry JSON scalars so numeric identities (chapter 0) match."""
  if raw is None:
    return None
  try:
    return json.loads(raw)
  except json.JSONDecodeError:
    return raw


@router.post("/entries", status_code=status.HTTP_201_CREATED)
async def add_entries(request: AddEntriesRequest, registry: Annotated[QueueRegistry, Depends(get_queue_registry)]) -> dict[str, Any]:
  raw = [entry.model_dump(exclude_none=True) for entry in request.entries]
  if request.batch:
    types = {entry["type"] for entry in raw}
    if len(types) != 1:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A batch must target a single queue type.")
    queue = registry.resolve(types.pop())
    try:
      record = await queue.add_to_queue_batch(raw, webhook_url=request.webhookUrl, metadata=request.metadata)
    except (IdentityIncomplete, InvalidQueueParams):
      raise
    except ValueError as exc:
      raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"batchId": record.batch_id, "totalItems": record.total_items}

  grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
  for entry in raw:
    grouped[entry["type"]].append(entry)
  created: list[str] = []
  for queue_type, entries in grouped.items():
    queue = registry.get(queue_type)
    if queue is not None:
      created.extend(await queue.add_to_queue(entries))
    else:
      # Types without a worker here (graph, transcription...) are stored for external consumers.
      created.extend(await enqueue_entries(registry.repo, entries, default_type=queue_type))
  logger.info("Admin added %d/%d entries", len(created), len(raw))
  return {"created": created}


@router.get("/entries")
async def get_entries(
  registry: Annotated[QueueRegistry, Depends(get_queue_registry)],
  id: str | None = None,
  batchId: str | None = None,
  paramsKey: str | None = None,
  paramsValue: str | None = None,
  type: str | None = None,
  status_filter: Annotated[str | None, Query(alias="status")] = None,
  limit: Annotated[int, Query(ge=1, le=2000)] = 10,
  timeRequestedAfter: int | None = None,
) -> dict[str, Any]:
  query = EntryQuery(id=id, batch_id=batchId, params_key=paramsKey, params_value=_parse_params_value(paramsValue), type=type, status=status_filter, limit=limit, time_requested_after=timeRequestedAfter)
  entries = await registry.repo.get_entries(query)
  return {"entries": [entry.to_document() for entry in entries]}


@router.patch("/entries")
async def update_entries(request: UpdateEntriesRequest, registry: Annotated[QueueRegistry, Depends(get_queue_registry)]) -> dict[str, int]:
  updates = [EntryUpdate(id=item.id, status=item.status, trace=item.trace, result=item.result, retry_count=item.retryCount) for item in request.updates]
  try:
    await registry.repo.update_entries(updates)
  except KeyError as exc:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0]) if exc.args else "Entry not found") from exc
  return {"updated": len(updates)}


@router.delete("/entries")
async def delete_entries(request: Annotated[DeleteEntriesRequest, Body()], registry: Annotated[QueueRegistry, Depends(get_queue_registry)]) -> dict[str, int]:
  return {"deleted": await registry.repo.delete_entries(request.ids)}


@router.post("/nuke")
async def nuke_queue(request: NukeRequest, registry: Annotated[QueueRegistry, Depends(get_queue_registry)], admin: Annotated[dict[str, Any], Depends(require_admin)]) -> dict[str, int]:
  if not request.confirm:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Set confirm=true to delete every queue entry.")
  deleted = await registry.repo.nuke()
  logger.warning("Queue nuked by uid=%s (%d entries)", admin.get("uid"), deleted)
  return {"deleted": deleted}


@router.get("/batches/{batch_id}")
async def get_batch(batch_id: str, registry: Annotated[QueueRegistry, Depends(get_queue_registry)]) -> dict[str, Any]:
  batch = await registry.batches.get_batch_status(batch_id)
  if batch is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
  return batch


@router.post("/launch/{queue_name}", status_code=status.HTTP_202_ACCEPTED)
async def launch_queue(queue_name: str, registry: Annotated[QueueRegistry, Depends(get_queue_registry)], launcher: Annotated[TaskEnqueuer, Depends(get_task_launcher)]) -> dict[str, str]:
  registry.resolve(queue_name)
  await launcher.enqueue_launch(queue_name)
  return {"status": "dispatched", "queueName": queue_name}


@router.post("/checkup/{queue_name}")
async def checkup_queue(queue_name: str, request: CheckupRequest, registry: Annotated[QueueRegistry, Depends(get_queue_registry)], settings: Annotated[Settings, Depends(get_settings)]) -> dict[str, Any]:
  queue = registry.resolve(queue_name)
  report = await sweep_stuck_entries(queue, threshold_ms=request.thresholdMs or settings.queue_stuck_threshold_ms, mark_error=request.markError)
  return report.to_dict()
