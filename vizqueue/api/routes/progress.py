from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from vizqueue.api.deps import get_progress_tracker
from vizqueue.progress.tracker import CatalogueProgressTracker

router = APIRouter(prefix="/progress", tags=["progress"])


@router.get("/{sku}")
async def get_progress(sku: str, tracker: Annotated[CatalogueProgressTracker, Depends(get_progress_tracker)]) -> dict[str, Any]:
  """Return graphProgress for a catalogue item, or the pending default when it has none."""
  return await tracker.get_progress(sku)
