"""Pipeline progress for a catalogue item: transcription then chapter-partitioned graph generation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from vizqueue.progress.steps import GRAPH_STATUS_MESSAGES, GRAPH_WEIGHT, PIPELINE_STEPS_V01, TRANSCRIPTION_STATUS_MESSAGES, TRANSCRIPTION_STEPS, TRANSCRIPTION_WEIGHT, LocalizedText, total_weight
from vizqueue.storage.catalogue_repo import CatalogueRepository
from vizqueue.utils.ids import now_ms

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS: dict[str, Any] = {"status": "pending", "currentStep": "initializing", "completion": 0}


def js_round(value: float) -> int:
  """Round half up (2.5 -> 3), unlike round() which rounds half to even."""
  return int(math.floor(value + 0.5))


def transcription_progress(step: str | None, step_progress: float = 0) -> tuple[int, LocalizedText]:
  """Percent of the transcription phase done, interpolating inside the current step."""
  if not step or step not in TRANSCRIPTION_STEPS:
    return 0, TRANSCRIPTION_STATUS_MESSAGES["starting"]

  done = 0.0
  description = TRANSCRIPTION_STATUS_MESSAGES["starting"]
  for name, info in TRANSCRIPTION_STEPS.items():
    if name == step:
      done += info.weight * step_progress / 100
      description = info.description
      break
    done += info.weight
  return js_round(done / total_weight(TRANSCRIPTION_STEPS) * 100), description


def graph_step_progress(graph: dict[str, Any]) -> tuple[int, str, LocalizedText]:
  """Percent of one chapter's pipeline done, from the position of nextGraphStep."""
  steps = PIPELINE_STEPS_V01
  total = total_weight(steps)
  current = graph.get("nextGraphStep") or "initializing"

  done = 0
  if current == "complete":
    done = total
  elif current in steps:
    for name, info in steps.items():
      if name == current:
        break
      done += info.weight

  if current == "complete":
    description = GRAPH_STATUS_MESSAGES["complete"]
  elif current in steps:
    description = steps[current].description
  elif current != "initializing":
    description = {"en": current}
  else:
    description = GRAPH_STATUS_MESSAGES["initializing"]
  return js_round(done / total * 100), current, description


@dataclass(frozen=True)
class ChapterInfo:
  total_chapters: int
  completed_chapters: int
  current_chapter: int
  processing_chapters: list[int] = field(default_factory=list)

  @property
  def progress(self) -> int:
    return js_round(self.completed_chapters * 100 / self.total_chapters)

  def to_dict(self) -> dict[str, Any]:
    return {
      "currentChapter": self.current_chapter,
      "completedChapters": self.completed_chapters,
      "totalChapters": self.total_chapters,
      "processingChapters": list(self.processing_chapters),
      "progress": self.progress,
    }


def chapter_progress(graph: dict[str, Any]) -> ChapterInfo | None:
  if graph.get("endChapter") is None or graph.get("chapter") is None:
    return None
  return ChapterInfo(
    total_chapters=int(graph["endChapter"]) + 1,
    completed_chapters=len(graph.get("completedChapters") or []),
    current_chapter=int(graph["chapter"]),
    processing_chapters=list(graph.get("processingChapters") or []),
  )


@dataclass(frozen=True)
class GraphPhase:
  completion: float
  current_step: str
  description: LocalizedText
  chapters: ChapterInfo | None


def overall_graph_progress(graph: dict[str, Any]) -> GraphPhase:
  """Graph phase percent; every chapter is an equal share, the current one counted by its step."""
  step_progress, current_step, description = graph_step_progress(graph)
  chapters = chapter_progress(graph)
  completion: float = step_progress
  if chapters is not None:
    share = 100 / chapters.total_chapters
    completion = chapters.completed_chapters * share + step_progress / 100 * share
  return GraphPhase(completion=completion, current_step=current_step, description=description, chapters=chapters)


def overall_completion(transcription_percent: float, graph_phase_percent: float) -> int:
  value = js_round(TRANSCRIPTION_WEIGHT * transcription_percent / 100) + js_round(GRAPH_WEIGHT * graph_phase_percent / 100)
  return max(0, min(100, value))


class CatalogueProgressTracker:
  """Write graphProgress for catalogue items.

  Every write is a path update merged in one transaction, so fields maintained
  elsewhere (completedChapters, processingChapters) are kept and completion
  only moves forward unless the progress is reset.
  """

  def __init__(self, repo: CatalogueRepository) -> None:
    self._repo = repo

  async def _write(self, sku: str, updates: dict[str, Any], *, reset: bool = False) -> dict[str, Any] | None:
    merged = await self._repo.merge_graph_progress(sku, {**updates, "lastUpdated": now_ms()}, reset=reset)
    if merged is None:
      logger.debug("Catalogue item not found for %s; skipping progress write", sku)
      return None
    logger.info("Progress for %s: %s%% (%s)", sku, merged.get("completion"), merged.get("currentStep"))
    return merged

  async def start_transcription(self, sku: str) -> dict[str, Any] | None:
    return await self._write(
      sku,
      {
        "inProgress": False,
        "transcriptionInProgress": True,
        "status": "in_progress",
        "currentStep": "transcription",
        "description": TRANSCRIPTION_STATUS_MESSAGES["starting"],
        "transcriptionProgress": 0,
        "completion": 0,
      },
    )

  async def update_transcription_progress(self, sku: str, step: str | None, step_progress: float = 0) -> dict[str, Any] | None:
    percent, description = transcription_progress(step, step_progress)
    return await self._write(
      sku,
      {
        "inProgress": False,
        "transcriptionInProgress": True,
        "completion": overall_completion(percent, 0),
        "currentStep": step or "transcription",
        "description": description,
        "status": "complete" if percent == 100 else "in_progress",
        "transcriptionProgress": percent,
      },
    )

  async def complete_transcription(self, sku: str) -> dict[str, Any] | None:
    return await self._write(
      sku,
      {
        "inProgress": False,
        "transcriptionInProgress": False,
        "completion": overall_completion(100, 0),
        "currentStep": "initializing",
        "description": GRAPH_STATUS_MESSAGES["initializing"],
        "status": "in_progress",
        "transcriptionProgress": 100,
      },
    )

  async def start_graph_generation(self, sku: str) -> dict[str, Any] | None:
    return await self._write(
      sku,
      {
        "inProgress": True,
        "transcriptionInProgress": False,
        "completion": overall_completion(100, 0),
        "currentStep": "initializing",
        "description": GRAPH_STATUS_MESSAGES["initializing"],
        "status": "in_progress",
        "transcriptionProgress": 100,
        "graphPhaseCompletion": 0,
      },
    )

  async def update_graph_progress(self, sku: str, graph_id: str | None = None) -> dict[str, Any] | None:
    """Recompute graph-phase progress from the graph document of the catalogue item."""
    item = await self._repo.get_catalogue_item(sku)
    if item is None:
      logger.debug("Catalogue item not found for %s; cannot update graph progress", sku)
      return None
    if item.get("graphAvailable"):
      return await self.mark_graph_complete(sku)

    graph_id = graph_id or item.get("defaultGraphId")
    if not graph_id:
      logger.warning("No graph id available for %s", sku)
      return None
    graph = await self._repo.get_graph(graph_id)
    if graph is None:
      logger.warning("Graph %s not found for %s", graph_id, sku)
      return None

    phase = overall_graph_progress(graph)
    completion = overall_completion(100, phase.completion)
    if phase.current_step == "complete":
      status = "complete"
      completion = 100
    elif phase.completion > 0:
      status = "in_progress"
    else:
      status = "pending"

    updates: dict[str, Any] = {
      "inProgress": status != "complete",
      "transcriptionInProgress": False,
      "status": status,
      "currentStep": phase.current_step,
      "completion": completion,
      "description": phase.description,
      "graphPhaseCompletion": js_round(phase.completion),
    }
    if phase.chapters is not None:
      updates["chapterProgress"] = phase.chapters.to_dict()
    return await self._write(sku, updates)

  async def mark_graph_complete(self, sku: str) -> dict[str, Any] | None:
    return await self._write(
      sku,
      {
        "inProgress": False,
        "transcriptionInProgress": False,
        "status": "complete",
        "currentStep": "complete",
        "completion": 100,
        "description": GRAPH_STATUS_MESSAGES["complete"],
        "graphPhaseCompletion": 100,
      },
    )

  async def mark_error(self, sku: str, message: str) -> dict[str, Any] | None:
    return await self._write(sku, {"inProgress": False, "transcriptionInProgress": False, "status": "error", "error": message})

  async def reset_progress(self, sku: str) -> dict[str, Any] | None:
    return await self._write(sku, dict(DEFAULT_PROGRESS), reset=True)

  async def get_progress(self, sku: str) -> dict[str, Any]:
    item = await self._repo.get_catalogue_item(sku)
    progress = (item or {}).get("graphProgress")
    return progress if isinstance(progress, dict) else dict(DEFAULT_PROGRESS)
