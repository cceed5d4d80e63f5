from __future__ import annotations

import pytest

from vizqueue.progress.tracker import DEFAULT_PROGRESS, CatalogueProgressTracker, graph_step_progress, js_round, overall_completion, overall_graph_progress, transcription_progress
from vizqueue.storage.catalogue_repo import InMemoryCatalogueRepository, merge_progress

SCENARIO_GRAPH = {"endChapter": 3, "chapter": 1, "completedChapters": [0], "nextGraphStep": "augmentScenePrompts"}


def _tracker(*, item: dict | None = None, graph: dict | None = None) -> tuple[CatalogueProgressTracker, InMemoryCatalogueRepository]:
  repo = InMemoryCatalogueRepository(items={"sku1": item if item is not None else {"defaultGraphId": "g1"}}, graphs={"g1": graph} if graph else {})
  return CatalogueProgressTracker(repo), repo


def test_js_round_rounds_half_up() -> None:
  assert js_round(2.5) == 3
  assert js_round(37.5) == 38
  assert js_round(0.49) == 0


def test_graph_step_progress_uses_position_of_next_step() -> None:
  percent, current, description = graph_step_progress({"nextGraphStep": "augmentScenePrompts"})
  assert percent == 50
  assert current == "augmentScenePrompts"
  assert description == {"en": "Enhancing scene descriptions"}
  assert graph_step_progress({"nextGraphStep": "complete"})[0] == 100
  assert graph_step_progress({})[:2] == (0, "initializing")


def test_overall_graph_progress_splits_chapters_evenly() -> None:
  phase = overall_graph_progress(SCENARIO_GRAPH)
  assert phase.completion == 37.5
  assert phase.chapters.total_chapters == 4
  assert phase.chapters.progress == 25
  assert overall_completion(100, phase.completion) == 50


def test_transcription_progress_interpolates_current_step() -> None:
  assert transcription_progress("transcribing", 50) == (56, {"en": "Turning sound into words"})
  assert transcription_progress("unknown")[0] == 0
  assert transcription_progress("cleanup", 100)[0] == 100


def test_merge_progress_keeps_siblings_and_never_regresses() -> None:
  current = {"completion": 50, "completedChapters": [0, 1], "chapterProgress": {"currentChapter": 1}}
  merged = merge_progress(current, {"completion": 30, "chapterProgress/currentChapter": 2, "status": "in_progress"})
  assert merged["completion"] == 50
  assert merged["completedChapters"] == [0, 1]
  assert merged["chapterProgress"] == {"currentChapter": 2}
  assert merged["status"] == "in_progress"
  assert merge_progress(current, {"completion": 0}, reset=True) == {"completion": 0}


@pytest.mark.anyio
async def test_update_graph_progress_writes_expected_progress() -> None:
  tracker, repo = _tracker(graph=SCENARIO_GRAPH)

  progress = await tracker.update_graph_progress("sku1")

  assert progress["completion"] == 50
  assert progress["status"] == "in_progress"
  assert progress["currentStep"] == "augmentScenePrompts"
  assert progress["graphPhaseCompletion"] == 38
  assert progress["chapterProgress"] == {"currentChapter": 1, "completedChapters": 1, "totalChapters": 4, "processingChapters": [], "progress": 25}
  assert repo.items["sku1"]["graphProgress"]["lastUpdated"] > 0


@pytest.mark.anyio
async def test_completion_is_monotonic_across_updates() -> None:
  tracker, _ = _tracker(graph=SCENARIO_GRAPH)
  await tracker.update_graph_progress("sku1")

  progress = await tracker.update_transcription_progress("sku1", "transcribing", 50)

  assert progress["transcriptionProgress"] == 56
  assert progress["completion"] == 50


@pytest.mark.anyio
async def test_available_graph_is_complete() -> None:
  tracker, _ = _tracker(item={"graphAvailable": True})
  progress = await tracker.update_graph_progress("sku1")
  assert progress["completion"] == 100
  assert progress["status"] == "complete"
  assert progress["inProgress"] is False


@pytest.mark.anyio
async def test_graph_without_chapters_is_pending_until_started() -> None:
  tracker, _ = _tracker(graph={"nextGraphStep": "initializing"})
  progress = await tracker.update_graph_progress("sku1")
  assert progress["status"] == "pending"
  assert progress["completion"] == 20
  assert "chapterProgress" not in progress


@pytest.mark.anyio
async def test_missing_item_or_graph_is_skipped() -> None:
  tracker, _ = _tracker(graph=None)
  assert await tracker.update_graph_progress("sku1") is None
  assert await tracker.update_graph_progress("missing") is None
  assert await tracker.start_transcription("missing") is None


@pytest.mark.anyio
async def test_get_progress_defaults_and_reset() -> None:
  tracker, _ = _tracker()
  assert await tracker.get_progress("missing") == DEFAULT_PROGRESS

  await tracker.start_transcription("sku1")
  await tracker.complete_transcription("sku1")
  assert (await tracker.get_progress("sku1"))["completion"] == 20

  await tracker.mark_error("sku1", "transcriber crashed")
  assert (await tracker.get_progress("sku1"))["error"] == "transcriber crashed"

  reset = await tracker.reset_progress("sku1")
  assert reset["completion"] == 0
  assert reset["status"] == "pending"
  assert "error" not in reset
