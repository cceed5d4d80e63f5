"""Step tables and weights for transcription and graph pipeline progress."""

from __future__ import annotations

from dataclasses import dataclass

TRANSCRIPTION_WEIGHT = 20
GRAPH_WEIGHT = 80

LocalizedText = dict[str, str]


@dataclass(frozen=True)
class PipelineStep:
  name: str
  weight: int
  description: LocalizedText


def _steps(*items: tuple[str, int, str]) -> dict[str, PipelineStep]:
  # Insertion order is the execution order.
  return {name: PipelineStep(name=name, weight=weight, description={"en": text}) for name, weight, text in items}


TRANSCRIPTION_STEPS: dict[str, PipelineStep] = _steps(
  ("preparing", 15, "Summoning audio streams"),
  ("metadata", 15, "Peeking at the track's secrets"),
  ("transcribing", 30, "Turning sound into words"),
  ("validating", 10, "Checking the words are true"),
  ("saving", 5, "Stashing transcripts safely"),
  ("cleanup", 5, "Tidying up the workshop"),
)

PIPELINE_STEPS_V01: dict[str, PipelineStep] = _steps(
  ("correctTranscriptions", 5, "Polishing transcripts with a dash of AI"),
  ("entitiesByChapter", 5, "Mapping who's where"),
  ("entityProperties", 5, "Noting traits and details"),
  ("entityContinuity", 10, "Keeping names and facts consistent"),
  ("consolidateEntityProperties", 10, "Merging clues into one dossier"),
  ("generateEntityImagePrompts", 10, "Conjuring image prompts for cast and places"),
  ("summarizeEntityImagePrompts", 10, "Tidying and summarizing"),
  ("generateScenes", 10, "Carving the story into scenes"),
  ("augmentScenePrompts", 10, "Enhancing scene descriptions"),
  ("updateSceneCache", 10, "Making the scenes amazing"),
  ("generateCharacterImages", 15, "Painting character portraits"),
  ("generateCharacterProfileImages", 15, "Crafting profile portraits"),
  ("generateLocationImages", 15, "Painting worlds and places"),
)

TRANSCRIPTION_STATUS_MESSAGES: dict[str, LocalizedText] = {
  "starting": {"en": "Starting transcription"},
}

GRAPH_STATUS_MESSAGES: dict[str, LocalizedText] = {
  "initializing": {"en": "Initializing graph generation"},
  "complete": {"en": "Graph generation complete"},
  "finalizing": {"en": "Finalizing graph generation"},
}


def total_weight(steps: dict[str, PipelineStep]) -> int:
  return sum(step.weight for step in steps.values())
