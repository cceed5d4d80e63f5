"""Typed params for each (type, entryType) pair.

Supplied fields are checked at enqueue time; handlers parse the full variant when they run.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from vizqueue.queue.errors import InvalidQueueParams


class QueueParamsBase(BaseModel):
  """Shared config: keep the wire field names and tolerate producer extras."""

  model_config = ConfigDict(extra="allow", populate_by_name=True)

  retry: bool = False


class SceneIdentity(QueueParamsBase):
  sceneId: str
  chapter: int
  scene_number: int


class StabilityStructureParams(SceneIdentity):
  inputPath: str
  outputPathWithoutExtension: str
  prompt: str
  controlStrength: float = Field(default=0.7, ge=0.0, le=1.0)


class DalleParams(QueueParamsBase):
  prompt: str
  outputPath: str
  model: str = "dall-e-3"
  size: str = "1024x1792"
  sceneId: str | None = None
  chapter: int | None = None
  scene_number: int | None = None
  graphId: str | None = None
  nodeType: str | None = None
  nodeName: str | None = None

  @model_validator(mode="after")
  def _require_target(self) -> DalleParams:
    has_scene = self.sceneId is not None and self.chapter is not None and self.scene_number is not None
    has_node = self.graphId is not None and self.nodeType is not None and self.nodeName is not None
    if not (has_scene or has_node):
      raise ValueError("dalle params need sceneId/chapter/scene_number or graphId/nodeType/nodeName")
    return self


class ModalOutpaintParams(SceneIdentity):
  inputPath: str
  outputPathWithoutExtension: str
  pixels: int = Field(default=384, gt=0)
  prompt: str = ""
  # Explicit margins, used by the plain "outpaint" operation only.
  left: int = Field(default=0, ge=0)
  right: int = Field(default=0, ge=0)
  up: int = Field(default=0, ge=0)
  down: int = Field(default=0, ge=0)


class WavespeedGenerateParams(QueueParamsBase):
  model: str
  prompt: str
  graphId: str
  identifier: str
  chapter: int
  outputPath: str
  outputFormat: Literal["webp", "jpeg", "png"] = "webp"
  modelParams: dict[str, Any] = Field(default_factory=dict)


class LlmMessage(BaseModel):
  role: Literal["system", "user", "assistant"]
  content: str


class LlmParams(QueueParamsBase):
  model: str
  prompt: str | None = None
  messages: list[LlmMessage] | None = None
  responseFormat: Literal["text", "json"] = "text"
  temperature: float | None = None
  maxTokens: int | None = None
  referenceKey: str | None = None

  @model_validator(mode="after")
  def _require_input(self) -> LlmParams:
    if not self.prompt and not self.messages:
      raise ValueError("llm params need a prompt or messages")
    return self

  def chat_messages(self) -> list[dict[str, str]]:
    if self.messages:
      return [message.model_dump() for message in self.messages]
    return [{"role": "user", "content": self.prompt or ""}]

  def estimated_tokens(self) -> int:
    """Rough token estimate (4 chars per token) used for rate-limit budgeting."""
    text = "".join(message["content"] for message in self.chat_messages())
    return max(1, len(text) // 4) + (self.maxTokens or 0)


class FreeFormParams(QueueParamsBase):
  """Entries without a registered schema (forced failures, external pipelines)."""


QueueParams = Union[StabilityStructureParams, DalleParams, ModalOutpaintParams, WavespeedGenerateParams, LlmParams, FreeFormParams]

# Keyed by (type, entryType); a None entryType covers every operation of the type.
_PARAM_MODELS: dict[tuple[str, str | None], type[QueueParamsBase]] = {
  ("stability", "structure"): StabilityStructureParams,
  ("dalle", None): DalleParams,
  ("modal", "outpaint"): ModalOutpaintParams,
  ("modal", "outpaintTall"): ModalOutpaintParams,
  ("modal", "outpaintWideAndTall"): ModalOutpaintParams,
  ("wavespeed", "generate"): WavespeedGenerateParams,
  ("openai", None): LlmParams,
  ("gemini", None): LlmParams,
}


def params_model_for(queue_type: str, entry_type: str) -> type[QueueParamsBase]:
  if entry_type == "failure":
    return FreeFormParams
  return _PARAM_MODELS.get((queue_type, entry_type)) or _PARAM_MODELS.get((queue_type, None)) or FreeFormParams


def parse_params(queue_type: str, entry_type: str, raw: dict[str, Any]) -> QueueParams:
  """Validate raw params into the variant registered for (type, entryType)."""
  model = params_model_for(queue_type, entry_type)
  try:
    return model.model_validate(raw)
  except ValidationError as exc:
    raise InvalidQueueParams(queue_type, entry_type, str(exc)) from exc


def normalize_params(queue_type: str, entry_type: str, raw: dict[str, Any]) -> dict[str, Any]:
  """Check the supplied params at enqueue time and return them as a document dict.

  Fields a producer left out are only required once a handler parses the entry,
  so an identity-only entry still enqueues and deduplicates. Supplied fields with
  the wrong shape are rejected here.
  """
  model = params_model_for(queue_type, entry_type)
  try:
    return model.model_validate(raw).model_dump(mode="json", exclude_none=True)
  except ValidationError as exc:
    if any(error["type"] != "missing" for error in exc.errors()):
      raise InvalidQueueParams(queue_type, entry_type, str(exc)) from exc
  return dict(raw)
