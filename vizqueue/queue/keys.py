"""Deterministic queue document ids derived from a job's semantic identity.

The id is the only dedup mechanism: producers that describe the same work
(same provider, operation, target and retry flag) always land on the same
document, and the store's create-if-absent turns the second enqueue into a
no-op.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from vizqueue.queue.errors import IdentityIncomplete
from vizqueue.queue.models import RETRY_SUFFIX
from vizqueue.utils.ids import minute_stamp, now_ms, random_base36


def _missing(values: Mapping[str, Any]) -> list[str]:
  # Chapter 0 and scene 0 are real identities; only None and "" are absent.
  return [name for name, value in values.items() if value is None or value == ""]


def _require(family: str, **values: Any) -> None:
  missing = _missing(values)
  if missing:
    raise IdentityIncomplete(family, missing)


def _with_retry(key: str, retry: bool) -> str:
  return retry_key(key) if retry else key


def retry_key(entry_id: str) -> str:
  """Return the one-shot retry id for an entry; never stacks the suffix."""
  if entry_id.endswith(RETRY_SUFFIX):
    return entry_id
  return f"{entry_id}{RETRY_SUFFIX}"


def scene_key(*, type: str, entry_type: str, scene_id: str | None, chapter: int | str | None, scene_number: int | str | None, retry: bool = False) -> str:
  """Key for per-scene image work (stability styling, modal outpainting)."""
  _require("scene", type=type, entry_type=entry_type, sceneId=scene_id, chapter=chapter, scene_number=scene_number)
  return _with_retry(f"{type}_{entry_type}_{scene_id}_{chapter}_{scene_number}", retry)


stability_key = scene_key
modal_key = scene_key


def dalle_key(*, type: str, entry_type: str, scene_id: str | None = None, chapter: int | str | None = None, scene_number: int | str | None = None, graph_id: str | None = None, node_type: str | None = None, node_name: str | None = None, retry: bool = False) -> str:
  """Key for dalle work, targeting either a scene or a graph node."""
  if graph_id is not None and scene_id is None:
    _require("dalle", type=type, entry_type=entry_type, graphId=graph_id, nodeType=node_type, nodeName=node_name)
    normalized_name = str(node_name).lower().replace(" ", "_")
    return _with_retry(f"{type}_{entry_type}_{graph_id}_{node_type}_{normalized_name}", retry)
  return scene_key(type=type, entry_type=entry_type, scene_id=scene_id, chapter=chapter, scene_number=scene_number, retry=retry)


def graph_key(*, type: str, entry_type: str, graph_id: str | None, chapter: int | str | None = None) -> str:
  """Key for graph pipeline steps; the chapter suffix only applies when truthy."""
  _require("graph", type=type, entry_type=entry_type, graphId=graph_id)
  key = f"{type}_{entry_type}_{graph_id}"
  if chapter:
    key = f"{key}_{chapter}"
  return key


def transcription_key(*, entry_type: str, uid: str | None, sku: str | None, chapter: int | str | None, unique: str | None = None, retry: bool = False, now: int | None = None) -> str:
  """Key for transcription work; without `unique` the minute stamp bounds duplicates."""
  _require("transcription", entry_type=entry_type, uid=uid, sku=sku, chapter=chapter)
  suffix = unique if unique else minute_stamp(now)
  return _with_retry(f"{entry_type}_{uid}_{sku}_{chapter}_{suffix}", retry)


def ai_key(*, type: str, model: str | None, entry_type: str, reference_key: str | None = None, retry: bool = False, now: int | None = None) -> str:
  """Key for LLM requests. Without a reference key the id is unique, not deduplicated."""
  _require("ai", type=type, model=model, entry_type=entry_type)
  reference = reference_key if reference_key else f"{now if now is not None else now_ms()}_{random_base36()}"
  return _with_retry(f"{type}_{str(model).replace('/', '_')}_{entry_type}_{reference}", retry)


def wavespeed_key(*, type: str, entry_type: str, graph_id: str | None, identifier: str | None, chapter: int | str | None, retry: bool = False) -> str:
  _require("wavespeed", type=type, entry_type=entry_type, graphId=graph_id, identifier=identifier, chapter=chapter)
  return _with_retry(f"{type}_{entry_type}_{graph_id}_{identifier}_ch{chapter}", retry)


def generic_key(*, type: str, entry_type: str, now: int | None = None) -> str:
  """Key for free-form entries with no natural identity."""
  _require("generic", type=type, entry_type=entry_type)
  return f"{type}_{entry_type}_{now if now is not None else now_ms()}_{random_base36()}"


_LLM_TYPES = frozenset({"openai", "gemini", "groq", "openrouter"})


def key_for(type: str, entry_type: str, params: Mapping[str, Any]) -> str:
  """Pick the key family for a (type, entryType) pair and build the id from params."""
  retry = bool(params.get("retry"))
  if type in {"stability", "modal"}:
    return scene_key(type=type, entry_type=entry_type, scene_id=params.get("sceneId"), chapter=params.get("chapter"), scene_number=params.get("scene_number"), retry=retry)
  if type == "dalle":
    return dalle_key(
      type=type,
      entry_type=entry_type,
      scene_id=params.get("sceneId"),
      chapter=params.get("chapter"),
      scene_number=params.get("scene_number"),
      graph_id=params.get("graphId"),
      node_type=params.get("nodeType"),
      node_name=params.get("nodeName"),
      retry=retry,
    )
  if type == "wavespeed":
    return wavespeed_key(type=type, entry_type=entry_type, graph_id=params.get("graphId"), identifier=params.get("identifier"), chapter=params.get("chapter"), retry=retry)
  if type == "graph":
    return graph_key(type=type, entry_type=entry_type, graph_id=params.get("graphId"), chapter=params.get("chapter"))
  if type == "transcription":
    return transcription_key(entry_type=entry_type, uid=params.get("uid"), sku=params.get("sku"), chapter=params.get("chapter"), unique=params.get("unique"), retry=retry)
  if type in _LLM_TYPES:
    return ai_key(type=type, model=params.get("model"), entry_type=entry_type, reference_key=params.get("referenceKey"), retry=retry)
  return generic_key(type=type, entry_type=entry_type)


def deduplicate_entries(entries: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
  """Drop entries whose id repeats within one submission; the first occurrence wins.

  Walks from the tail so removal never disturbs indices still to be visited.
  """
  items = list(entries)
  first_index: dict[str, int] = {}
  for index, entry in enumerate(items):
    first_index.setdefault(entry["id"], index)
  for index in range(len(items) - 1, -1, -1):
    if first_index[items[index]["id"]] != index:
      del items[index]
  return items
