"""Catalogue progress records (Realtime Database) and graph documents (Firestore)."""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from firebase_admin import db
from google.cloud import firestore
from starlette.concurrency import run_in_threadpool

from vizqueue.queue.errors import StoreContention

logger = logging.getLogger(__name__)

PROGRESS_FIELD = "graphProgress"


class CatalogueRepository(Protocol):
  """Repository for catalogue items and their graph progress."""

  async def get_catalogue_item(self, sku: str) -> dict[str, Any] | None:
    """Return the catalogue item for a sku, or None when absent."""

  async def get_graph(self, graph_id: str) -> dict[str, Any] | None:
    """Return the graph document, or None when absent."""

  async def merge_graph_progress(self, sku: str, updates: Mapping[str, Any], *, reset: bool = False) -> dict[str, Any] | None:
    """Apply graphProgress path updates in one transaction; None when the item is absent."""


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
  parts = [part for part in path.split("/") if part]
  node = target
  for part in parts[:-1]:
    child = node.get(part)
    if not isinstance(child, dict):
      child = {}
      node[part] = child
    node = child
  node[parts[-1]] = value


def merge_progress(current: Any, updates: Mapping[str, Any], *, reset: bool = False) -> dict[str, Any]:
  """Merge path updates (relative to graphProgress) into the current progress.

  Untouched siblings survive; completion never moves backwards unless reset.
  """
  progress: dict[str, Any] = {} if reset or not isinstance(current, dict) else copy.deepcopy(current)
  previous = progress.get("completion")
  for path, value in updates.items():
    _set_path(progress, path, copy.deepcopy(value))
  completion = progress.get("completion")
  if isinstance(previous, (int, float)) and isinstance(completion, (int, float)) and completion < previous:
    progress["completion"] = previous
  return progress


class FirebaseCatalogueRepository:
  """Catalogue items live under `catalogue/{sku}` in the Realtime Database; graphs in Firestore."""

  def __init__(self, root: db.Reference, firestore_client: firestore.Client, *, graph_collection: str = "Graphs") -> None:
    self._root = root
    self._firestore = firestore_client
    self._graph_collection = graph_collection

  def _item_ref(self, sku: str) -> db.Reference:
    return self._root.child("catalogue").child(sku)

  async def get_catalogue_item(self, sku: str) -> dict[str, Any] | None:
    value = await run_in_threadpool(self._item_ref(sku).get)
    return value if isinstance(value, dict) else None

  async def get_graph(self, graph_id: str) -> dict[str, Any] | None:
    def _fetch() -> dict[str, Any] | None:
      snapshot = self._firestore.collection(self._graph_collection).document(graph_id).get()
      return snapshot.to_dict() if snapshot.exists else None

    return await run_in_threadpool(_fetch)

  async def merge_graph_progress(self, sku: str, updates: Mapping[str, Any], *, reset: bool = False) -> dict[str, Any] | None:
    item_ref = self._item_ref(sku)
    exists = await run_in_threadpool(lambda: item_ref.get(shallow=True))
    if not exists:
      return None

    def _merge(current: Any) -> dict[str, Any]:
      return merge_progress(current, updates, reset=reset)

    try:
      return await run_in_threadpool(item_ref.child(PROGRESS_FIELD).transaction, _merge)
    except db.TransactionAbortedError as exc:
      raise StoreContention(f"graphProgress transaction for {sku} aborted") from exc


class InMemoryCatalogueRepository:
  """Dict-backed catalogue used for local development and tests."""

  def __init__(self, items: dict[str, dict[str, Any]] | None = None, graphs: dict[str, dict[str, Any]] | None = None) -> None:
    self.items: dict[str, dict[str, Any]] = items if items is not None else {}
    self.graphs: dict[str, dict[str, Any]] = graphs if graphs is not None else {}

  async def get_catalogue_item(self, sku: str) -> dict[str, Any] | None:
    item = self.items.get(sku)
    return copy.deepcopy(item) if item is not None else None

  async def get_graph(self, graph_id: str) -> dict[str, Any] | None:
    graph = self.graphs.get(graph_id)
    return copy.deepcopy(graph) if graph is not None else None

  async def merge_graph_progress(self, sku: str, updates: Mapping[str, Any], *, reset: bool = False) -> dict[str, Any] | None:
    item = self.items.get(sku)
    if item is None:
      return None
    item[PROGRESS_FIELD] = merge_progress(item.get(PROGRESS_FIELD), updates, reset=reset)
    return copy.deepcopy(item[PROGRESS_FIELD])
