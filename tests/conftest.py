"""Shared fixtures: in-memory store, fake asset storage and test settings."""

from __future__ import annotations

import os
from dataclasses import replace
from datetime import timedelta
from typing import Any

os.environ.setdefault("VIZQ_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ.setdefault("VIZQ_QUEUE_BACKEND", "memory")

import pytest  # noqa: E402

from vizqueue.config import Settings, get_settings  # noqa: E402
from vizqueue.queue.batches import BatchTracker  # noqa: E402
from vizqueue.storage.blob_store import UploadedAsset  # noqa: E402
from vizqueue.storage.memory_queue_repo import InMemoryQueueRepository  # noqa: E402


class FakeAssetStore:
  """AssetStore that keeps uploads in dictionaries."""

  def __init__(self) -> None:
    self.blobs: dict[str, bytes] = {}
    self.json_objects: dict[str, Any] = {}
    self.signed: list[str] = []

  def public_url(self, path: str) -> str:
    return f"https://storage.test/{path}"

  async def upload_and_get_cdn_link(self, data: bytes, path: str, *, content_type: str = "image/webp") -> UploadedAsset:
    self.blobs[path] = data
    return UploadedAsset(gcp_url=self.public_url(path), cdn_url=f"https://cdn.test/{path}")

  async def download_bytes(self, path: str) -> bytes:
    return self.blobs[path]

  async def signed_upload_url(self, path: str, *, expires: timedelta, content_type: str) -> str:
    self.signed.append(path)
    return f"https://signed.test/{path}?expires={int(expires.total_seconds())}"

  async def read_json(self, path: str) -> Any:
    return self.json_objects[path]

  async def write_json(self, path: str, payload: Any) -> None:
    self.json_objects[path] = payload


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def sleeps() -> list[float]:
  return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
  """Record requested delays instead of sleeping."""

  async def _sleep(seconds: float) -> None:
    sleeps.append(seconds)

  return _sleep


@pytest.fixture
def settings() -> Settings:
  get_settings.cache_clear()
  return replace(get_settings(), queue_backend="memory", mock_images=True, mock_llm=True, task_secret="test-task-secret", modal_callback_token="modal-token", base_url="http://localhost:8000")


@pytest.fixture
def repo() -> InMemoryQueueRepository:
  return InMemoryQueueRepository()


@pytest.fixture
def assets() -> FakeAssetStore:
  return FakeAssetStore()


@pytest.fixture
def batches(repo: InMemoryQueueRepository) -> BatchTracker:
  return BatchTracker(repo, initial_backoff_ms=1, max_backoff_ms=2)
