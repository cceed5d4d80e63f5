"""HTTP surface: admin queue routes, modal callbacks and progress reads."""

from __future__ import annotations

from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from httpx import ASGITransport, AsyncClient

from vizqueue.api.deps import get_progress_tracker, get_queue_registry, get_task_launcher, require_admin
from vizqueue.config import get_settings
from vizqueue.main import app
from vizqueue.progress.tracker import CatalogueProgressTracker
from vizqueue.queue.errors import StoreContention
from vizqueue.queue.models import EntryQuery, QueueEntry
from vizqueue.queue.registry import QueueRegistry, build_queue_registry
from vizqueue.storage.catalogue_repo import InMemoryCatalogueRepository
from vizqueue.utils.ids import now_ms


def _structure(scene_number: int) -> dict:
  return {
    "type": "stability",
    "entryType": "structure",
    "params": {"sceneId": "S1", "chapter": 0, "scene_number": scene_number, "inputPath": "scenes/S1.webp", "outputPathWithoutExtension": f"styled/S1_{scene_number}", "prompt": "ink"},
  }


@pytest.fixture
def launcher() -> Mock:
  return Mock(enqueue_launch=AsyncMock())


@pytest.fixture
def registry(settings, repo, assets) -> QueueRegistry:
  return build_queue_registry(settings, repo=repo, assets=assets)


@pytest.fixture
async def client(settings, registry, launcher):
  app.dependency_overrides[get_settings] = lambda: settings
  app.dependency_overrides[require_admin] = lambda: {"uid": "admin-1", "admin": True}
  app.dependency_overrides[get_queue_registry] = lambda: registry
  app.dependency_overrides[get_task_launcher] = lambda: launcher
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
    yield ac
  app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_health(client) -> None:
  response = await client.get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"


@pytest.mark.anyio
async def test_add_batch_and_read_status(client) -> None:
  response = await client.post("/admin/queue/entries", json={"entries": [_structure(1), _structure(2)], "batch": True, "metadata": {"sku": "sku1"}})
  assert response.status_code == 201
  batch_id = response.json()["batchId"]
  assert response.json()["totalItems"] == 2

  status_response = await client.get(f"/admin/queue/batches/{batch_id}")
  assert status_response.status_code == 200
  assert status_response.json()["completionPercentage"] == 0
  assert status_response.json()["metadata"] == {"sku": "sku1"}

  entries = await client.get("/admin/queue/entries", params={"batchId": batch_id})
  assert [entry["id"] for entry in entries.json()["entries"]] == ["stability_structure_S1_0_1", "stability_structure_S1_0_2"]


@pytest.mark.anyio
async def test_batch_must_target_one_type(client) -> None:
  graph = {"type": "graph", "entryType": "generateScenes", "params": {"graphId": "g1"}}
  response = await client.post("/admin/queue/entries", json={"entries": [_structure(1), graph], "batch": True})
  assert response.status_code == 400


@pytest.mark.anyio
async def test_batch_of_existing_entries_conflicts(client) -> None:
  await client.post("/admin/queue/entries", json={"entries": [_structure(1)]})
  response = await client.post("/admin/queue/entries", json={"entries": [_structure(1)], "batch": True})
  assert response.status_code == 409


@pytest.mark.anyio
async def test_add_entries_for_external_types_and_lookup_by_params(client) -> None:
  graph = {"type": "graph", "entryType": "generateScenes", "params": {"graphId": "g1", "chapter": 0}}
  response = await client.post("/admin/queue/entries", json={"entries": [graph, _structure(4)]})
  assert response.status_code == 201
  assert response.json() == {"created": ["graph_generateScenes_g1", "stability_structure_S1_0_4"]}

  found = await client.get("/admin/queue/entries", params={"paramsKey": "chapter", "paramsValue": "0"})
  assert sorted(entry["id"] for entry in found.json()["entries"]) == ["graph_generateScenes_g1", "stability_structure_S1_0_4"]


@pytest.mark.anyio
async def test_invalid_params_are_rejected(client, repo) -> None:
  bad = _structure(1)
  bad["params"]["controlStrength"] = 5
  response = await client.post("/admin/queue/entries", json={"entries": [bad], "batch": True})
  assert response.status_code == 400
  assert "Invalid params for stability/structure" in response.json()["detail"]
  assert await repo.get_entries(EntryQuery(type="stability", limit=10)) == []


@pytest.mark.anyio
async def test_incomplete_identity_is_rejected(client) -> None:
  entry = _structure(1)
  del entry["params"]["sceneId"]
  response = await client.post("/admin/queue/entries", json={"entries": [entry]})
  assert response.status_code == 400
  assert response.json()["detail"] == "Cannot build scene key; missing sceneId."


@pytest.mark.anyio
async def test_update_delete_and_nuke(client, repo) -> None:
  await client.post("/admin/queue/entries", json={"entries": [_structure(1), _structure(2), _structure(3)]})

  patched = await client.patch("/admin/queue/entries", json={"updates": [{"id": "stability_structure_S1_0_1", "status": "error", "trace": "manual"}]})
  assert patched.json() == {"updated": 1}
  assert (await repo.get_entries(EntryQuery(id="stability_structure_S1_0_1")))[0].trace == "manual"

  missing = await client.patch("/admin/queue/entries", json={"updates": [{"id": "ghost", "status": "error"}]})
  assert missing.status_code == 404

  deleted = await client.request("DELETE", "/admin/queue/entries", json={"ids": ["stability_structure_S1_0_1", "ghost"]})
  assert deleted.json() == {"deleted": 1}

  refused = await client.post("/admin/queue/nuke", json={})
  assert refused.status_code == 400
  nuked = await client.post("/admin/queue/nuke", json={"confirm": True})
  assert nuked.json() == {"deleted": 2}


@pytest.mark.anyio
async def test_unknown_batch_and_queue(client) -> None:
  assert (await client.get("/admin/queue/batches/batch_missing")).status_code == 404
  launch = await client.post("/admin/queue/launch/nope")
  assert launch.status_code == 404
  assert launch.json() == {"detail": "Unknown queue: nope"}


@pytest.mark.anyio
async def test_launch_dispatches_task(client, launcher) -> None:
  response = await client.post("/admin/queue/launch/stability")
  assert response.status_code == 202
  assert response.json() == {"status": "dispatched", "queueName": "stability"}
  launcher.enqueue_launch.assert_awaited_once_with("stability")


@pytest.mark.anyio
async def test_checkup_marks_stuck_entries(client, repo, registry) -> None:
  record = await registry.batches.create_batch("stability", 1)
  stale = now_ms() - 3_600_000
  await repo.add_entries([QueueEntry(id="stuck", type="stability", entry_type="structure", params={}, status="processing", time_requested=stale, time_updated=stale, processing_started=stale, batch_id=record.batch_id)])
  await registry.batches.update_batch_counts(record.batch_id, processing_delta=1)

  dry_run = await client.post("/admin/queue/checkup/stability", json={"thresholdMs": 60_000})
  assert dry_run.json() == {"queueType": "stability", "stuck": ["stuck"], "markedError": 0}

  swept = await client.post("/admin/queue/checkup/stability", json={"thresholdMs": 60_000, "markError": True})
  assert swept.json()["markedError"] == 1
  entry = (await repo.get_entries(EntryQuery(id="stuck")))[0]
  assert entry.status == "error"
  assert entry.trace.startswith("Checkup at ")
  batch = await registry.batches.get_batch_status(record.batch_id)
  assert batch["failedItems"] == 1
  assert batch["processingItems"] == 0
  assert batch["status"] == "complete"


@pytest.mark.anyio
async def test_store_contention_maps_to_service_unavailable(client) -> None:
  app.dependency_overrides[get_queue_registry] = lambda: QueueRegistry(repo=Mock(get_entries=AsyncMock(side_effect=StoreContention("busy"))))
  response = await client.get("/admin/queue/entries", params={"type": "stability"})
  assert response.status_code == 503
  assert response.headers["retry-after"] == "1"


@pytest.mark.anyio
async def test_modal_callback_completes_waiting_entry(client, registry, repo) -> None:
  modal = registry.resolve("modal")
  outpaint = {"entryType": "outpaint", "params": {"sceneId": "S1", "chapter": 0, "scene_number": 1, "inputPath": "in.webp", "outputPathWithoutExtension": "out/S1"}}
  [entry_id] = await modal.add_to_queue([outpaint])
  await modal.claim()

  rejected = await client.post("/callbacks/modal", json={"results": [{entry_id: {"response": "ok"}}]}, headers={"authorization": "Bearer wrong"})
  assert rejected.status_code == 401

  response = await client.post("/callbacks/modal", json={"results": [{entry_id: "s3://bucket/out.webp"}]}, headers={"authorization": "Bearer modal-token"})
  assert response.status_code == 200
  assert response.json() == {"success": True, "message": "Callback received", "received": 1}
  entry = (await repo.get_entries(EntryQuery(id=entry_id)))[0]
  assert entry.status == "complete"
  assert entry.result["response"] == "s3://bucket/out.webp"


@pytest.mark.anyio
async def test_progress_route_returns_default_for_unknown_items(client) -> None:
  catalogue = InMemoryCatalogueRepository(items={"sku1": {"graphProgress": {"status": "in_progress", "completion": 42}}})
  app.dependency_overrides[get_progress_tracker] = lambda: CatalogueProgressTracker(catalogue)

  known = await client.get("/v1/progress/sku1")
  assert known.json() == {"status": "in_progress", "completion": 42}
  unknown = await client.get("/v1/progress/missing")
  assert unknown.json() == {"status": "pending", "currentStep": "initializing", "completion": 0}


@pytest.mark.anyio
async def test_require_admin_checks_claims() -> None:
  credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="token")
  with patch("vizqueue.api.deps.verify_id_token", return_value=None):
    with pytest.raises(HTTPException) as excinfo:
      await require_admin(credentials)
  assert excinfo.value.status_code == 401

  with patch("vizqueue.api.deps.verify_id_token", return_value={"uid": "u1", "admin": False}):
    with pytest.raises(HTTPException) as excinfo:
      await require_admin(credentials)
  assert excinfo.value.status_code == 403

  with patch("vizqueue.api.deps.verify_id_token", return_value={"uid": "u1", "admin": True}):
    assert (await require_admin(credentials))["uid"] == "u1"
