"""Durable object storage plus CDN mirroring for generated assets and offloaded payloads."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol
from urllib.parse import quote, urlparse, urlunparse

import httpx
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from google.cloud.storage.retry import DEFAULT_RETRY
from starlette.concurrency import run_in_threadpool

from vizqueue.config import Settings

logger = logging.getLogger(__name__)

_CLOUDFLARE_IMAGES_URL = "https://api.cloudflare.com/client/v4/accounts/{account_id}/images/v1"


@dataclass(frozen=True)
class UploadedAsset:
  """Both locations of an uploaded asset."""

  gcp_url: str
  cdn_url: str | None

  def to_result(self) -> dict[str, Any]:
    return {"gcpUrl": self.gcp_url, "cdnUrl": self.cdn_url}


class AssetStore(Protocol):
  """Storage operations the queue core depends on."""

  async def upload_and_get_cdn_link(self, data: bytes, path: str, *, content_type: str = "image/webp") -> UploadedAsset:
    ...

  async def download_bytes(self, path: str) -> bytes:
    ...

  def public_url(self, path: str) -> str:
    ...

  async def signed_upload_url(self, path: str, *, expires: timedelta, content_type: str) -> str:
    ...

  async def read_json(self, path: str) -> Any:
    ...

  async def write_json(self, path: str, payload: Any) -> None:
    ...


class GcsAssetStore:
  """Google Cloud Storage bucket with an optional Cloudflare Images mirror."""

  def __init__(self, settings: Settings, *, http_client_factory: Callable[[], httpx.AsyncClient] | None = None) -> None:
    self._bucket_name = settings.storage_bucket
    self._storage_host = settings.gcs_storage_host
    self._cloudflare_account_id = settings.cloudflare_account_id
    self._cloudflare_token = settings.cloudflare_images_token
    self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=60.0))
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)
    self._bucket = self._client.bucket(self._bucket_name)

  @property
  def cdn_enabled(self) -> bool:
    return bool(self._cloudflare_account_id and self._cloudflare_token)

  def public_url(self, path: str) -> str:
    if self._storage_host:
      return f"{_normalize_emulator_endpoint(self._storage_host)}/{self._bucket_name}/{quote(path)}"
    return f"https://storage.googleapis.com/{self._bucket_name}/{quote(path)}"

  async def upload_bytes(self, data: bytes, path: str, *, content_type: str, cache_control: str = "public, max-age=31536000") -> str:
    """Upload bytes to the bucket and return the public URL."""
    blob = self._bucket.blob(path)
    blob.cache_control = cache_control
    await run_in_threadpool(blob.upload_from_string, data, content_type=content_type, retry=DEFAULT_RETRY)
    return self.public_url(path)

  async def upload_to_cdn(self, data: bytes, filename: str, *, content_type: str) -> str:
    """Upload bytes to Cloudflare Images and return the public variant URL."""
    url = _CLOUDFLARE_IMAGES_URL.format(account_id=self._cloudflare_account_id)
    headers = {"Authorization": f"Bearer {self._cloudflare_token}"}
    async with self._http_client_factory() as client:
      response = await client.post(url, headers=headers, files={"file": (filename, data, content_type)}, data={"id": filename.replace("/", "_")})
      response.raise_for_status()
      payload = response.json()
    if not payload.get("success"):
      raise RuntimeError(f"Cloudflare Images upload failed for {filename}: {payload.get('errors')}")
    variants = payload.get("result", {}).get("variants") or []
    public = next((variant for variant in variants if variant.endswith("/public")), None)
    if public is None and not variants:
      raise RuntimeError(f"Cloudflare Images returned no variants for {filename}")
    return public or variants[0]

  async def upload_and_get_cdn_link(self, data: bytes, path: str, *, content_type: str = "image/webp") -> UploadedAsset:
    """Upload to the bucket and the CDN in parallel; either failure fails the whole upload."""
    if not self.cdn_enabled:
      logger.debug("Cloudflare Images not configured; uploading %s to GCS only", path)
      return UploadedAsset(gcp_url=await self.upload_bytes(data, path, content_type=content_type), cdn_url=None)

    gcp_url, cdn_url = await asyncio.gather(self.upload_bytes(data, path, content_type=content_type), self.upload_to_cdn(data, path, content_type=content_type))
    logger.info("Uploaded %s to GCS and CDN", path)
    return UploadedAsset(gcp_url=gcp_url, cdn_url=cdn_url)

  async def download_bytes(self, path: str) -> bytes:
    blob = self._bucket.blob(path)
    return await run_in_threadpool(blob.download_as_bytes, retry=DEFAULT_RETRY)

  async def signed_upload_url(self, path: str, *, expires: timedelta, content_type: str) -> str:
    """Return a V4 signed PUT URL so a remote worker can write the output directly."""
    blob = self._bucket.blob(path)
    return await run_in_threadpool(blob.generate_signed_url, version="v4", expiration=expires, method="PUT", content_type=content_type)

  async def read_json(self, path: str) -> Any:
    raw = await self.download_bytes(path)
    return json.loads(raw.decode("utf-8"))

  async def write_json(self, path: str, payload: Any) -> None:
    await self.upload_bytes(json.dumps(payload, separators=(",", ":")).encode("utf-8"), path, content_type="application/json", cache_control="no-store")


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
