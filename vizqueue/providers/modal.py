"""Modal outpainting: submit with a signed upload URL, finish on callback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx

from vizqueue.providers.images import placeholder_image
from vizqueue.providers.retry import RetryPolicy, Sleep, call_with_retry, classify_http_error
from vizqueue.queue.params import ModalOutpaintParams
from vizqueue.storage.blob_store import AssetStore
from vizqueue.utils.ids import now_ms

logger = logging.getLogger(__name__)

_SIGNED_URL_TTL = timedelta(hours=4)


@dataclass(frozen=True)
class OutpaintGeometry:
  """Margins to add and the suffix of the resulting file."""

  left: int
  right: int
  up: int
  down: int
  suffix: str


def outpaint_geometry(entry_type: str, params: ModalOutpaintParams) -> OutpaintGeometry:
  if entry_type == "outpaintTall":
    return OutpaintGeometry(left=0, right=0, up=params.pixels, down=params.pixels, suffix=".9.16.webp")
  if entry_type == "outpaintWideAndTall":
    return OutpaintGeometry(left=params.pixels, right=params.pixels, up=0, down=0, suffix=".16.9.webp")
  return OutpaintGeometry(left=params.left, right=params.right, up=params.up, down=params.down, suffix=".webp")


@dataclass(frozen=True)
class OutpaintSubmission:
  """What the queue records for an outpaint request."""

  output_path: str
  public_url: str
  awaiting_callback: bool

  def to_result(self) -> dict[str, Any]:
    return {"outputPath": self.output_path, "publicUrl": self.public_url}


class ModalOutpaintClient:
  provider = "modal"

  def __init__(self, endpoint: str | None, api_key: str | None, *, assets: AssetStore, callback_url: str | None, steps: int = 30, mock: bool = False, policy: RetryPolicy | None = None, sleep: Sleep = asyncio.sleep, http_client_factory: Callable[[], httpx.AsyncClient] | None = None) -> None:
    self._endpoint = endpoint
    self._api_key = api_key
    self._assets = assets
    self._callback_url = callback_url
    self._steps = steps
    self.mock = mock
    self._policy = policy or RetryPolicy()
    self._sleep = sleep
    self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=60.0))

  async def submit(self, entry_id: str, entry_type: str, params: ModalOutpaintParams) -> OutpaintSubmission:
    """Send an outpaint job; the result key is the queue entry id."""
    geometry = outpaint_geometry(entry_type, params)
    output_path = f"{params.outputPathWithoutExtension}{geometry.suffix}"

    if self.mock:
      logger.info("Modal mock outpaint for %s", output_path)
      asset = await self._assets.upload_and_get_cdn_link(placeholder_image(output_path), output_path)
      return OutpaintSubmission(output_path=output_path, public_url=asset.gcp_url, awaiting_callback=False)

    if not self._endpoint or not self._callback_url:
      raise ValueError("MODAL_OUTPAINT_ENDPOINT and VIZQ_CALLBACK_BASE_URL are required for outpainting")

    signed_url = await self._assets.signed_upload_url(output_path, expires=_SIGNED_URL_TTL, content_type="image/webp")
    payload = {
      "input": self._assets.public_url(params.inputPath),
      "output_url": signed_url,
      "prompt": params.prompt,
      "left": geometry.left,
      "right": geometry.right,
      "top": geometry.up,
      "bottom": geometry.down,
      "steps": self._steps,
      "output_format": "webp",
      "result_key": entry_id,
      "callback_url": self._callback_url,
      "timestamp": now_ms(),
    }
    headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    async def _once() -> None:
      async with self._http_client_factory() as client:
        response = await client.post(self._endpoint, json=payload, headers=headers)
      if response.status_code >= 300:
        raise classify_http_error(response.status_code, response.text, provider=self.provider)

    await call_with_retry(f"modal:{entry_type}:{entry_id}", _once, policy=self._policy, provider=self.provider, sleep=self._sleep)
    logger.info("Modal outpaint submitted for %s; awaiting callback", entry_id)
    return OutpaintSubmission(output_path=output_path, public_url=self._assets.public_url(output_path), awaiting_callback=True)
