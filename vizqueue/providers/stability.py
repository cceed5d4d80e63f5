"""Stability AI structure-control styling."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from vizqueue.providers.images import convert_image, placeholder_image
from vizqueue.providers.retry import RetryPolicy, Sleep, call_with_retry, classify_http_error
from vizqueue.queue.params import StabilityStructureParams
from vizqueue.storage.blob_store import AssetStore

logger = logging.getLogger(__name__)

STABILITY_STRUCTURE_URL = "https://api.stability.ai/v2beta/stable-image/control/structure"


class StabilityClient:
  """Restyle an existing scene image while keeping its composition."""

  provider = "stability"

  def __init__(self, api_key: str | None, *, assets: AssetStore, mock: bool = False, policy: RetryPolicy | None = None, sleep: Sleep = asyncio.sleep, http_client_factory: Callable[[], httpx.AsyncClient] | None = None) -> None:
    self._api_key = api_key
    self._assets = assets
    self.mock = mock
    self._policy = policy or RetryPolicy()
    self._sleep = sleep
    self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=120.0))

  async def style_structure(self, params: StabilityStructureParams) -> dict[str, Any]:
    output_path = f"{params.outputPathWithoutExtension}.webp"
    if self.mock:
      logger.info("Stability mock styling for %s", output_path)
      asset = await self._assets.upload_and_get_cdn_link(placeholder_image(params.prompt), output_path)
      return {**asset.to_result(), "outputPath": output_path}

    if not self._api_key:
      raise ValueError("STABILITY_API_KEY environment variable is required")

    source = await self._assets.download_bytes(params.inputPath)
    headers = {"Authorization": f"Bearer {self._api_key}", "Accept": "image/*"}
    form = {"prompt": params.prompt, "control_strength": str(params.controlStrength), "output_format": "webp"}

    async def _once() -> bytes:
      async with self._http_client_factory() as client:
        response = await client.post(STABILITY_STRUCTURE_URL, headers=headers, files={"image": ("input.webp", source, "image/webp")}, data=form)
      if response.status_code != 200:
        raise classify_http_error(response.status_code, response.text, provider=self.provider)
      return response.content

    image = await call_with_retry(f"stability:structure:{params.sceneId}", _once, policy=self._policy, provider=self.provider, sleep=self._sleep)
    asset = await self._assets.upload_and_get_cdn_link(convert_image(image, "webp"), output_path)
    logger.info("Stability styled scene %s chapter %s #%s", params.sceneId, params.chapter, params.scene_number)
    return {**asset.to_result(), "outputPath": output_path}
