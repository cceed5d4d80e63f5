"""DALL-E image generation through the OpenAI images API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import AsyncOpenAI

from vizqueue.providers.images import convert_image, decode_base64_image, placeholder_image
from vizqueue.providers.retry import RetryPolicy, Sleep, call_with_retry
from vizqueue.queue.errors import TerminalProviderError
from vizqueue.queue.params import DalleParams
from vizqueue.storage.blob_store import AssetStore

logger = logging.getLogger(__name__)


class DalleClient:
  provider = "dalle"

  def __init__(self, api_key: str | None, *, assets: AssetStore, mock: bool = False, policy: RetryPolicy | None = None, sleep: Sleep = asyncio.sleep, client: AsyncOpenAI | None = None) -> None:
    self._api_key = api_key
    self._assets = assets
    self.mock = mock
    self._policy = policy or RetryPolicy()
    self._sleep = sleep
    self._client = client

  def _get_client(self) -> AsyncOpenAI:
    if self._client is None:
      if not self._api_key:
        raise ValueError("OPENAI_API_KEY environment variable is required")
      self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
    return self._client

  async def generate(self, params: DalleParams) -> dict[str, Any]:
    if self.mock:
      logger.info("Dalle mock image for %s", params.outputPath)
      asset = await self._assets.upload_and_get_cdn_link(placeholder_image(params.prompt), params.outputPath)
      return {**asset.to_result(), "outputPath": params.outputPath}

    client = self._get_client()

    async def _once() -> tuple[bytes, str | None]:
      response = await client.images.generate(model=params.model, prompt=params.prompt, size=params.size, n=1, response_format="b64_json")
      image = response.data[0] if response.data else None
      if image is None or not image.b64_json:
        raise TerminalProviderError("Image response contained no data", provider=self.provider, requeue=True)
      return decode_base64_image(image.b64_json), image.revised_prompt

    data, revised_prompt = await call_with_retry(f"dalle:{params.outputPath}", _once, policy=self._policy, provider=self.provider, sleep=self._sleep)
    asset = await self._assets.upload_and_get_cdn_link(convert_image(data, "webp"), params.outputPath)
    return {**asset.to_result(), "outputPath": params.outputPath, "revisedPrompt": revised_prompt}
