"""Wavespeed image generation: sync outputs when available, otherwise submit-then-poll."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from vizqueue.providers.images import content_type_for, convert_image, decode_base64_image, placeholder_image
from vizqueue.providers.polling import PollingConfig, PollResult, poll_until_done
from vizqueue.providers.retry import RetryPolicy, Sleep, call_with_retry, classify_http_error, is_content_policy_message
from vizqueue.queue.errors import ContentPolicyViolation, TerminalProviderError
from vizqueue.queue.params import WavespeedGenerateParams
from vizqueue.storage.blob_store import AssetStore

logger = logging.getLogger(__name__)

WAVESPEED_BASE_URL = "https://api.wavespeed.ai/api/v3"


class WavespeedClient:
  provider = "wavespeed"

  def __init__(self, api_key: str | None, *, assets: AssetStore, polling: PollingConfig | None = None, mock: bool = False, policy: RetryPolicy | None = None, sleep: Sleep = asyncio.sleep, http_client_factory: Callable[[], httpx.AsyncClient] | None = None) -> None:
    self._api_key = api_key
    self._assets = assets
    self._polling = polling or PollingConfig()
    self.mock = mock
    self._policy = policy or RetryPolicy()
    self._sleep = sleep
    self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=120.0))

  def _headers(self) -> dict[str, str]:
    if not self._api_key:
      raise ValueError("WAVESPEED_API_KEY environment variable is required")
    return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

  async def _submit(self, params: WavespeedGenerateParams) -> dict[str, Any]:
    # Safety checker off and sync/base64 on are fixed; the model params cannot override them.
    body = {"prompt": params.prompt, **params.modelParams, "enable_safety_checker": False, "enable_base64_output": True, "enable_sync_mode": True}
    url = f"{WAVESPEED_BASE_URL}/{params.model}"

    async def _once() -> dict[str, Any]:
      async with self._http_client_factory() as client:
        response = await client.post(url, json=body, headers=self._headers())
      if response.status_code != 200:
        raise classify_http_error(response.status_code, response.text, provider=self.provider)
      return response.json().get("data") or {}

    return await call_with_retry(f"wavespeed:submit:{params.model}", _once, policy=self._policy, provider=self.provider, sleep=self._sleep)

  async def poll_result(self, url: str) -> str:
    """Poll a prediction URL until it yields an output; returns the base64 payload."""
    headers = self._headers()

    async def _check(attempt: int) -> PollResult[str]:
      try:
        async with self._http_client_factory() as client:
          response = await client.get(url, headers=headers)
      except httpx.TransportError as exc:
        raise TerminalProviderError(f"Wavespeed poll failed on attempt {attempt}: {exc}", provider=self.provider, requeue=True) from exc

      if response.status_code != 200:
        raise TerminalProviderError(f"Wavespeed poll returned HTTP {response.status_code}: {response.text[:300]}", provider=self.provider, status_code=response.status_code, requeue=True)

      data = response.json().get("data") or {}
      status = data.get("status")
      if status == "completed":
        outputs = data.get("outputs") or []
        if not outputs:
          raise TerminalProviderError("Wavespeed prediction completed with no outputs", provider=self.provider, requeue=True)
        return PollResult.finished(outputs[0])
      if status in {"failed", "error"}:
        message = str(data.get("error") or "Wavespeed prediction failed")
        if is_content_policy_message(message):
          raise ContentPolicyViolation(f"Wavespeed prediction filtered: {message}", provider=self.provider)
        raise TerminalProviderError(f"Wavespeed prediction failed: {message}", provider=self.provider, requeue=True)
      logger.debug("Wavespeed prediction still %s (attempt %d)", status, attempt)
      return PollResult.pending()

    return await poll_until_done(f"wavespeed:poll:{url}", _check, config=self._polling, provider=self.provider, sleep=self._sleep)

  async def generate(self, params: WavespeedGenerateParams) -> dict[str, Any]:
    if self.mock:
      logger.info("Wavespeed mock image for %s", params.outputPath)
      asset = await self._assets.upload_and_get_cdn_link(placeholder_image(params.prompt, output_format=params.outputFormat), params.outputPath, content_type=content_type_for(params.outputFormat))
      return {**asset.to_result(), "outputPath": params.outputPath}

    data = await self._submit(params)
    outputs = data.get("outputs") or []
    poll_url = (data.get("urls") or {}).get("get")
    if outputs:
      encoded = outputs[0]
    elif poll_url:
      logger.info("Wavespeed returned no sync output for %s; polling %s", params.identifier, poll_url)
      encoded = await self.poll_result(poll_url)
    else:
      raise TerminalProviderError("Wavespeed response had neither outputs nor a polling URL", provider=self.provider, requeue=True)

    image = convert_image(decode_base64_image(encoded), params.outputFormat)
    asset = await self._assets.upload_and_get_cdn_link(image, params.outputPath, content_type=content_type_for(params.outputFormat))
    return {**asset.to_result(), "outputPath": params.outputPath, "predictionId": data.get("id")}
