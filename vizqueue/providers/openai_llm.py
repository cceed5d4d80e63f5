"""OpenAI chat completion client."""

from __future__ import annotations

import logging
from typing import Any

from openai import AsyncOpenAI

from vizqueue.providers.base import LlmClient, LlmResponse
from vizqueue.providers.retry import call_with_retry
from vizqueue.queue.params import LlmParams

logger = logging.getLogger(__name__)


class OpenAIChatClient(LlmClient):
  """Chat completions through the official async SDK."""

  provider = "openai"

  def __init__(self, api_key: str | None, *, base_url: str | None = None, client: AsyncOpenAI | None = None, **kwargs: Any) -> None:
    super().__init__(**kwargs)
    self._api_key = api_key
    self._base_url = base_url
    self._client = client

  def _get_client(self) -> AsyncOpenAI:
    # Built lazily so mock deployments need no key.
    if self._client is None:
      if not self._api_key:
        raise ValueError("OPENAI_API_KEY environment variable is required")
      # The SDK's own retries would hide failures from our retry accounting.
      self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url, max_retries=0)
    return self._client

  async def complete(self, params: LlmParams) -> LlmResponse:
    if self.mock:
      logger.info("OpenAI mock response for model %s", params.model)
      return self.mock_response(params)

    client = self._get_client()
    request: dict[str, Any] = {"model": params.model, "messages": params.chat_messages()}
    if params.temperature is not None:
      request["temperature"] = params.temperature
    if params.maxTokens is not None:
      request["max_tokens"] = params.maxTokens
    if params.responseFormat == "json":
      request["response_format"] = {"type": "json_object"}

    async def _once() -> LlmResponse:
      response = await client.chat.completions.create(**request)
      content = response.choices[0].message.content or ""
      parsed = self.parse_json(content) if params.responseFormat == "json" else None
      usage = None
      if response.usage:
        usage = {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}
      return LlmResponse(content=content, parsed=parsed, usage=usage, model=params.model)

    return await call_with_retry(f"openai:{params.model}", _once, policy=self.policy, provider=self.provider, sleep=self.sleep)
