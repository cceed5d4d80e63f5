"""Gemini client using the google-genai SDK."""

from __future__ import annotations

import logging
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from vizqueue.providers.base import LlmClient, LlmResponse
from vizqueue.providers.retry import call_with_retry, classify_http_error
from vizqueue.queue.params import LlmParams

logger = logging.getLogger(__name__)


class GeminiClient(LlmClient):
  provider = "gemini"

  def __init__(self, api_key: str | None, *, client: genai.Client | None = None, **kwargs: Any) -> None:
    super().__init__(**kwargs)
    self._api_key = api_key
    self._client = client

  def _get_client(self) -> genai.Client:
    if self._client is None:
      if not self._api_key:
        raise ValueError("GEMINI_API_KEY environment variable is required")
      self._client = genai.Client(api_key=self._api_key)
    return self._client

  @staticmethod
  def _contents(params: LlmParams) -> tuple[str | None, list[types.Content]]:
    """Split chat messages into a system instruction and Gemini contents."""
    system: list[str] = []
    contents: list[types.Content] = []
    for message in params.chat_messages():
      if message["role"] == "system":
        system.append(message["content"])
        continue
      role = "model" if message["role"] == "assistant" else "user"
      contents.append(types.Content(role=role, parts=[types.Part.from_text(text=message["content"])]))
    return ("\n\n".join(system) or None), contents

  async def complete(self, params: LlmParams) -> LlmResponse:
    if self.mock:
      logger.info("Gemini mock response for model %s", params.model)
      return self.mock_response(params)

    client = self._get_client()
    system_instruction, contents = self._contents(params)
    config = types.GenerateContentConfig(
      system_instruction=system_instruction,
      temperature=params.temperature,
      max_output_tokens=params.maxTokens,
      response_mime_type="application/json" if params.responseFormat == "json" else None,
    )

    async def _once() -> LlmResponse:
      try:
        # Use the async client to avoid blocking the asyncio event loop.
        response = await client.aio.models.generate_content(model=params.model, contents=contents, config=config)
      except genai_errors.APIError as exc:
        raise classify_http_error(exc.code or 500, str(exc), provider=self.provider) from exc

      content = response.text or ""
      parsed = self.parse_json(content) if params.responseFormat == "json" else None
      usage = None
      if response.usage_metadata:
        usage = {"prompt_tokens": response.usage_metadata.prompt_token_count or 0, "completion_tokens": response.usage_metadata.candidates_token_count or 0, "total_tokens": response.usage_metadata.total_token_count or 0}
      return LlmResponse(content=content, parsed=parsed, usage=usage, model=params.model)

    return await call_with_retry(f"gemini:{params.model}", _once, policy=self.policy, provider=self.provider, sleep=self.sleep)
