"""Base interfaces for provider clients."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from vizqueue.providers.retry import RetryPolicy, Sleep
from vizqueue.queue.params import LlmParams


@dataclass
class LlmResponse:
  """Normalized LLM completion."""

  content: str
  parsed: Any = None
  usage: dict[str, int] | None = None
  model: str | None = None

  def to_result(self) -> dict[str, Any]:
    result: dict[str, Any] = {"content": self.content, "model": self.model}
    if self.parsed is not None:
      result["parsed"] = self.parsed
    if self.usage:
      result["usage"] = self.usage
    return result


class LlmClient(ABC):
  """Abstract text-generation client; retries are applied by implementations."""

  provider: str

  def __init__(self, *, mock: bool = False, policy: RetryPolicy | None = None, sleep: Sleep = asyncio.sleep) -> None:
    self.mock = mock
    self.policy = policy or RetryPolicy()
    self.sleep = sleep

  @abstractmethod
  async def complete(self, params: LlmParams) -> LlmResponse:
    """Run one completion for the queued params."""

  def mock_response(self, params: LlmParams) -> LlmResponse:
    """Deterministic canned output for mock mode."""
    if params.responseFormat == "json":
      parsed = {"mock": True, "model": params.model}
      return LlmResponse(content=json.dumps(parsed), parsed=parsed, model=params.model)
    return LlmResponse(content=f"[mock {self.provider}:{params.model}]", model=params.model)

  @staticmethod
  def strip_json_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
      text = text.split("\n", 1)[1] if "\n" in text else ""
      if text.rstrip().endswith("```"):
        text = text.rstrip()[:-3]
    return text.strip()

  @classmethod
  def parse_json(cls, content: str) -> Any:
    """Parse JSON output; json.JSONDecodeError marks a retryable malformed response."""
    return json.loads(cls.strip_json_fences(content))
