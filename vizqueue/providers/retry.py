"""Bounded retry for provider calls.

Each call moves through an explicit, immutable AttemptState: parse errors get one
immediate retry, rate-limit/server/network errors get one retry after a fixed
backoff, and everything else (content policy, other 4xx) is terminal at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

import httpx
import openai

from vizqueue.queue.errors import ContentPolicyViolation, ProviderError, TerminalProviderError, TransientProviderError

T = TypeVar("T")

logger = logging.getLogger(__name__)

CONTENT_POLICY_PHRASES: tuple[str, ...] = ("filtered", "violated", "content policy", "safety check", "content_policy_violation")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
  """Retry budget for one provider call."""

  backoff_seconds: float = 10.0
  max_backoff_retries: int = 1
  max_parse_retries: int = 1


@dataclass(frozen=True)
class AttemptState:
  """Where a call stands; a new state is derived for every attempt."""

  attempt: int = 1
  backoff_retries: int = 0
  parse_retries: int = 0
  trace: tuple[str, ...] = ()

  def failed(self, error: ProviderError) -> AttemptState:
    note = f"attempt {self.attempt} failed: {error.message}"
    return replace(self, trace=self.trace + (note,))

  def next_attempt(self, error: TransientProviderError, policy: RetryPolicy) -> tuple[AttemptState, float] | None:
    """Return the next state and the delay before it, or None when the budget is spent."""
    if error.kind == "parse":
      if self.parse_retries >= policy.max_parse_retries:
        return None
      return replace(self, attempt=self.attempt + 1, parse_retries=self.parse_retries + 1, trace=self.trace + ("retrying immediately",)), 0.0
    if self.backoff_retries >= policy.max_backoff_retries:
      return None
    note = f"backing off {policy.backoff_seconds:g}s"
    return replace(self, attempt=self.attempt + 1, backoff_retries=self.backoff_retries + 1, trace=self.trace + (note,)), policy.backoff_seconds


def is_content_policy_message(message: str) -> bool:
  lowered = message.lower()
  return any(phrase in lowered for phrase in CONTENT_POLICY_PHRASES)


def classify_http_error(status_code: int, body: str, *, provider: str | None = None) -> ProviderError:
  """Map an HTTP failure to the provider error taxonomy."""
  message = f"HTTP {status_code}: {body[:500]}"
  # Content refusals can arrive with any status, so the phrases win.
  if is_content_policy_message(body):
    return ContentPolicyViolation(message, provider=provider, status_code=status_code)
  if status_code == 429:
    return TransientProviderError(message, kind="rate_limit", provider=provider, status_code=status_code)
  if status_code >= 500:
    return TransientProviderError(message, kind="server", provider=provider, status_code=status_code)
  return TerminalProviderError(message, provider=provider, status_code=status_code)


def classify_exception(exc: Exception, *, provider: str | None = None) -> ProviderError:
  """Map SDK/transport/parse exceptions onto the provider error taxonomy."""
  if isinstance(exc, ProviderError):
    return exc
  if isinstance(exc, httpx.HTTPStatusError):
    return classify_http_error(exc.response.status_code, exc.response.text, provider=provider)
  if isinstance(exc, openai.APIStatusError):
    return classify_http_error(exc.status_code, str(exc.message), provider=provider)
  if isinstance(exc, httpx.TransportError | openai.APIConnectionError):
    return TransientProviderError(f"Network error: {exc}", kind="network", provider=provider)
  if isinstance(exc, json.JSONDecodeError | SyntaxError):
    return TransientProviderError(f"Malformed response: {exc}", kind="parse", provider=provider)
  return TerminalProviderError(f"{type(exc).__name__}: {exc}", provider=provider)


async def call_with_retry(operation_name: str, func: Callable[[], Awaitable[T]], *, policy: RetryPolicy | None = None, provider: str | None = None, sleep: Sleep = asyncio.sleep) -> T:
  """Run `func` under the retry policy.

  Raises ContentPolicyViolation or TerminalProviderError; the attempt trace is
  attached to the raised error so it can be written to the queue entry.
  """
  policy = policy or RetryPolicy()
  state = AttemptState()
  while True:
    try:
      return await func()
    except Exception as exc:
      error = classify_exception(exc, provider=provider)
      state = state.failed(error)

      if isinstance(error, ContentPolicyViolation):
        logger.warning("Provider call rejected by content policy: operation=%s attempt=%d", operation_name, state.attempt)
        raise ContentPolicyViolation(error.message, provider=provider, status_code=error.status_code, trace=state.trace) from exc

      if not isinstance(error, TransientProviderError):
        raise TerminalProviderError(error.message, provider=provider, status_code=error.status_code, trace=state.trace, requeue=getattr(error, "requeue", False)) from exc

      advanced = state.next_attempt(error, policy)
      if advanced is None:
        logger.error("Provider call exhausted retries: operation=%s attempts=%d kind=%s", operation_name, state.attempt, error.kind)
        raise TerminalProviderError(f"Retries exhausted: {error.message}", provider=provider, status_code=error.status_code, trace=state.trace) from exc

      state, delay = advanced
      logger.warning("Retrying provider call: operation=%s attempt=%d kind=%s delay=%.1fs", operation_name, state.attempt, error.kind, delay)
      if delay > 0:
        await sleep(delay)
