"""Error taxonomy shared by the queue store, workers and providers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

TransientKind = Literal["rate_limit", "server", "network", "parse"]


class QueueError(Exception):
  """Base class for queue subsystem failures."""


class IdentityIncomplete(QueueError, ValueError):
  """Raised when a dedup key cannot be built from the supplied identity."""

  def __init__(self, family: str, missing: Sequence[str]) -> None:
    self.family = family
    self.missing = tuple(missing)
    super().__init__(f"Cannot build {family} key; missing {', '.join(self.missing)}.")


class InvalidQueueParams(QueueError, ValueError):
  """Raised when entry params fail validation for their (type, entryType)."""

  def __init__(self, queue_type: str, entry_type: str, detail: str) -> None:
    self.queue_type = queue_type
    self.entry_type = entry_type
    self.detail = detail
    super().__init__(f"Invalid params for {queue_type}/{entry_type}: {detail}")


class UnknownQueueType(QueueError, LookupError):
  """Raised when a queue name has no registered processor."""

  def __init__(self, queue_name: str) -> None:
    self.queue_name = queue_name
    super().__init__(f"Unknown queue: {queue_name}")


class StoreContention(QueueError):
  """Raised when a store transaction aborts because of concurrent writers."""


class ProviderError(QueueError):
  """Base class for failures raised while calling an external provider."""

  content_filtered = False

  def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None, trace: Sequence[str] = ()) -> None:
    self.message = message
    self.provider = provider
    self.status_code = status_code
    self.trace = tuple(trace)
    super().__init__(message)

  def diagnostic(self) -> str:
    """Render the message plus the attempt trace for persistence."""
    if not self.trace:
      return self.message
    return f"{self.message} | {'; '.join(self.trace)}"


class TransientProviderError(ProviderError):
  """Retryable failure: rate limits, server errors, network drops, malformed output."""

  def __init__(self, message: str, *, kind: TransientKind, provider: str | None = None, status_code: int | None = None, trace: Sequence[str] = ()) -> None:
    self.kind = kind
    super().__init__(message, provider=provider, status_code=status_code, trace=trace)


class TerminalProviderError(ProviderError):
  """Non-retryable failure, or a transient failure whose retries are spent.

  `requeue` marks failures worth a fresh queue-level attempt (e.g. a remote job
  that failed or timed out) as opposed to requests the provider rejected.
  """

  def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None, trace: Sequence[str] = (), requeue: bool = False) -> None:
    self.requeue = requeue
    super().__init__(message, provider=provider, status_code=status_code, trace=trace)


class ContentPolicyViolation(ProviderError):
  """The provider refused the request on content grounds; never retried."""

  content_filtered = True
