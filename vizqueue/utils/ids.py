"""Identifier and timestamp utilities."""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone

_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
  """Return the current epoch time in milliseconds."""
  return int(time.time() * 1000)


def random_base36(size: int = 9) -> str:
  """Return a short random base36 token."""
  return "".join(secrets.choice(_BASE36) for _ in range(size))


def generate_batch_id(now: int | None = None) -> str:
  """Return a new batch identifier of the form batch_{ms}_{random}."""
  stamp = now if now is not None else now_ms()
  return f"batch_{stamp}_{random_base36()}"


def minute_stamp(now: int | None = None) -> str:
  """Format a millisecond timestamp as UTC YYYYMMDDHHMM."""
  stamp = now if now is not None else now_ms()
  return datetime.fromtimestamp(stamp / 1000, tz=timezone.utc).strftime("%Y%m%d%H%M")


def iso_from_ms(stamp: int) -> str:
  """Render a millisecond timestamp as an ISO-8601 UTC string."""
  return datetime.fromtimestamp(stamp / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
