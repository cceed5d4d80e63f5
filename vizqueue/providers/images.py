"""Pillow helpers for normalizing generated images."""

from __future__ import annotations

import base64
import hashlib
import io

from PIL import Image, ImageDraw

_FORMAT_CONTENT_TYPES = {"webp": "image/webp", "jpeg": "image/jpeg", "png": "image/png"}


def content_type_for(output_format: str) -> str:
  return _FORMAT_CONTENT_TYPES[output_format]


def convert_image(data: bytes, output_format: str = "webp", *, quality: int = 90) -> bytes:
  """Re-encode provider output into the format we store."""
  with Image.open(io.BytesIO(data)) as image:
    # JPEG and WebP without alpha need RGB; palette images need conversion first.
    if output_format == "jpeg" or image.mode not in {"RGB", "RGBA"}:
      image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=output_format.upper(), quality=quality)
    return buffer.getvalue()


def decode_base64_image(payload: str) -> bytes:
  """Decode a base64 image, accepting data URLs."""
  if payload.startswith("data:"):
    _, _, payload = payload.partition(",")
  return base64.b64decode(payload)


def placeholder_image(label: str, *, width: int = 576, height: int = 1024, output_format: str = "webp") -> bytes:
  """Deterministic stand-in image for mock mode, tinted by the label."""
  digest = hashlib.sha256(label.encode("utf-8")).digest()
  image = Image.new("RGB", (width, height), color=(digest[0], digest[1], digest[2]))
  ImageDraw.Draw(image).text((16, 16), label[:60], fill=(255, 255, 255))
  buffer = io.BytesIO()
  image.save(buffer, format=output_format.upper())
  return buffer.getvalue()
