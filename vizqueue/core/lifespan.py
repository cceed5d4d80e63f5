import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from vizqueue.core.firebase import initialize_firebase
from vizqueue.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and Firebase once uvicorn has started."""
  from vizqueue.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("vizqueue.core.lifespan")

  _initialize_logging(settings)
  logger.info("Startup complete - logging verified (env=%s, backend=%s).", settings.environment, settings.queue_backend)

  # The memory backend runs without any Google project.
  if settings.queue_backend == "firestore":
    initialize_firebase(settings)

  yield

  logger.info("Shutdown complete.")
