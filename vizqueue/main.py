from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from vizqueue import __version__
from vizqueue.api.routes import callbacks, progress, queue, tasks
from vizqueue.config import get_settings
from vizqueue.core.exceptions import (
  global_exception_handler,
  http_exception_handler,
  queue_input_exception_handler,
  request_validation_exception_handler,
  store_contention_exception_handler,
  unknown_queue_exception_handler,
)
from vizqueue.core.lifespan import lifespan
from vizqueue.queue.errors import IdentityIncomplete, InvalidQueueParams, StoreContention, UnknownQueueType

settings = get_settings()

app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length"])

app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(IdentityIncomplete, queue_input_exception_handler)
app.add_exception_handler(InvalidQueueParams, queue_input_exception_handler)
app.add_exception_handler(UnknownQueueType, unknown_queue_exception_handler)
app.add_exception_handler(StoreContention, store_contention_exception_handler)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(queue.router, prefix="/admin", tags=["admin"])
app.include_router(tasks.router, prefix="/internal", tags=["tasks"])
app.include_router(callbacks.router, tags=["callbacks"])
app.include_router(progress.router, prefix="/v1", tags=["progress"])
