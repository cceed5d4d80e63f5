"""Shared FastAPI dependencies for auth and queue wiring."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from vizqueue.config import Settings, get_settings
from vizqueue.core.firebase import verify_id_token
from vizqueue.progress.tracker import CatalogueProgressTracker
from vizqueue.queue.registry import QueueRegistry, build_queue_registry
from vizqueue.services.tasks.factory import get_task_enqueuer
from vizqueue.services.tasks.interface import TaskEnqueuer
from vizqueue.storage.factory import get_asset_store, get_catalogue_repo, get_queue_repo

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer()


async def require_admin(token: Annotated[HTTPAuthorizationCredentials, Depends(security_scheme)]) -> dict[str, Any]:
  """Verify the Firebase ID token and require the admin custom claim."""
  claims = await run_in_threadpool(verify_id_token, token.credentials)
  if not claims:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials", headers={"WWW-Authenticate": "Bearer"})
  if claims.get("admin") is not True:
    logger.warning("Non-admin uid=%s attempted an admin queue operation", claims.get("uid"))
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
  return claims


@lru_cache(maxsize=1)
def _task_enqueuer(settings: Settings) -> TaskEnqueuer:
  return get_task_enqueuer(settings)


@lru_cache(maxsize=1)
def _queue_registry(settings: Settings) -> QueueRegistry:
  enqueuer = _task_enqueuer(settings)
  return build_queue_registry(settings, repo=get_queue_repo(settings), assets=get_asset_store(settings), launcher=enqueuer.enqueue_launch)


def get_task_launcher(settings: Annotated[Settings, Depends(get_settings)]) -> TaskEnqueuer:
  return _task_enqueuer(settings)


def get_queue_registry(settings: Annotated[Settings, Depends(get_settings)]) -> QueueRegistry:
  return _queue_registry(settings)


def get_progress_tracker(settings: Annotated[Settings, Depends(get_settings)]) -> CatalogueProgressTracker:
  return CatalogueProgressTracker(get_catalogue_repo(settings))
