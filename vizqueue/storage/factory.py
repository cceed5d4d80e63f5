"""Process-wide repository and storage instances selected by VIZQ_QUEUE_BACKEND."""

from __future__ import annotations

import logging
from functools import lru_cache

from vizqueue.config import Settings
from vizqueue.core.firebase import get_database_root, get_firestore_client
from vizqueue.storage.blob_store import AssetStore, GcsAssetStore
from vizqueue.storage.catalogue_repo import CatalogueRepository, FirebaseCatalogueRepository, InMemoryCatalogueRepository
from vizqueue.storage.firestore_queue_repo import FirestoreQueueRepository
from vizqueue.storage.memory_queue_repo import InMemoryQueueRepository
from vizqueue.storage.queue_repo import QueueRepository

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_queue_repo(settings: Settings) -> QueueRepository:
  if settings.queue_backend == "memory":
    logger.info("Using the in-memory queue backend")
    return InMemoryQueueRepository()
  return FirestoreQueueRepository.from_settings(get_firestore_client(), settings)


@lru_cache(maxsize=1)
def get_catalogue_repo(settings: Settings) -> CatalogueRepository:
  if settings.queue_backend == "memory":
    return InMemoryCatalogueRepository()
  return FirebaseCatalogueRepository(get_database_root(), get_firestore_client())


@lru_cache(maxsize=1)
def get_asset_store(settings: Settings) -> AssetStore:
  return GcsAssetStore(settings)
