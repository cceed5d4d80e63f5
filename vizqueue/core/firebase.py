import logging
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials, db, firestore
from google.cloud.firestore import Client as FirestoreClient

from vizqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)


def initialize_firebase(settings: Settings | None = None) -> None:
  """Initializes the Firebase Admin SDK."""
  if firebase_admin._apps:
    return

  settings = settings or get_settings()
  if not settings.firebase_project_id:
    logger.warning("Firebase Project ID not set. Firebase Admin SDK not initialized.")
    return

  options: dict[str, Any] = {"projectId": settings.firebase_project_id}
  # The realtime database hosts catalogue progress; Firestore needs no URL.
  if settings.firebase_database_url:
    options["databaseURL"] = settings.firebase_database_url

  if settings.firebase_service_account_json_path:
    cred = credentials.Certificate(settings.firebase_service_account_json_path)
    firebase_admin.initialize_app(cred, options)
  else:
    # Use default credentials (e.g. Google Application Default Credentials)
    firebase_admin.initialize_app(options=options)
  logger.info("Firebase Admin SDK initialized for project %s.", settings.firebase_project_id)


def get_firestore_client() -> FirestoreClient:
  """Returns a Firestore client instance. Lazily initializes if needed."""
  if not firebase_admin._apps:
    initialize_firebase()
  return firestore.client()


def get_database_root() -> db.Reference:
  """Return the realtime database root reference."""
  if not firebase_admin._apps:
    initialize_firebase()
  return db.reference("/")


def verify_id_token(id_token: str) -> dict[str, Any] | None:
  """Verifies a Firebase ID token. Lazily initializes if needed."""
  if not firebase_admin._apps:
    initialize_firebase()

  try:
    return auth.verify_id_token(id_token)
  except (ValueError, auth.InvalidIdTokenError, auth.ExpiredIdTokenError, auth.RevokedIdTokenError, auth.CertificateFetchError) as exc:
    logger.warning("Token verification failed: %s", exc)
    return None
