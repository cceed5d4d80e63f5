from __future__ import annotations

from vizqueue.config import Settings
from vizqueue.services.tasks.gcp import CloudTasksEnqueuer
from vizqueue.services.tasks.interface import TaskEnqueuer
from vizqueue.services.tasks.local import LocalHttpEnqueuer


def get_task_enqueuer(settings: Settings) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "gcp":
    return CloudTasksEnqueuer(settings)
  return LocalHttpEnqueuer(settings)
