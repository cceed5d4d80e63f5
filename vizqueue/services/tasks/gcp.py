from __future__ import annotations

import json
import logging

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import tasks_v2
from starlette.concurrency import run_in_threadpool

from vizqueue.config import Settings

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer:
  """Enqueues queue launches to Google Cloud Tasks."""

  def __init__(self, settings: Settings, *, client: tasks_v2.CloudTasksClient | None = None) -> None:
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def _build_task(self, queue_name: str) -> dict:
    url = f"{self.settings.base_url.rstrip('/')}/internal/tasks/launch-queue"
    headers = {"Content-Type": "application/json"}
    # Authorization carries the OIDC token for Cloud Run, so the shared secret travels in its own header.
    if self.settings.task_secret:
      headers["x-vizq-task-secret"] = self.settings.task_secret
    http_request: dict = {"http_method": tasks_v2.HttpMethod.POST, "url": url, "headers": headers, "body": json.dumps({"queueName": queue_name}).encode()}
    if self.settings.cloud_run_invoker_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_run_invoker_service_account}
    return {"http_request": http_request}

  async def enqueue_launch(self, queue_name: str) -> None:
    """Create an HTTP task that launches the named queue."""
    if not self.settings.cloud_tasks_queue_path:
      logger.error("Cloud Tasks queue path not configured.")
      return

    if not self.settings.base_url:
      logger.error("Base URL not configured.")
      return

    task = self._build_task(queue_name)
    try:
      response = await run_in_threadpool(self.client.create_task, request={"parent": self.settings.cloud_tasks_queue_path, "task": task})
      logger.info("Enqueued task %s to launch queue %s", response.name, queue_name)
    except gcloud_exceptions.GoogleAPICallError as exc:
      logger.error("Failed to enqueue launch task for queue %s: %s", queue_name, exc, exc_info=True)
