"""Tasks client with idempotent enqueue.

Backends, selected with the TASKS_BACKEND env var:
- inline (default): records the task without running it (dev/tests)
- http: POSTs the task straight to the worker
- cloud_tasks: creates a Google Cloud Tasks HTTP task
"""

import os
from datetime import datetime


def _backend_from_env() -> str:
    return os.environ.get("TASKS_BACKEND", "inline")


class TasksClient:
    """Enqueue worker tasks, once per task_id.

    Task payloads carry ids only. Phone numbers and message text are read
    back from the database by the worker.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._executed_ids: set[str] = set()
        self._scheduled_tasks: list[dict] = []
        self._backend = backend or _backend_from_env()

    @property
    def backend(self) -> str:
        return self._backend

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a task for a worker endpoint.

        Args:
            task_id: Idempotency key (e.g. "message-send:{message_id}").
            url_path: Worker endpoint path (e.g. "/tasks/messages/send").
            payload: Task data, ids only.
            correlation_id: Forwarded as X-Correlation-Id.
            schedule_time: Optional future execution time.

        Returns:
            True if enqueued, False if the task_id was already seen or the
            backend refused it.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._executed_ids:
            return False

        self._executed_ids.add(task_id)

        if self._backend == "inline":
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        elif self._backend == "http":
            from tezeus.tasks.http_backend import enqueue_http
            return enqueue_http(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        elif self._backend == "cloud_tasks":
            from tezeus.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_executed(self, task_id: str) -> bool:
        return task_id in self._executed_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded by the inline backend (used by tests)."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        self._executed_ids.clear()
        self._scheduled_tasks.clear()
