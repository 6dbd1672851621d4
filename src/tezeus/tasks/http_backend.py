"""HTTP backend for tasks - POSTs tasks straight to the worker.

Used where the public api and the worker run as separate containers on the
same network (docker compose, staging).
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from tezeus.api.task_auth import LOCAL_DEV_AUDIENCE
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)


def _get_config() -> dict[str, str | int]:
    return {
        "worker_base_url": os.environ.get("WORKER_BASE_URL", "http://worker:8000").rstrip("/"),
        "internal_secret": os.environ.get("INTERNAL_TASK_SECRET", ""),
        "timeout": int(os.environ.get("TASKS_HTTP_TIMEOUT", "30")),
        "audience": os.environ.get("TASKS_OIDC_AUDIENCE", ""),
    }


def _fetch_oidc_token(audience: str) -> str | None:
    """GCP ID token for the worker, from the metadata server or ADC."""
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(audience=audience, error=type(e).__name__)},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to the worker.

    Returns:
        True on 2xx, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    config = _get_config()
    worker_base_url = str(config["worker_base_url"])
    url = f"{worker_base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": task_id,
    }

    if config["audience"] == LOCAL_DEV_AUDIENCE:
        if config["internal_secret"]:
            headers["X-Internal-Task-Secret"] = str(config["internal_secret"])
    else:
        token = _fetch_oidc_token(str(config["audience"]) or worker_base_url)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=config["timeout"],
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path, error=type(e).__name__)},
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
