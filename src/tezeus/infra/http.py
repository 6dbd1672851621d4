"""Outbound JSON-over-HTTP helper for provider and N8N calls.

Retries network errors and 5xx responses with a linear backoff. HTTP error
statuses are returned, not raised, so callers can branch on them and record
them in provider logs.
"""

import time
from dataclasses import dataclass
from typing import Any

import requests

from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 15

# Base delay (seconds) multiplied by the attempt number
RETRY_DELAY = 1.0


@dataclass(frozen=True)
class HttpResult:
    """Outcome of an outbound call."""

    ok: bool
    status_code: int | None
    body: Any
    elapsed_ms: int
    error: str | None = None

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


def _parse_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def request_json(
    method: str,
    url: str,
    *,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_attempts: int = 1,
) -> HttpResult:
    """Send a JSON request and return an HttpResult.

    Args:
        method: HTTP method ("GET", "POST", "DELETE", ...).
        url: Absolute URL. Never logged in full.
        payload: JSON body.
        headers: Extra headers (credentials stay out of logs).
        timeout: Per-attempt timeout in seconds.
        max_attempts: Total attempts for network errors and 5xx responses.

    Returns:
        HttpResult. ``ok`` is True only for 2xx.

    Raises:
        ValueError: ``max_attempts`` is below 1.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    all_headers = {"Content-Type": "application/json"}
    if headers:
        all_headers.update(headers)

    started = time.monotonic()
    last_result = HttpResult(ok=False, status_code=None, body=None, elapsed_ms=0, error="not attempted")

    for attempt in range(1, max_attempts + 1):
        try:
            response = requests.request(
                method,
                url,
                json=payload,
                headers=all_headers,
                timeout=timeout,
            )
        except requests.RequestException as e:
            elapsed = int((time.monotonic() - started) * 1000)
            last_result = HttpResult(
                ok=False,
                status_code=None,
                body=None,
                elapsed_ms=elapsed,
                error=type(e).__name__,
            )
        else:
            elapsed = int((time.monotonic() - started) * 1000)
            body = _parse_body(response)
            last_result = HttpResult(
                ok=response.ok,
                status_code=response.status_code,
                body=body,
                elapsed_ms=elapsed,
                error=None if response.ok else f"HTTP {response.status_code}",
            )
            if response.ok or response.status_code < 500:
                return last_result

        if attempt < max_attempts:
            logger.warning(
                "outbound request failed, retrying",
                extra={
                    "extra_fields": safe_log_context(
                        method=method,
                        attempt=attempt,
                        status_code=last_result.status_code,
                        error=last_result.error,
                    )
                },
            )
            time.sleep(RETRY_DELAY * attempt)

    return last_result


def post_json(
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_attempts: int = 1,
) -> HttpResult:
    """POST shortcut for request_json."""
    return request_json(
        "POST",
        url,
        payload=payload,
        headers=headers,
        timeout=timeout,
        max_attempts=max_attempts,
    )
