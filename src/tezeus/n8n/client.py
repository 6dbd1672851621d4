"""N8N webhook calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tezeus.infra.http import post_json
from tezeus.infra.workspace_settings import WebhookTarget
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)

SEND_TIMEOUT = 15
FORWARD_TIMEOUT = 10


@dataclass(frozen=True)
class N8nResult:
    ok: bool
    status_code: int | None
    body: Any = None
    error: str | None = None


def body_reports_error(body: Any) -> str | None:
    """N8N flows answer 200 with ``{"error": ...}`` or ``{"success": false}`` on failure."""
    if not isinstance(body, dict):
        return None
    if body.get("error"):
        return str(body["error"])
    if body.get("success") is False:
        return str(body.get("message") or "N8N reported success=false")
    return None


def post_send(url: str, payload: dict[str, Any]) -> N8nResult:
    """POST a send payload to the workspace flow."""
    http = post_json(url, payload, timeout=SEND_TIMEOUT)
    if not http.ok:
        return N8nResult(
            ok=False,
            status_code=http.status_code,
            body=http.body,
            error=f"N8N webhook failed with status {http.status_code}" if http.status_code else http.error,
        )
    error = body_reports_error(http.body)
    if error:
        return N8nResult(ok=False, status_code=http.status_code, body=http.body, error=error)
    return N8nResult(ok=True, status_code=http.status_code, body=http.body)


def forward_event(target: WebhookTarget, payload: dict[str, Any], *, kind: str) -> bool:
    """Best-effort forward of a webhook or status event.

    Returns:
        True on 2xx. Failures are logged, never raised.
    """
    http = post_json(target.url, payload, headers=target.headers(), timeout=FORWARD_TIMEOUT)
    log_ctx = safe_log_context(kind=kind, status_code=http.status_code, error=http.error)
    if http.ok:
        logger.info("n8n forward ok", extra={"extra_fields": log_ctx})
    else:
        logger.warning("n8n forward failed", extra={"extra_fields": log_ctx})
    return http.ok
