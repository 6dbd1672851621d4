"""Worker route delivering stored outgoing messages.

POST /tasks/messages/send: N8N first when the workspace has a flow,
otherwise (or when N8N fails) directly through the WhatsApp providers.
Permanent failures are acknowledged with 200 so the queue drops them;
transient ones return 500 so the queue retries.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tezeus.api.task_auth import require_task_auth
from tezeus.infra.db import txn
from tezeus.infra.repositories.connections_repository import get_connection
from tezeus.infra.repositories.messages_repository import get_send_payload, mark_failed, mark_sent
from tezeus.infra.workspace_settings import (
    get_active_provider_config,
    get_n8n_webhook_url,
    get_provider_config,
)
from tezeus.n8n.client import N8nResult, post_send
from tezeus.n8n.payloads import build_send_payload
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import redact_string, safe_log_context
from tezeus.whatsapp.models import ProviderConfig
from tezeus.whatsapp.sender import send_with_optional_fallback

router = APIRouter(prefix="/tasks/messages", tags=["tasks"])

logger = get_logger(__name__)

SENDABLE_STATUSES = ("sending", "failed")
MAX_ERROR_LENGTH = 500


def sanitize_error(error: str | None) -> str:
    return redact_string(error or "Unknown error")[:MAX_ERROR_LENGTH]


def provider_message_id(body: Any) -> str | None:
    """Provider id echoed in an N8N response body, if any."""
    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return None
    key = body.get("key") if isinstance(body.get("key"), dict) else {}
    for value in (key.get("id"), body.get("messageId"), body.get("zaapId"), body.get("id")):
        if value:
            return str(value)
    return None


def _load(message_id: str) -> tuple[dict[str, Any] | None, str | None, ProviderConfig | None, dict[str, Any]]:
    with txn() as cur:
        message = get_send_payload(cur, message_id=message_id)
        if message is None:
            return None, None, None, {}
        workspace_id = message["workspace_id"]
        url = get_n8n_webhook_url(cur, workspace_id=workspace_id)
        config = None
        if message["provider"]:
            config = get_provider_config(cur, workspace_id=workspace_id, provider=message["provider"])
        if config is None:
            config = get_active_provider_config(cur, workspace_id=workspace_id)
        connection = get_connection(cur, connection_id=message["connection_id"]) if message["connection_id"] else None
    return message, url, config, (connection or {}).get("metadata") or {}


def _send_via_n8n(
    message: dict[str, Any],
    url: str,
    config: ProviderConfig,
    connection_metadata: dict[str, Any],
) -> N8nResult:
    payload = build_send_payload(
        message,
        config=config.for_connection(message["instance_name"], connection_metadata),
        destination=url,
        connection_metadata=connection_metadata,
    )
    return post_send(url, payload)


@router.post("/send")
async def send_message_task(request: Request) -> JSONResponse:
    """Deliver one stored message.

    Expected payload (ids only): message_id, workspace_id, correlation_id.

    Returns:
        200 when sent, skipped, or failed permanently.
        400 if message_id is missing.
        401 if task auth fails.
        500 on a transient failure (retried by the queue).
    """
    require_task_auth(request)
    correlation_id = get_correlation_id()

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        return JSONResponse(status_code=400, content={"error": "invalid json"})

    message_id = payload.get("message_id")
    if not message_id:
        return JSONResponse(status_code=400, content={"error": "missing message_id"})

    message, url, config, connection_metadata = _load(message_id)
    if message is None:
        logger.warning(
            "send task for unknown message",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, message_id=message_id)},
        )
        return JSONResponse(status_code=200, content={"status": "not_found", "message_id": message_id})

    if message["status"] not in SENDABLE_STATUSES:
        return JSONResponse(
            status_code=200,
            content={"status": "skipped", "message_id": message_id, "current_status": message["status"]},
        )

    log_ctx = {"correlationId": correlation_id, "workspace_id": message["workspace_id"], "message_id": message_id}
    n8n_error = None

    if url and config is not None:
        n8n = _send_via_n8n(message, url, config, connection_metadata)
        if n8n.ok:
            provider_msg_id = provider_message_id(n8n.body)
            with txn() as cur:
                mark_sent(
                    cur,
                    message_id=message_id,
                    provider_msg_id=provider_msg_id,
                    method="n8n",
                    metadata={"provider": config.provider},
                )
            logger.info("message sent via n8n", extra={"extra_fields": safe_log_context(**log_ctx)})
            return JSONResponse(status_code=200, content={"status": "sent", "method": "n8n", "message_id": message_id})

        n8n_error = sanitize_error(n8n.error)
        logger.warning(
            "n8n send failed, sending directly",
            extra={"extra_fields": safe_log_context(status_code=n8n.status_code, **log_ctx)},
        )

    result = send_with_optional_fallback(
        workspace_id=message["workspace_id"],
        phone=message["phone"],
        message_type=message["message_type"] or "text",
        text=message["content"] or "",
        media_url=message["file_url"],
        file_name=message["file_name"],
        mime_type=message["mime_type"],
        instance=message["instance_name"],
        connection_metadata=connection_metadata,
    )

    if result.success:
        with txn() as cur:
            mark_sent(
                cur,
                message_id=message_id,
                provider_msg_id=result.provider_msg_id,
                method="direct",
                metadata={"provider": result.provider, "failover_from": result.failover_from, "n8n_error": n8n_error},
            )
        logger.info(
            "message sent directly",
            extra={"extra_fields": safe_log_context(provider=result.provider, failover_from=result.failover_from, **log_ctx)},
        )
        return JSONResponse(
            status_code=200,
            content={"status": "sent", "method": "direct", "provider": result.provider, "message_id": message_id},
        )

    error = sanitize_error(result.error)
    with txn() as cur:
        mark_failed(
            cur,
            message_id=message_id,
            metadata={"error": error, "provider": result.provider, "n8n_error": n8n_error, "permanent": result.permanent},
        )
    logger.error(
        "message send failed",
        extra={"extra_fields": safe_log_context(provider=result.provider, permanent=result.permanent, **log_ctx)},
    )

    status_code = 200 if result.permanent else 500
    return JSONResponse(
        status_code=status_code,
        content={"status": "failed", "message_id": message_id, "error": error, "permanent": result.permanent},
    )
