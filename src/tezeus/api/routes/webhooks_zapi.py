"""Z-API webhook.

Status callbacks update message status the same way N8N status callbacks
do. Inbound messages map the sender LID to the contact and follow the
common inbound path. Every accepted payload is forwarded to N8N as-is,
plus our ids.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response

from tezeus.api.webhook_auth import verify_webhook_secret
from tezeus.domain.inbound import (
    InboundMessage,
    InboundResult,
    UnknownSenderError,
    enqueue_distribution,
    record_inbound,
)
from tezeus.domain.message_status import (
    InvalidStatusPayloadError,
    MessageNotFoundError,
    reconcile_status,
)
from tezeus.infra.db import savepoint, txn
from tezeus.infra.repositories.connections_repository import (
    get_connection_by_instance,
    update_status,
)
from tezeus.infra.workspace_settings import get_inbound_forward_target
from tezeus.n8n.client import forward_event
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.tasks.client import TasksClient
from tezeus.whatsapp.dedup import recent_events
from tezeus.whatsapp.evolution_adapter import InvalidPayloadError
from tezeus.whatsapp.models import ZapiEvent
from tezeus.whatsapp.zapi_adapter import parse_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)

_tasks_client = TasksClient()

_CONNECTION_CALLBACKS: dict[str, str] = {
    "ConnectedCallback": "connected",
    "DisconnectedCallback": "disconnected",
}


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


def _apply_status_callback(event: ZapiEvent, connection: dict[str, Any]) -> dict[str, int]:
    counts = {"updated": 0, "skipped": 0, "not_found": 0}
    with txn() as cur:
        for index, message_id in enumerate(event.message_ids):
            try:
                with savepoint(cur, f"zapi_status_{index}"):
                    result = reconcile_status(
                        cur,
                        {
                            "workspace_id": connection["workspace_id"],
                            "connection_id": connection["id"],
                            "status": event.status,
                            "external_id": message_id,
                            "phone": event.phone,
                        },
                    )
            except MessageNotFoundError:
                counts["not_found"] += 1
                continue
            except InvalidStatusPayloadError:
                counts["skipped"] += 1
                continue
            counts[result["action"]] += 1
    return counts


def _inbound_from_event(event: ZapiEvent) -> InboundMessage:
    return InboundMessage(
        external_id=event.message_ids[0] if event.message_ids else "",
        phone=event.phone or "",
        content=event.text or "",
        message_type=event.media_kind or "text",
        push_name=event.sender_name,
        file_url=event.media_url,
        whatsapp_lid=event.chat_lid,
        provider="zapi",
    )


def _handle_inbound(event: ZapiEvent, connection: dict[str, Any]) -> tuple[InboundResult | None, str]:
    message = _inbound_from_event(event)
    if not message.external_id:
        return None, "missing message id"

    try:
        with txn() as cur:
            result = record_inbound(cur, connection=connection, message=message)
    except UnknownSenderError:
        logger.warning(
            "zapi inbound without resolvable sender",
            extra={"extra_fields": safe_log_context(connection_id=connection["id"])},
        )
        return None, "ignored"

    if result.duplicate:
        return result, "duplicate"

    if result.new_conversation:
        enqueue_distribution(
            _get_tasks_client(),
            conversation_id=result.conversation_id,
            correlation_id=get_correlation_id(),
        )
    return result, "ok"


def _forward(event: ZapiEvent, connection: dict[str, Any], result: InboundResult | None) -> None:
    with txn() as cur:
        target = get_inbound_forward_target(cur, workspace_id=connection["workspace_id"])
    if target is None:
        return
    payload = dict(event.raw)
    payload.update({
        "workspace_id": connection["workspace_id"],
        "connection_id": connection["id"],
        "provider": "zapi",
    })
    if result is not None:
        payload.update({
            "contact_id": result.contact_id,
            "conversation_id": result.conversation_id,
            "message_id": result.message_id,
        })
    forward_event(target, payload, kind="zapi")


@router.post("/zapi")
async def zapi_webhook(request: Request) -> Response:
    """Receive a Z-API webhook.

    Returns:
        200 when processed, ignored or duplicate.
        400 if the payload is invalid.
        401 if the shared secret does not match.
        404 if the instance is not a known connection.
        500 if processing fails.
    """
    correlation_id = get_correlation_id()

    if not verify_webhook_secret(
        request,
        env_var="ZAPI_WEBHOOK_SECRET",
        headers=("X-Webhook-Secret", "z-api-token"),
    ):
        return Response(status_code=401, content="unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        event = parse_event(payload)
    except InvalidPayloadError:
        logger.warning(
            "invalid zapi payload shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload shape")

    with txn() as cur:
        connection = get_connection_by_instance(cur, instance=event.instance_id)
    if connection is None:
        logger.warning(
            "zapi webhook for unknown instance",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event_type=event.event_type)},
        )
        return Response(status_code=404, content="connection not found")

    logger.info(
        "zapi webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_type=event.event_type,
                connection_id=connection["id"],
                status_callback=event.is_status_callback,
            )
        },
    )

    dedup = None
    try:
        if event.event_type in _CONNECTION_CALLBACKS:
            with txn() as cur:
                update_status(cur, connection_id=connection["id"], status=_CONNECTION_CALLBACKS[event.event_type])
            return Response(status_code=200, content="ok")

        if event.is_status_callback:
            if not event.status:
                return Response(status_code=200, content="ignored")
            counts = _apply_status_callback(event, connection)
            logger.info(
                "zapi status callback applied",
                extra={"extra_fields": safe_log_context(connection_id=connection["id"], **counts)},
            )
            _forward(event, connection, None)
            return Response(status_code=200, content="ok")

        dedup = f"{event.event_type}:{event.message_ids[0]}" if event.message_ids else None
        if recent_events.seen(dedup):
            return Response(status_code=200, content="duplicate")

        result = None
        outcome = "ignored"
        if not event.from_me and not event.is_group:
            result, outcome = _handle_inbound(event, connection)
            if outcome == "missing message id":
                return Response(status_code=400, content=outcome)
            if outcome == "duplicate":
                return Response(status_code=200, content=outcome)

        _forward(event, connection, result)
    except Exception:
        logger.exception(
            "zapi webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        recent_events.forget(dedup)
        return Response(status_code=500, content="processing failed")

    return Response(status_code=200, content=outcome)
