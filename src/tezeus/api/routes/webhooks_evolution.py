"""Evolution API webhook.

Events handled:
- CONNECTION_UPDATE: connection status
- QRCODE_UPDATED: pairing QR code kept on the connection
- MESSAGES_UPDATE: delivery acks, forwarded to N8N as lean status events
- CONTACTS_UPSERT / CONTACTS_UPDATE: contact upserts
- MESSAGES_UPSERT: inbound messages (stored, distributed, forwarded) and
  echoes of our own sends (short key backfill)

Phone numbers, JIDs and message text stay in memory; logs carry ids only.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response

from tezeus.api.webhook_auth import verify_webhook_secret
from tezeus.domain.inbound import (
    InboundMessage,
    UnknownSenderError,
    enqueue_distribution,
    record_inbound,
)
from tezeus.domain.message_status import advance_status
from tezeus.infra.db import txn
from tezeus.infra.repositories.connections_repository import (
    get_connection_by_instance,
    set_qr_code,
    update_status,
)
from tezeus.infra.repositories.contacts_repository import upsert_contact
from tezeus.infra.repositories.messages_repository import backfill_short_key, find_by_evolution_key
from tezeus.infra.time import seconds_ago
from tezeus.infra.workspace_settings import get_inbound_forward_target, get_status_forward_target
from tezeus.n8n.client import forward_event
from tezeus.n8n.payloads import build_status_payload
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.tasks.client import TasksClient
from tezeus.whatsapp.dedup import recent_events
from tezeus.whatsapp.evolution_adapter import InvalidPayloadError, dedup_key, extract_qr_code, parse_event
from tezeus.whatsapp.models import EvolutionEvent
from tezeus.whatsapp.phone import extract_phone_from_jid, is_broadcast_jid, is_group_jid, is_lid_jid

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)

_tasks_client = TasksClient()

SHORT_KEY_WINDOW_SECONDS = 30

# Evolution connection state -> connections.status
_CONNECTION_STATES: dict[str, str] = {
    "open": "connected",
    "close": "disconnected",
    "connecting": "connecting",
}


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


def _handle_connection_update(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    data = event.raw.get("data") or {}
    state = str(data.get("state") or "").lower()
    status = _CONNECTION_STATES.get(state)
    if status is None:
        return Response(status_code=200, content="ignored")

    phone = extract_phone_from_jid(data.get("wuid")) or None
    with txn() as cur:
        update_status(cur, connection_id=connection["id"], status=status, phone_number=phone)

    logger.info(
        "connection status updated",
        extra={"extra_fields": safe_log_context(connection_id=connection["id"], status=status)},
    )
    return Response(status_code=200, content="ok")


def _handle_qrcode_update(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    qr_code = extract_qr_code(event.raw.get("data"))
    if not qr_code:
        return Response(status_code=200, content="ignored")

    with txn() as cur:
        set_qr_code(cur, connection_id=connection["id"], qr_code=qr_code)

    logger.info(
        "connection qr code updated",
        extra={"extra_fields": safe_log_context(connection_id=connection["id"])},
    )
    return Response(status_code=200, content="ok")


def _handle_status_update(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    if not event.status:
        return Response(status_code=200, content="ignored")

    lookup_ids = [i for i in (event.key_id, event.message_id) if i]
    if not lookup_ids:
        return Response(status_code=200, content="ignored")

    with txn() as cur:
        message = None
        for key_id in lookup_ids:
            message = find_by_evolution_key(cur, workspace_id=connection["workspace_id"], key_id=key_id)
            if message:
                break
        if message is None:
            logger.info(
                "status update for unknown message",
                extra={"extra_fields": safe_log_context(connection_id=connection["id"], status=event.status)},
            )
            return Response(status_code=200, content="message not found")

        result = advance_status(
            cur,
            message,
            event.status,
            evolution_key_id=event.message_id if event.message_id != event.key_id else None,
            evolution_short_key_id=event.key_id,
        )
        target = get_status_forward_target(cur, workspace_id=connection["workspace_id"])

    if result["action"] == "updated" and target is not None:
        forward_event(
            target,
            build_status_payload(
                workspace_id=connection["workspace_id"],
                connection_id=connection["id"],
                instance=event.instance,
                message_id=message["id"],
                external_id=message["external_id"],
                status=event.status,
                provider="evolution",
            ),
            kind="status",
        )
    return Response(status_code=200, content=result["action"])


def _handle_contacts(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    data = event.raw.get("data")
    entries = data if isinstance(data, list) else [data] if isinstance(data, dict) else []

    upserted = 0
    with txn() as cur:
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            jid = entry.get("remoteJid") or entry.get("id")
            if not jid or is_group_jid(jid) or is_broadcast_jid(jid) or is_lid_jid(jid):
                continue
            phone = extract_phone_from_jid(jid)
            if not phone:
                continue
            upsert_contact(
                cur,
                workspace_id=connection["workspace_id"],
                phone=phone,
                name=entry.get("pushName") or entry.get("name"),
                profile_image_url=entry.get("profilePicUrl"),
            )
            upserted += 1

    logger.info(
        "contacts upserted",
        extra={"extra_fields": safe_log_context(connection_id=connection["id"], count=upserted)},
    )
    return Response(status_code=200, content="ok")


def _handle_own_message(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    if not event.short_key_id:
        return Response(status_code=200, content="ignored")
    with txn() as cur:
        message_id = backfill_short_key(
            cur,
            workspace_id=connection["workspace_id"],
            short_key_id=event.short_key_id,
            since=seconds_ago(SHORT_KEY_WINDOW_SECONDS),
        )
    logger.info(
        "outbound echo",
        extra={"extra_fields": safe_log_context(connection_id=connection["id"], backfilled=message_id is not None)},
    )
    return Response(status_code=200, content="ok")


def _media_url(event: EvolutionEvent) -> str | None:
    data = event.raw.get("data") or {}
    if data.get("mediaUrl"):
        return data["mediaUrl"]
    message = data.get("message") or {}
    block = message.get(f"{event.message_type}Message") or {}
    return block.get("url")


def _inbound_from_event(event: EvolutionEvent) -> InboundMessage:
    data = event.raw.get("data") or {}
    key = data.get("key") or {}
    lid = event.remote_jid if is_lid_jid(event.remote_jid) else None
    phone_jid = (key.get("remoteJidAlt") or key.get("senderPn")) if lid else event.remote_jid
    return InboundMessage(
        external_id=event.short_key_id or event.message_id or "",
        phone=extract_phone_from_jid(phone_jid),
        content=event.text or "",
        message_type=event.message_type or "text",
        push_name=event.push_name,
        file_url=_media_url(event) if event.message_type not in (None, "text") else None,
        evolution_key_id=event.message_id if event.message_id != event.short_key_id else None,
        whatsapp_lid=lid,
        provider="evolution",
    )


def _handle_inbound(event: EvolutionEvent, connection: dict[str, Any]) -> Response:
    if is_group_jid(event.remote_jid) or is_broadcast_jid(event.remote_jid):
        return Response(status_code=200, content="ignored")

    message = _inbound_from_event(event)
    if not message.external_id:
        return Response(status_code=400, content="missing message id")

    correlation_id = get_correlation_id()
    try:
        with txn() as cur:
            result = record_inbound(cur, connection=connection, message=message)
            target = get_inbound_forward_target(cur, workspace_id=connection["workspace_id"])
    except UnknownSenderError:
        logger.warning(
            "inbound message without resolvable sender",
            extra={"extra_fields": safe_log_context(connection_id=connection["id"])},
        )
        return Response(status_code=200, content="ignored")

    if result.duplicate:
        return Response(status_code=200, content="duplicate")

    if result.new_conversation:
        enqueue_distribution(
            _get_tasks_client(),
            conversation_id=result.conversation_id,
            correlation_id=correlation_id,
        )

    if target is not None:
        enriched = dict(event.raw)
        enriched.update({
            "workspace_id": connection["workspace_id"],
            "connection_id": connection["id"],
            "contact_id": result.contact_id,
            "conversation_id": result.conversation_id,
            "message_id": result.message_id,
            "provider": "evolution",
        })
        forward_event(target, enriched, kind="inbound")

    return Response(status_code=200, content="ok")


@router.post("/evolution")
async def evolution_webhook(request: Request) -> Response:
    """Receive an Evolution API webhook.

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
        env_var="EVOLUTION_WEBHOOK_SECRET",
        headers=("X-Webhook-Secret", "apikey"),
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
            "invalid evolution payload shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload shape")

    with txn() as cur:
        connection = get_connection_by_instance(cur, instance=event.instance)
    if connection is None:
        logger.warning(
            "evolution webhook for unknown instance",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event=event.event)},
        )
        return Response(status_code=404, content="connection not found")

    logger.info(
        "evolution webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event=event.event,
                connection_id=connection["id"],
                from_me=event.from_me,
            )
        },
    )

    if event.event == "CONNECTION_UPDATE":
        return _handle_connection_update(event, connection)
    if event.event == "QRCODE_UPDATED":
        return _handle_qrcode_update(event, connection)

    dedup = dedup_key(event)
    if recent_events.seen(dedup):
        return Response(status_code=200, content="duplicate")

    try:
        if event.event == "MESSAGES_UPDATE":
            return _handle_status_update(event, connection)
        if event.event in ("CONTACTS_UPSERT", "CONTACTS_UPDATE"):
            return _handle_contacts(event, connection)
        if event.event == "MESSAGES_UPSERT":
            if event.from_me:
                return _handle_own_message(event, connection)
            return _handle_inbound(event, connection)
    except Exception:
        logger.exception(
            "evolution webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event=event.event)},
        )
        recent_events.forget(dedup)
        return Response(status_code=500, content="processing failed")

    return Response(status_code=200, content="ignored")
