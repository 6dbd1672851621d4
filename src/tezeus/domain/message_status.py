"""Message delivery status reconciliation.

Provider callbacks arrive late, repeated and out of order. A status only
moves forward along sending < sent < delivered < read. ``failed`` is
terminal and only lands on a message that was not delivered yet.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.repositories.contacts_repository import find_by_phone
from tezeus.infra.repositories.conversations_repository import find_latest_conversation_for_contact
from tezeus.infra.repositories.messages_repository import (
    apply_status,
    find_by_provider_id,
    find_recent_outgoing,
)
from tezeus.infra.time import hours_ago
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.whatsapp.phone import sanitize_phone

logger = get_logger(__name__)

STATUS_RANK: dict[str, int] = {
    "sending": 1,
    "sent": 2,
    "delivered": 3,
    "read": 4,
}

FAILED = "failed"

# Status a message is expected to be in when the given status arrives
PREDECESSOR: dict[str, str] = {
    "sent": "sending",
    "delivered": "sent",
    "read": "delivered",
}

LOOKBACK_HOURS = 24

SEARCH_STRATEGIES = (
    "provider_id (external_id/evolution_key_id/metadata.provider_msg_id)",
    "conversation_id (24h)",
    "phone+connection (24h)",
)


class InvalidStatusPayloadError(ValueError):
    """Raised when the callback lacks workspace_id or status."""


class MessageNotFoundError(Exception):
    """Raised when no strategy located the message."""

    def __init__(self, provider_id: str | None) -> None:
        self.provider_id = provider_id
        self.strategies = SEARCH_STRATEGIES
        super().__init__("Message not found")


def normalize_status(status: Any) -> str | None:
    """Lowercase; ``received`` means delivered."""
    if status is None:
        return None
    value = str(status).strip().lower()
    if not value:
        return None
    if value == "received":
        return "delivered"
    return value


def should_apply(current: str | None, new: str) -> bool:
    """True when ``new`` moves the message forward."""
    if new == FAILED:
        return current not in (FAILED, "delivered", "read")
    if current == FAILED:
        return False
    new_rank = STATUS_RANK.get(new, 0)
    return new_rank > STATUS_RANK.get(current or "", 0)


def resolve_provider_id(payload: dict[str, Any]) -> str | None:
    """Provider message id from an N8N status callback.

    Order: external_id, webhook_data.ids[0], webhook_data.messageId, messageId.
    """
    if payload.get("external_id"):
        return str(payload["external_id"])
    webhook_data = payload.get("webhook_data")
    if isinstance(webhook_data, dict):
        ids = webhook_data.get("ids")
        if isinstance(ids, list) and ids:
            return str(ids[0])
        if webhook_data.get("messageId"):
            return str(webhook_data["messageId"])
    if payload.get("messageId"):
        return str(payload["messageId"])
    return None


def advance_status(
    cur: PgCursor,
    message: dict[str, Any],
    new_status: str,
    *,
    evolution_key_id: str | None = None,
    evolution_short_key_id: str | None = None,
) -> dict[str, Any]:
    """Apply ``new_status`` to a locked message row unless it would regress.

    Missing key ids are filled either way.
    """
    old_status = message["status"]
    if not should_apply(old_status, new_status):
        if evolution_key_id or evolution_short_key_id:
            apply_status(
                cur,
                message_id=message["id"],
                status=old_status,
                evolution_key_id=evolution_key_id,
                evolution_short_key_id=evolution_short_key_id,
            )
        return {
            "success": True,
            "action": "skipped",
            "message_id": message["id"],
            "status": old_status,
            "reason": "Status already at or beyond the reported one",
        }

    apply_status(
        cur,
        message_id=message["id"],
        status=new_status,
        set_delivered_at=new_status in ("delivered", "read"),
        set_read_at=new_status == "read",
        evolution_key_id=evolution_key_id,
        evolution_short_key_id=evolution_short_key_id,
    )
    return {
        "success": True,
        "action": "updated",
        "message_id": message["id"],
        "old_status": old_status,
        "new_status": new_status,
    }


def _find_in_conversation(
    cur: PgCursor,
    workspace_id: str,
    conversation_id: str,
    new_status: str,
) -> dict[str, Any] | None:
    return find_recent_outgoing(
        cur,
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        since=hours_ago(LOOKBACK_HOURS),
        status=PREDECESSOR.get(new_status),
    )


def find_message(
    cur: PgCursor,
    *,
    workspace_id: str,
    new_status: str,
    provider_id: str | None,
    conversation_id: str | None = None,
    phone: str | None = None,
    connection_id: str | None = None,
) -> tuple[dict[str, Any] | None, str]:
    """Locate the message a status callback refers to.

    Returns:
        (message or None, strategy that matched)
    """
    if provider_id:
        message, strategy = find_by_provider_id(cur, workspace_id=workspace_id, provider_id=provider_id)
        if message:
            return message, strategy

    if conversation_id:
        message = _find_in_conversation(cur, workspace_id, conversation_id, new_status)
        if message:
            return message, "conversation_id"

    digits = sanitize_phone(phone)
    if digits and connection_id:
        contact = find_by_phone(cur, workspace_id=workspace_id, phone=digits)
        if contact:
            conversation = find_latest_conversation_for_contact(
                cur,
                workspace_id=workspace_id,
                contact_id=contact["id"],
                connection_id=connection_id,
            )
            if conversation:
                message = _find_in_conversation(cur, workspace_id, conversation["id"], new_status)
                if message:
                    return message, "phone+connection"

    return None, "none"


def reconcile_status(cur: PgCursor, payload: dict[str, Any]) -> dict[str, Any]:
    """Apply an N8N/Z-API status callback.

    Raises:
        InvalidStatusPayloadError: workspace_id or status missing.
        MessageNotFoundError: No message matched.
    """
    workspace_id = payload.get("workspace_id")
    new_status = normalize_status(payload.get("status"))
    if not workspace_id or not new_status:
        raise InvalidStatusPayloadError("Missing required fields: workspace_id, status")
    if new_status not in STATUS_RANK and new_status != FAILED:
        raise InvalidStatusPayloadError("Unknown status")

    provider_id = resolve_provider_id(payload)
    message, strategy = find_message(
        cur,
        workspace_id=workspace_id,
        new_status=new_status,
        provider_id=provider_id,
        conversation_id=payload.get("conversation_id"),
        phone=payload.get("phone"),
        connection_id=payload.get("connection_id"),
    )
    if message is None:
        logger.warning(
            "status callback matched no message",
            extra={
                "extra_fields": safe_log_context(
                    workspace_id=workspace_id,
                    status=new_status,
                    has_provider_id=bool(provider_id),
                    has_conversation_id=bool(payload.get("conversation_id")),
                )
            },
        )
        raise MessageNotFoundError(provider_id)

    result = advance_status(cur, message, new_status)
    logger.info(
        "status callback applied",
        extra={
            "extra_fields": safe_log_context(
                workspace_id=workspace_id,
                message_id=message["id"],
                strategy=strategy,
                action=result["action"],
                old_status=message["status"],
                new_status=new_status,
            )
        },
    )
    result["strategy"] = strategy
    return result
