"""Inbound WhatsApp messages: contact, conversation, message and CRM card.

Shared by the Evolution and Z-API webhooks once their payloads are parsed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import savepoint
from tezeus.infra.repositories.contacts_repository import (
    find_by_lid,
    set_whatsapp_lid,
    upsert_contact,
)
from tezeus.infra.repositories.conversations_repository import (
    close_conversation,
    create_conversation,
    find_open_conversation,
    set_connection_phone,
    touch_last_message,
)
from tezeus.infra.repositories.messages_repository import insert_inbound_message
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.tasks.client import TasksClient

from .pipeline_cards import ensure_card

logger = get_logger(__name__)

DISTRIBUTE_TASK_PATH = "/tasks/conversations/distribute"


class UnknownSenderError(ValueError):
    """Raised when an inbound message has no phone and an unknown LID."""


@dataclass(frozen=True)
class InboundMessage:
    """A contact message as both providers deliver it.

    ``phone``, ``content`` and ``push_name`` are contact data: never log them.
    """

    external_id: str
    phone: str
    content: str
    message_type: str = "text"
    push_name: str | None = None
    file_url: str | None = None
    evolution_key_id: str | None = None
    whatsapp_lid: str | None = None
    provider: str = "evolution"


@dataclass(frozen=True)
class InboundResult:
    contact_id: str
    conversation_id: str
    message_id: str | None
    new_conversation: bool
    card_id: str | None = None

    @property
    def duplicate(self) -> bool:
        return self.message_id is None


def _open_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    contact_id: str,
    connection: dict[str, Any],
) -> tuple[str, bool]:
    """Open conversation for (contact, connection), creating it when needed.

    A conversation opened against another phone number of the connection is
    closed and a new one started.
    """
    connection_phone = connection.get("phone_number")
    conversation = find_open_conversation(
        cur,
        workspace_id=workspace_id,
        contact_id=contact_id,
        connection_id=connection["id"],
    )

    if conversation is not None:
        snapshot = conversation["connection_phone"]
        if not snapshot or not connection_phone or snapshot == connection_phone:
            if connection_phone and snapshot != connection_phone:
                set_connection_phone(cur, conversation_id=conversation["id"], connection_phone=connection_phone)
            return conversation["id"], False
        close_conversation(cur, conversation_id=conversation["id"])
        logger.info(
            "connection phone changed, conversation restarted",
            extra={"extra_fields": safe_log_context(conversation_id=conversation["id"])},
        )

    conversation_id = create_conversation(
        cur,
        workspace_id=workspace_id,
        contact_id=contact_id,
        connection_id=connection["id"],
        connection_phone=connection_phone,
    )
    return conversation_id, True


def _resolve_contact(cur: PgCursor, *, workspace_id: str, message: InboundMessage) -> str:
    if message.whatsapp_lid and not message.phone:
        known = find_by_lid(cur, workspace_id=workspace_id, lid=message.whatsapp_lid)
        if known is not None:
            return known["id"]
        raise UnknownSenderError("Sender LID not mapped to a contact")
    if not message.phone:
        raise UnknownSenderError("Sender phone missing")

    contact_id, _ = upsert_contact(
        cur,
        workspace_id=workspace_id,
        phone=message.phone,
        name=message.push_name,
    )
    if message.whatsapp_lid:
        set_whatsapp_lid(cur, contact_id=contact_id, lid=message.whatsapp_lid)
    return contact_id


def _auto_card(cur: PgCursor, *, connection: dict[str, Any], contact_id: str, conversation_id: str) -> str | None:
    try:
        with savepoint(cur, "auto_card"):
            card = ensure_card(
                cur,
                workspace_id=connection["workspace_id"],
                contact_id=contact_id,
                conversation_id=conversation_id,
                pipeline_id=connection.get("default_pipeline_id"),
                reuse_existing=True,
            )
            return card["card_id"]
    except Exception:
        logger.exception(
            "automatic CRM card not created",
            extra={"extra_fields": safe_log_context(conversation_id=conversation_id)},
        )
        return None


def record_inbound(cur: PgCursor, *, connection: dict[str, Any], message: InboundMessage) -> InboundResult:
    """Store an inbound message and everything it hangs off.

    A provider id seen before yields ``message_id=None`` and no side effects.
    """
    workspace_id = connection["workspace_id"]
    contact_id = _resolve_contact(cur, workspace_id=workspace_id, message=message)
    conversation_id, created = _open_conversation(
        cur,
        workspace_id=workspace_id,
        contact_id=contact_id,
        connection=connection,
    )

    message_id = insert_inbound_message(
        cur,
        conversation_id=conversation_id,
        workspace_id=workspace_id,
        content=message.content,
        message_type=message.message_type,
        external_id=message.external_id,
        evolution_key_id=message.evolution_key_id,
        file_url=message.file_url,
        metadata={"provider": message.provider},
    )
    if message_id is None:
        return InboundResult(contact_id, conversation_id, None, created)

    touch_last_message(cur, conversation_id=conversation_id)

    card_id = None
    if connection.get("auto_create_crm_card"):
        card_id = _auto_card(cur, connection=connection, contact_id=contact_id, conversation_id=conversation_id)

    logger.info(
        "inbound message stored",
        extra={
            "extra_fields": safe_log_context(
                workspace_id=workspace_id,
                conversation_id=conversation_id,
                message_id=message_id,
                new_conversation=created,
                provider=message.provider,
            )
        },
    )
    return InboundResult(contact_id, conversation_id, message_id, created, card_id)


def enqueue_distribution(
    tasks_client: TasksClient,
    *,
    conversation_id: str,
    correlation_id: str | None,
) -> bool:
    return tasks_client.enqueue_http(
        task_id=f"conversation-distribute:{conversation_id}",
        url_path=DISTRIBUTE_TASK_PATH,
        payload={"conversation_id": conversation_id, "correlation_id": correlation_id},
        correlation_id=correlation_id,
    )
