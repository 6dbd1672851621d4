"""Outgoing messages: validation, pre-save and send enqueue.

A message is stored in status ``sending`` before any provider call. The
worker task ``/tasks/messages/send`` performs the call and moves it to
``sent`` or ``failed``.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.repositories.messages_repository import (
    find_by_external_id,
    insert_outgoing_message,
)
from tezeus.observability.correlation import generate_request_id
from tezeus.tasks.client import TasksClient

SEND_TASK_PATH = "/tasks/messages/send"

# Media captions like "[IMAGE]" or "[DOCUMENT]" are UI placeholders
_PLACEHOLDER = re.compile(r"^\[.*\]$")


class InvalidMessageError(ValueError):
    """Raised when a message request is missing its content or file."""


@dataclass(frozen=True)
class OutgoingMessage:
    message_id: str
    external_id: str
    duplicate: bool = False


def effective_content(message_type: str, content: str | None, file_url: str | None) -> str:
    """Validate a send request and return the content to store.

    Raises:
        InvalidMessageError: Media without ``file_url`` or text without content.
    """
    is_media = bool(message_type) and message_type != "text"
    text = content or ""
    if is_media and _PLACEHOLDER.match(text):
        text = ""
    if is_media and not file_url:
        raise InvalidMessageError("file_url is required for media messages")
    if not is_media and not text.strip():
        raise InvalidMessageError("Missing required field: content")
    return text


def create_outgoing_message(
    cur: PgCursor,
    *,
    conversation_id: str,
    workspace_id: str,
    content: str | None,
    message_type: str = "text",
    sender_type: str = "agent",
    sender_id: str | None = None,
    file_url: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
    reply_to_message_id: str | None = None,
    quoted_message: dict[str, Any] | None = None,
    client_message_id: str | None = None,
) -> OutgoingMessage:
    """Store an outgoing message in status ``sending``.

    ``client_message_id`` becomes the external id. A repeat of the same id
    returns the stored message flagged as duplicate.
    """
    text = effective_content(message_type, content, file_url)

    if client_message_id:
        existing = find_by_external_id(cur, workspace_id=workspace_id, external_id=client_message_id)
        if existing:
            return OutgoingMessage(existing["id"], client_message_id, duplicate=True)

    external_id = client_message_id or str(uuid.uuid4())
    message_id = insert_outgoing_message(
        cur,
        conversation_id=conversation_id,
        workspace_id=workspace_id,
        content=text,
        message_type=message_type or "text",
        sender_type=sender_type,
        sender_id=sender_id,
        external_id=external_id,
        file_url=file_url,
        file_name=file_name,
        mime_type=mime_type,
        reply_to_message_id=reply_to_message_id,
        quoted_message=quoted_message,
        metadata={
            "request_id": generate_request_id("send"),
            "client_msg_id": client_message_id,
        },
    )
    return OutgoingMessage(message_id, external_id)


def enqueue_send(
    tasks_client: TasksClient,
    *,
    message_id: str,
    workspace_id: str,
    correlation_id: str | None,
) -> bool:
    """Hand a stored message to the worker. Payload carries ids only."""
    return tasks_client.enqueue_http(
        task_id=f"message-send:{message_id}",
        url_path=SEND_TASK_PATH,
        payload={
            "message_id": message_id,
            "workspace_id": workspace_id,
            "correlation_id": correlation_id,
        },
        correlation_id=correlation_id,
    )
