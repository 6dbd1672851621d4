"""Pipeline card creation - one open card per contact per pipeline."""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.domain.conversations import ConversationNotFoundError
from tezeus.infra.repositories.contacts_repository import get_contact
from tezeus.infra.repositories.conversations_repository import get_conversation
from tezeus.infra.repositories.pipeline_repository import (
    OPEN_CARD_STATUS,
    find_open_card,
    get_first_active_pipeline,
    get_first_column,
    get_pipeline,
    insert_card,
)
from tezeus.infra.time import utc_now
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)


class ContactNotFoundError(Exception):
    """Raised when the contact does not exist in the workspace."""

    pass


class ContactWithoutIdentifierError(Exception):
    """Raised when the contact has neither phone nor email."""

    pass


class PipelineNotFoundError(Exception):
    """Raised when no usable pipeline or column exists."""

    pass


class DuplicateOpenCardError(Exception):
    """Raised when the contact already has an open card in the pipeline."""

    def __init__(self, existing_card: dict[str, Any]) -> None:
        self.existing_card = existing_card
        super().__init__("duplicate_open_card")


def card_title(contact: dict[str, Any]) -> str:
    return contact.get("name") or contact.get("phone") or contact.get("email") or ""


def card_description(now=None) -> str:
    timestamp = (now or utc_now()).strftime("%d/%m/%Y, %H:%M:%S")
    return f"[{timestamp}] Card criado automaticamente"


def ensure_card(
    cur: PgCursor,
    *,
    workspace_id: str,
    contact_id: str,
    conversation_id: str | None,
    pipeline_id: str | None = None,
    reuse_existing: bool = False,
) -> dict[str, Any]:
    """Create the open card of a contact, or report the existing one.

    Args:
        reuse_existing: Webhook-driven creation returns the existing open
            card instead of raising.

    Returns:
        {"card_id", "pipeline_id", "created"}

    Raises:
        ContactNotFoundError: Unknown contact.
        ContactWithoutIdentifierError: Contact has no phone or email.
        ConversationNotFoundError: Conversation of another workspace.
        PipelineNotFoundError: No active pipeline or no column.
        DuplicateOpenCardError: Open card exists and ``reuse_existing`` is off.
    """
    contact = get_contact(cur, contact_id=contact_id)
    if contact is None or contact["workspace_id"] != workspace_id:
        raise ContactNotFoundError(contact_id)
    if not (contact.get("phone") or contact.get("email")):
        raise ContactWithoutIdentifierError(contact_id)

    conversation = None
    if conversation_id:
        conversation = get_conversation(cur, conversation_id=conversation_id)
        if conversation is None or conversation["workspace_id"] != workspace_id:
            raise ConversationNotFoundError(conversation_id)

    if pipeline_id:
        pipeline = get_pipeline(cur, workspace_id=workspace_id, pipeline_id=pipeline_id)
    else:
        pipeline = get_first_active_pipeline(cur, workspace_id=workspace_id)
    if pipeline is None:
        raise PipelineNotFoundError("No active pipeline in workspace")

    existing = find_open_card(cur, pipeline_id=pipeline["id"], contact_id=contact_id)
    if existing:
        if reuse_existing:
            return {"card_id": existing["id"], "pipeline_id": pipeline["id"], "created": False}
        raise DuplicateOpenCardError(existing)

    column = get_first_column(cur, pipeline_id=pipeline["id"])
    if column is None:
        raise PipelineNotFoundError("Pipeline has no columns")

    responsible = conversation["assigned_user_id"] if conversation else None

    card_id = insert_card(
        cur,
        pipeline_id=pipeline["id"],
        column_id=column["id"],
        contact_id=contact_id,
        conversation_id=conversation_id,
        responsible_user_id=responsible,
        title=card_title(contact),
        description=card_description(),
    )
    if card_id is None:
        # A concurrent request opened the card between the check and the insert
        existing = find_open_card(cur, pipeline_id=pipeline["id"], contact_id=contact_id)
        if reuse_existing and existing:
            return {"card_id": existing["id"], "pipeline_id": pipeline["id"], "created": False}
        raise DuplicateOpenCardError(existing or {})

    logger.info(
        "pipeline card created",
        extra={
            "extra_fields": safe_log_context(
                card_id=card_id,
                pipeline_id=pipeline["id"],
                column_id=column["id"],
                status=OPEN_CARD_STATUS,
            )
        },
    )
    return {"card_id": card_id, "pipeline_id": pipeline["id"], "created": True}
