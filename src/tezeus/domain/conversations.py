"""Conversation lifecycle - accept, end, reopen and manual assignment.

Conversations are ``open`` or ``closed``. Every assignee change is written
to ``conversation_assignments``; pipeline card responsibles follow the
conversation assignee.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import savepoint
from tezeus.infra.repositories.conversations_repository import (
    accept_if_unassigned,
    assign_user,
    close_conversation,
    get_conversation,
    insert_assignment_history,
    reopen_conversation,
)
from tezeus.infra.repositories.members_repository import is_member
from tezeus.infra.repositories.pipeline_repository import (
    delete_cards_for_conversation,
    set_responsible_for_conversation,
)
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

logger = get_logger(__name__)

OPEN = "open"
CLOSED = "closed"

_UNASSIGN_VALUES = ("", "none", "null")


class ConversationNotFoundError(Exception):
    """Raised when the conversation does not exist in the workspace."""

    pass


class ConversationAlreadyAssignedError(Exception):
    """Raised when another user accepted the conversation first."""

    def __init__(self, assigned_user_id: str | None) -> None:
        self.assigned_user_id = assigned_user_id
        super().__init__("Conversation already assigned")


class InvalidAssigneeError(Exception):
    """Raised when the target user is not a member of the workspace."""

    pass


def load_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    lock: bool = True,
) -> dict[str, Any]:
    """Load a conversation scoped to a workspace.

    Raises:
        ConversationNotFoundError: Missing, or owned by another workspace.
    """
    conversation = get_conversation(cur, conversation_id=conversation_id, lock=lock)
    if conversation is None or conversation["workspace_id"] != workspace_id:
        raise ConversationNotFoundError(conversation_id)
    return conversation


def record_history(cur: PgCursor, *, conversation_id: str, action: str, **fields: Any) -> None:
    """Best-effort history row; a failure is logged and never aborts the caller."""
    try:
        with savepoint(cur, "assignment_history"):
            insert_assignment_history(cur, conversation_id=conversation_id, action=action, **fields)
    except Exception:
        logger.exception(
            "assignment history insert failed",
            extra={"extra_fields": safe_log_context(conversation_id=conversation_id, action=action)},
        )


def accept_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    user_id: str,
) -> dict[str, Any]:
    """Claim an unassigned conversation for ``user_id``.

    Raises:
        ConversationNotFoundError: Unknown conversation.
        ConversationAlreadyAssignedError: Someone else holds it.
    """
    conversation = load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id, lock=False)

    if not accept_if_unassigned(cur, conversation_id=conversation_id, user_id=user_id):
        current = get_conversation(cur, conversation_id=conversation_id)
        raise ConversationAlreadyAssignedError(current["assigned_user_id"] if current else None)

    record_history(
        cur,
        conversation_id=conversation_id,
        action="accept",
        to_user_id=user_id,
        from_queue_id=conversation["queue_id"],
        to_queue_id=conversation["queue_id"],
        changed_by=user_id,
    )
    logger.info(
        "conversation accepted",
        extra={"extra_fields": safe_log_context(conversation_id=conversation_id, user_id=user_id)},
    )
    return {
        "success": True,
        "conversation_id": conversation_id,
        "assigned_user_id": user_id,
        "status": OPEN,
    }


def end_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    user_id: str,
) -> dict[str, Any]:
    """Close a conversation, clear its assignee and queue, drop its cards."""
    conversation = load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id)
    close_conversation(cur, conversation_id=conversation_id)

    if conversation["assigned_user_id"]:
        record_history(
            cur,
            conversation_id=conversation_id,
            action="unassign_closed",
            from_user_id=conversation["assigned_user_id"],
            from_queue_id=conversation["queue_id"],
            changed_by=user_id,
        )
    if conversation["queue_id"]:
        record_history(
            cur,
            conversation_id=conversation_id,
            action="queue_transfer",
            from_queue_id=conversation["queue_id"],
            to_queue_id=None,
            changed_by=user_id,
        )

    cards_deleted = delete_cards_for_conversation(cur, conversation_id=conversation_id)
    logger.info(
        "conversation ended",
        extra={
            "extra_fields": safe_log_context(
                conversation_id=conversation_id,
                had_assignee=bool(conversation["assigned_user_id"]),
                cards_deleted=cards_deleted,
            )
        },
    )
    return {
        "success": True,
        "conversation_id": conversation_id,
        "status": CLOSED,
        "pipeline_cards_deleted": cards_deleted,
    }


def reopen(cur: PgCursor, *, workspace_id: str, conversation_id: str) -> dict[str, Any]:
    conversation = load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id)
    if conversation["status"] != CLOSED:
        return {"success": True, "conversation_id": conversation_id, "already_open": True}

    reopen_conversation(cur, conversation_id=conversation_id)
    return {
        "success": True,
        "conversation_id": conversation_id,
        "status": OPEN,
        "assigned_user_id": conversation["assigned_user_id"],
    }


def normalize_target_user(value: str | None) -> str | None:
    """Empty, ``none`` and ``null`` all mean unassign."""
    if value is None:
        return None
    stripped = value.strip()
    if stripped.lower() in _UNASSIGN_VALUES:
        return None
    return stripped


def assign_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    target_user_id: str | None,
    changed_by: str,
) -> dict[str, Any]:
    """Assign, transfer or unassign a conversation.

    Raises:
        ConversationNotFoundError: Unknown conversation.
        InvalidAssigneeError: Target is not a workspace member.
    """
    target = normalize_target_user(target_user_id)
    if target and not is_member(cur, workspace_id=workspace_id, user_id=target):
        raise InvalidAssigneeError(target)

    conversation = load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id)
    previous = conversation["assigned_user_id"]

    assign_user(cur, conversation_id=conversation_id, user_id=target)

    if target:
        action = "transfer" if previous else "assign"
    else:
        action = "unassign"
    record_history(
        cur,
        conversation_id=conversation_id,
        action=action,
        from_user_id=previous,
        to_user_id=target,
        changed_by=changed_by,
    )

    cards_updated = set_responsible_for_conversation(cur, conversation_id=conversation_id, user_id=target)
    logger.info(
        "conversation assignment changed",
        extra={
            "extra_fields": safe_log_context(
                conversation_id=conversation_id,
                action=action,
                cards_updated=cards_updated,
            )
        },
    )
    return {
        "success": True,
        "conversation_id": conversation_id,
        "action": action,
        "assigned_user_id": target,
        "status": OPEN,
        "pipeline_cards_updated": cards_updated,
    }
