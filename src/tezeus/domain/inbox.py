"""Inbox reads: conversation list, message timeline and assignment history.

Pages use keyset cursors of the form ``<iso timestamp>|<id>``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.repositories.conversations_repository import list_assignment_history, list_inbox
from tezeus.infra.repositories.messages_repository import list_conversation_messages

from .conversations import load_conversation

# Roles that see every conversation of the workspace
FULL_INBOX_ROLES = ("admin", "master")


class InvalidCursorError(ValueError):
    """Raised when a page cursor cannot be parsed."""


def encode_cursor(at: datetime, row_id: str) -> str:
    return f"{at.isoformat()}|{row_id}"


def decode_cursor(value: str | None) -> tuple[datetime, str] | None:
    """Parse ``<iso timestamp>|<id>``; None or empty means the first page.

    Raises:
        InvalidCursorError: Malformed cursor.
    """
    if not value:
        return None
    at, sep, row_id = value.partition("|")
    if not sep or not row_id:
        raise InvalidCursorError("Invalid cursor")
    try:
        return datetime.fromisoformat(at), row_id
    except ValueError:
        raise InvalidCursorError("Invalid cursor")


def list_conversations(
    cur: PgCursor,
    *,
    workspace_id: str,
    user_id: str,
    role: str,
    limit: int,
    status: str | None = None,
    assigned_user_id: str | None = None,
    cursor: str | None = None,
) -> dict[str, Any]:
    """Inbox page. Plain users only see their own and unassigned conversations."""
    items = list_inbox(
        cur,
        workspace_id=workspace_id,
        limit=limit,
        visible_to_user_id=None if role in FULL_INBOX_ROLES else user_id,
        status=status,
        assigned_user_id=assigned_user_id,
        before=decode_cursor(cursor),
    )
    next_cursor = None
    if len(items) == limit:
        last = items[-1]
        next_cursor = encode_cursor(last["last_activity_at"], last["id"])
    return {"items": items, "next_cursor": next_cursor}


def list_messages(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    limit: int,
    before: str | None = None,
) -> dict[str, Any]:
    """Timeline page, oldest first. ``next_before`` loads older messages.

    Raises:
        ConversationNotFoundError: Missing, or owned by another workspace.
        InvalidCursorError: Malformed ``before``.
    """
    load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id, lock=False)
    page = list_conversation_messages(
        cur,
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        limit=limit,
        before=decode_cursor(before),
    )
    # duplicated rows collapse to one entry per id
    unique = list({message["id"]: message for message in page}.values())

    next_before = None
    if len(page) == limit:
        oldest = page[-1]
        next_before = encode_cursor(oldest["created_at"], oldest["id"])
    return {"items": unique[::-1], "next_before": next_before}


def assignment_history(cur: PgCursor, *, workspace_id: str, conversation_id: str) -> dict[str, Any]:
    """Raises ConversationNotFoundError outside the workspace."""
    load_conversation(cur, workspace_id=workspace_id, conversation_id=conversation_id, lock=False)
    return {"items": list_assignment_history(cur, conversation_id=conversation_id)}
