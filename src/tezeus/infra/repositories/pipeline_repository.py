"""Pipeline repository - kanban pipelines, columns and cards."""

from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

OPEN_CARD_STATUS = "aberto"


def get_pipeline(cur: PgCursor, *, workspace_id: str, pipeline_id: str) -> dict[str, Any] | None:
    cur.execute(
        "SELECT id, name FROM pipelines WHERE id = %s AND workspace_id = %s AND is_active = true",
        (pipeline_id, workspace_id),
    )
    row = cur.fetchone()
    return {"id": str(row[0]), "name": row[1]} if row else None


def get_first_active_pipeline(cur: PgCursor, *, workspace_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, name FROM pipelines
        WHERE workspace_id = %s AND is_active = true
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (workspace_id,),
    )
    row = cur.fetchone()
    return {"id": str(row[0]), "name": row[1]} if row else None


def get_first_column(cur: PgCursor, *, pipeline_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, name FROM pipeline_columns
        WHERE pipeline_id = %s
        ORDER BY order_position ASC
        LIMIT 1
        """,
        (pipeline_id,),
    )
    row = cur.fetchone()
    return {"id": str(row[0]), "name": row[1]} if row else None


def find_open_card(cur: PgCursor, *, pipeline_id: str, contact_id: str) -> dict[str, Any] | None:
    """The open card of a contact in a pipeline, if any (at most one exists)."""
    cur.execute(
        """
        SELECT id, column_id, conversation_id, responsible_user_id, title
        FROM pipeline_cards
        WHERE pipeline_id = %s AND contact_id = %s AND status = %s
        LIMIT 1
        """,
        (pipeline_id, contact_id, OPEN_CARD_STATUS),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "column_id": str(row[1]),
        "conversation_id": str(row[2]) if row[2] else None,
        "responsible_user_id": str(row[3]) if row[3] else None,
        "title": row[4],
    }


def insert_card(
    cur: PgCursor,
    *,
    pipeline_id: str,
    column_id: str,
    contact_id: str,
    conversation_id: str | None,
    responsible_user_id: str | None,
    title: str,
    description: str,
    value: Decimal = Decimal("0"),
) -> str | None:
    """Insert an open card.

    Returns:
        The card id, or None when a concurrent insert already opened one for
        this contact and pipeline.
    """
    cur.execute(
        """
        INSERT INTO pipeline_cards
            (pipeline_id, column_id, contact_id, conversation_id, responsible_user_id,
             title, description, value, status)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (pipeline_id, contact_id) WHERE status = 'aberto' DO NOTHING
        RETURNING id
        """,
        (
            pipeline_id,
            column_id,
            contact_id,
            conversation_id,
            responsible_user_id,
            title,
            description,
            value,
            OPEN_CARD_STATUS,
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def set_responsible_for_conversation(cur: PgCursor, *, conversation_id: str, user_id: str | None) -> int:
    """Point every card of a conversation at ``user_id``. Returns rows updated."""
    cur.execute(
        """
        UPDATE pipeline_cards
        SET responsible_user_id = %s, updated_at = now()
        WHERE conversation_id = %s
        """,
        (user_id, conversation_id),
    )
    return cur.rowcount


def delete_cards_for_conversation(cur: PgCursor, *, conversation_id: str) -> int:
    cur.execute("DELETE FROM pipeline_cards WHERE conversation_id = %s", (conversation_id,))
    return cur.rowcount
