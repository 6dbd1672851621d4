"""Conversations repository - raw SQL over conversations and their assignment history.

Functions take a cursor (caller owns the transaction) and return plain dicts.
"""

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = """
    id, workspace_id, contact_id, connection_id, queue_id, assigned_user_id,
    assigned_at, status, agente_ativo, agent_active_id, connection_phone
"""

_FIELDS = (
    "id",
    "workspace_id",
    "contact_id",
    "connection_id",
    "queue_id",
    "assigned_user_id",
    "assigned_at",
    "status",
    "agente_ativo",
    "agent_active_id",
    "connection_phone",
)

_ID_FIELDS = ("id", "workspace_id", "contact_id", "connection_id", "queue_id", "assigned_user_id", "agent_active_id")


def _row_to_conversation(row: tuple) -> dict[str, Any]:
    conversation = dict(zip(_FIELDS, row))
    for field in _ID_FIELDS:
        if conversation[field] is not None:
            conversation[field] = str(conversation[field])
    conversation["agente_ativo"] = bool(conversation["agente_ativo"])
    return conversation


def get_conversation(
    cur: PgCursor,
    *,
    conversation_id: str,
    lock: bool = False,
) -> dict[str, Any] | None:
    """Load a conversation, optionally locking the row FOR UPDATE."""
    query = f"SELECT {_COLUMNS} FROM conversations WHERE id = %s"
    if lock:
        query += " FOR UPDATE"
    cur.execute(query, (conversation_id,))
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def find_open_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    contact_id: str,
    connection_id: str,
) -> dict[str, Any] | None:
    """Newest open conversation for (contact, connection)."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM conversations
        WHERE workspace_id = %s AND contact_id = %s AND connection_id = %s
          AND status = 'open'
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (workspace_id, contact_id, connection_id),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def find_latest_conversation_for_contact(
    cur: PgCursor,
    *,
    workspace_id: str,
    contact_id: str,
    connection_id: str | None = None,
) -> dict[str, Any] | None:
    """Newest conversation of a contact, any status."""
    params: list[Any] = [workspace_id, contact_id]
    connection_clause = ""
    if connection_id:
        connection_clause = "AND connection_id = %s"
        params.append(connection_id)
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM conversations
        WHERE workspace_id = %s AND contact_id = %s {connection_clause}
        ORDER BY created_at DESC
        LIMIT 1
        """,
        tuple(params),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def create_conversation(
    cur: PgCursor,
    *,
    workspace_id: str,
    contact_id: str,
    connection_id: str | None,
    connection_phone: str | None = None,
) -> str:
    """Insert an open conversation. Returns its id."""
    cur.execute(
        """
        INSERT INTO conversations
            (workspace_id, contact_id, connection_id, connection_phone, status, last_message_at)
        VALUES (%s, %s, %s, %s, 'open', now())
        RETURNING id
        """,
        (workspace_id, contact_id, connection_id, connection_phone),
    )
    return str(cur.fetchone()[0])


def set_connection_phone(cur: PgCursor, *, conversation_id: str, connection_phone: str) -> None:
    cur.execute(
        "UPDATE conversations SET connection_phone = %s, updated_at = now() WHERE id = %s",
        (connection_phone, conversation_id),
    )


def set_connection(cur: PgCursor, *, conversation_id: str, connection_id: str) -> None:
    cur.execute(
        "UPDATE conversations SET connection_id = %s, updated_at = now() WHERE id = %s",
        (connection_id, conversation_id),
    )


def touch_last_message(cur: PgCursor, *, conversation_id: str) -> None:
    cur.execute(
        "UPDATE conversations SET last_message_at = now(), updated_at = now() WHERE id = %s",
        (conversation_id,),
    )


def activate_agent(cur: PgCursor, *, conversation_id: str, agent_id: str) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET agente_ativo = true, agent_active_id = %s, updated_at = now()
        WHERE id = %s
        """,
        (agent_id, conversation_id),
    )


def set_queue_assignment(
    cur: PgCursor,
    *,
    conversation_id: str,
    assigned_user_id: str | None,
    queue_id: str | None,
    agent_id: str | None,
) -> None:
    """Assign a conversation through a queue.

    ``assigned_at`` is refreshed only when there is an assignee. The AI agent
    flag follows the queue's agent.
    """
    cur.execute(
        """
        UPDATE conversations
        SET assigned_user_id = %s,
            assigned_at = CASE WHEN %s IS NULL THEN assigned_at ELSE now() END,
            queue_id = %s,
            agente_ativo = %s,
            agent_active_id = %s,
            status = 'open',
            updated_at = now()
        WHERE id = %s
        """,
        (assigned_user_id, assigned_user_id, queue_id, agent_id is not None, agent_id, conversation_id),
    )


def set_queue_only(
    cur: PgCursor,
    *,
    conversation_id: str,
    queue_id: str,
    agent_id: str | None,
) -> None:
    """Link a conversation to a queue without touching the assignee."""
    cur.execute(
        """
        UPDATE conversations
        SET queue_id = %s, agente_ativo = %s, agent_active_id = %s, updated_at = now()
        WHERE id = %s
        """,
        (queue_id, agent_id is not None, agent_id, conversation_id),
    )


def accept_if_unassigned(cur: PgCursor, *, conversation_id: str, user_id: str) -> bool:
    """Claim an unassigned conversation atomically.

    Returns:
        True if this call took it, False if someone else already holds it.
    """
    cur.execute(
        """
        UPDATE conversations
        SET assigned_user_id = %s,
            assigned_at = now(),
            status = 'open',
            agente_ativo = false,
            agent_active_id = NULL,
            updated_at = now()
        WHERE id = %s AND assigned_user_id IS NULL
        """,
        (user_id, conversation_id),
    )
    return cur.rowcount == 1


def assign_user(cur: PgCursor, *, conversation_id: str, user_id: str | None) -> None:
    """Set (or clear) the assignee and reopen the conversation."""
    cur.execute(
        """
        UPDATE conversations
        SET assigned_user_id = %s,
            assigned_at = CASE WHEN %s IS NULL THEN NULL ELSE now() END,
            status = 'open',
            updated_at = now()
        WHERE id = %s
        """,
        (user_id, user_id, conversation_id),
    )


def close_conversation(cur: PgCursor, *, conversation_id: str) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET status = 'closed',
            assigned_user_id = NULL,
            assigned_at = NULL,
            queue_id = NULL,
            agente_ativo = false,
            agent_active_id = NULL,
            updated_at = now()
        WHERE id = %s
        """,
        (conversation_id,),
    )


def reopen_conversation(cur: PgCursor, *, conversation_id: str) -> None:
    cur.execute(
        "UPDATE conversations SET status = 'open', updated_at = now() WHERE id = %s",
        (conversation_id,),
    )


def insert_assignment_history(
    cur: PgCursor,
    *,
    conversation_id: str,
    action: str,
    from_user_id: str | None = None,
    to_user_id: str | None = None,
    from_queue_id: str | None = None,
    to_queue_id: str | None = None,
    changed_by: str | None = None,
) -> None:
    cur.execute(
        """
        INSERT INTO conversation_assignments
            (conversation_id, action, from_assigned_user_id, to_assigned_user_id,
             from_queue_id, to_queue_id, changed_by)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (conversation_id, action, from_user_id, to_user_id, from_queue_id, to_queue_id, changed_by),
    )


_INBOX_COLUMNS = """
    c.id, c.contact_id, c.connection_id, c.queue_id, c.assigned_user_id, c.status,
    c.agente_ativo, c.agent_active_id, COALESCE(c.last_message_at, c.created_at) AS activity_at,
    ct.name, ct.phone, ct.profile_image_url,
    cn.instance_name, cn.phone_number, cn.status
"""


def _row_to_inbox_item(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "contact_id": str(row[1]),
        "connection_id": str(row[2]) if row[2] else None,
        "queue_id": str(row[3]) if row[3] else None,
        "assigned_user_id": str(row[4]) if row[4] else None,
        "status": row[5],
        "agente_ativo": bool(row[6]),
        "agent_active_id": str(row[7]) if row[7] else None,
        "last_activity_at": row[8],
        "contact": {
            "id": str(row[1]),
            "name": row[9],
            "phone": row[10],
            "profile_image_url": row[11],
        },
        "connection": None if row[2] is None else {
            "id": str(row[2]),
            "instance_name": row[12],
            "phone_number": row[13],
            "status": row[14],
        },
    }


def list_inbox(
    cur: PgCursor,
    *,
    workspace_id: str,
    limit: int,
    visible_to_user_id: str | None = None,
    status: str | None = None,
    assigned_user_id: str | None = None,
    before: tuple[datetime, str] | None = None,
) -> list[dict[str, Any]]:
    """Conversations of a workspace, most recent activity first.

    Args:
        visible_to_user_id: Restrict to conversations assigned to this user
            or unassigned.
        before: (last_activity_at, id) of the last item of the previous page.
    """
    clauses = ["c.workspace_id = %s"]
    params: list[Any] = [workspace_id]
    if visible_to_user_id:
        clauses.append("(c.assigned_user_id = %s OR c.assigned_user_id IS NULL)")
        params.append(visible_to_user_id)
    if status:
        clauses.append("c.status = %s")
        params.append(status)
    if assigned_user_id:
        clauses.append("c.assigned_user_id = %s")
        params.append(assigned_user_id)
    if before:
        clauses.append("(COALESCE(c.last_message_at, c.created_at), c.id) < (%s, %s::uuid)")
        params.extend(before)
    params.append(limit)

    cur.execute(
        f"""
        SELECT {_INBOX_COLUMNS}
        FROM conversations c
        JOIN contacts ct ON ct.id = c.contact_id
        LEFT JOIN connections cn ON cn.id = c.connection_id
        WHERE {" AND ".join(clauses)}
        ORDER BY activity_at DESC, c.id DESC
        LIMIT %s
        """,
        params,
    )
    return [_row_to_inbox_item(row) for row in cur.fetchall()]


def list_assignment_history(cur: PgCursor, *, conversation_id: str) -> list[dict[str, Any]]:
    """Assignment history of a conversation, newest first, with user and queue names."""
    cur.execute(
        """
        SELECT a.id, a.action,
               a.from_assigned_user_id, fu.name, a.to_assigned_user_id, tu.name,
               a.from_queue_id, fq.name, a.to_queue_id, tq.name,
               a.changed_by, cu.name, a.changed_at
        FROM conversation_assignments a
        LEFT JOIN system_users fu ON fu.id = a.from_assigned_user_id
        LEFT JOIN system_users tu ON tu.id = a.to_assigned_user_id
        LEFT JOIN system_users cu ON cu.id = a.changed_by
        LEFT JOIN queues fq ON fq.id = a.from_queue_id
        LEFT JOIN queues tq ON tq.id = a.to_queue_id
        WHERE a.conversation_id = %s
        ORDER BY a.changed_at DESC
        """,
        (conversation_id,),
    )
    return [
        {
            "id": str(row[0]),
            "action": row[1],
            "from_user": _named(row[2], row[3]),
            "to_user": _named(row[4], row[5]),
            "from_queue": _named(row[6], row[7]),
            "to_queue": _named(row[8], row[9]),
            "changed_by": _named(row[10], row[11]),
            "changed_at": row[12],
        }
        for row in cur.fetchall()
    ]


def _named(ref: Any, name: str | None) -> dict[str, Any] | None:
    if ref is None:
        return None
    return {"id": str(ref), "name": name}
