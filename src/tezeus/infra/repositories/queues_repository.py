"""Queues repository - distribution queues and their members."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def get_active_queue(
    cur: PgCursor,
    *,
    queue_id: str,
    workspace_id: str,
    lock: bool = False,
) -> dict[str, Any] | None:
    """Load an active queue of the workspace. ``lock`` serializes round-robin index updates."""
    query = """
        SELECT id, workspace_id, name, description, distribution_type,
               last_assigned_user_index, ai_agent_id
        FROM queues
        WHERE id = %s AND workspace_id = %s AND is_active = true
    """
    if lock:
        query += " FOR UPDATE"
    cur.execute(query, (queue_id, workspace_id))
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "workspace_id": str(row[1]),
        "name": row[2],
        "description": row[3],
        "distribution_type": row[4],
        "last_assigned_user_index": row[5],
        "ai_agent_id": str(row[6]) if row[6] else None,
    }


def list_active_member_ids(cur: PgCursor, *, queue_id: str) -> list[str]:
    """Queue members whose user is active, in ``order_position`` order."""
    cur.execute(
        """
        SELECT qu.user_id
        FROM queue_users qu
        JOIN system_users su ON su.id = qu.user_id
        WHERE qu.queue_id = %s AND su.status = 'active'
        ORDER BY qu.order_position ASC, qu.user_id ASC
        """,
        (queue_id,),
    )
    return [str(row[0]) for row in cur.fetchall()]


def set_last_assigned_index(cur: PgCursor, *, queue_id: str, index: int) -> None:
    cur.execute(
        "UPDATE queues SET last_assigned_user_index = %s WHERE id = %s",
        (index, queue_id),
    )
