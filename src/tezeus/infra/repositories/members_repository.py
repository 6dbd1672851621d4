"""Workspace membership lookups."""

from psycopg2.extensions import cursor as PgCursor


def get_member_role(cur: PgCursor, *, workspace_id: str, user_id: str) -> str | None:
    """Role of a user in a workspace (``user``, ``admin``, ``master``), or None."""
    cur.execute(
        "SELECT role FROM workspace_members WHERE workspace_id = %s AND user_id = %s",
        (workspace_id, user_id),
    )
    row = cur.fetchone()
    return row[0] if row else None


def is_member(cur: PgCursor, *, workspace_id: str, user_id: str) -> bool:
    return get_member_role(cur, workspace_id=workspace_id, user_id=user_id) is not None


def list_user_workspaces(cur: PgCursor, *, user_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT wm.workspace_id, w.name, wm.role
        FROM workspace_members wm
        JOIN workspaces w ON w.id = wm.workspace_id
        WHERE wm.user_id = %s
        ORDER BY w.name
        """,
        (user_id,),
    )
    return [{"workspace_id": str(row[0]), "name": row[1], "role": row[2]} for row in cur.fetchall()]
