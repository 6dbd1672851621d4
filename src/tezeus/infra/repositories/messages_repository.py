"""Messages repository - raw SQL for message rows and their delivery status."""

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import as_json

_COLUMNS = """
    id, conversation_id, workspace_id, status, external_id, evolution_key_id,
    evolution_short_key_id, delivered_at, read_at, sender_type, origem_resposta
"""

_FIELDS = (
    "id",
    "conversation_id",
    "workspace_id",
    "status",
    "external_id",
    "evolution_key_id",
    "evolution_short_key_id",
    "delivered_at",
    "read_at",
    "sender_type",
    "origem_resposta",
)

# Message senders on our side of the conversation
OUTGOING_SENDER_TYPES = ("user", "agent", "system")


def _row_to_message(row: tuple) -> dict[str, Any]:
    message = dict(zip(_FIELDS, row))
    for field in ("id", "conversation_id", "workspace_id"):
        if message[field] is not None:
            message[field] = str(message[field])
    return message


def _one(cur: PgCursor) -> dict[str, Any] | None:
    row = cur.fetchone()
    return _row_to_message(row) if row else None


def get_message(cur: PgCursor, *, message_id: str, lock: bool = False) -> dict[str, Any] | None:
    query = f"SELECT {_COLUMNS} FROM messages WHERE id = %s"
    if lock:
        query += " FOR UPDATE"
    cur.execute(query, (message_id,))
    return _one(cur)


def find_by_external_id(cur: PgCursor, *, workspace_id: str, external_id: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM messages WHERE workspace_id = %s AND external_id = %s",
        (workspace_id, external_id),
    )
    return _one(cur)


# (strategy name, WHERE clause) tried in order for a provider message id
_PROVIDER_ID_STRATEGIES: tuple[tuple[str, str], ...] = (
    ("external_id", "external_id = %s"),
    ("evolution_key_id", "evolution_key_id = %s"),
    ("metadata.provider_msg_id", "metadata ->> 'provider_msg_id' = %s"),
)


def find_by_provider_id(
    cur: PgCursor,
    *,
    workspace_id: str,
    provider_id: str,
) -> tuple[dict[str, Any] | None, str]:
    """Find a message by any of the ids a provider may echo back.

    Returns:
        (message or None, name of the strategy that matched or "none").
    """
    for strategy, clause in _PROVIDER_ID_STRATEGIES:
        cur.execute(
            f"""
            SELECT {_COLUMNS} FROM messages
            WHERE workspace_id = %s AND {clause}
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            (workspace_id, provider_id),
        )
        message = _one(cur)
        if message:
            return message, strategy
    return None, "none"


def find_by_evolution_key(cur: PgCursor, *, workspace_id: str, key_id: str) -> dict[str, Any] | None:
    """Match the Evolution short key, long key or our external id."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM messages
        WHERE workspace_id = %s
          AND (evolution_short_key_id = %s OR evolution_key_id = %s OR external_id = %s)
        ORDER BY created_at DESC
        LIMIT 1
        FOR UPDATE
        """,
        (workspace_id, key_id, key_id, key_id),
    )
    return _one(cur)


def find_recent_outgoing(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    since: datetime,
    status: str | None,
) -> dict[str, Any] | None:
    """Newest outgoing message of a conversation, optionally in a given status."""
    params: list[Any] = [workspace_id, conversation_id, list(OUTGOING_SENDER_TYPES), since]
    status_clause = ""
    if status:
        status_clause = "AND status = %s"
        params.append(status)
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM messages
        WHERE workspace_id = %s
          AND conversation_id = %s
          AND sender_type = ANY(%s)
          AND created_at >= %s
          {status_clause}
        ORDER BY created_at DESC
        LIMIT 1
        FOR UPDATE
        """,
        tuple(params),
    )
    return _one(cur)


_TIMELINE_FIELDS = (
    "id",
    "conversation_id",
    "content",
    "message_type",
    "sender_type",
    "sender_id",
    "file_url",
    "file_name",
    "mime_type",
    "status",
    "external_id",
    "reply_to_message_id",
    "quoted_message",
    "origem_resposta",
    "delivered_at",
    "read_at",
    "created_at",
)


def list_conversation_messages(
    cur: PgCursor,
    *,
    workspace_id: str,
    conversation_id: str,
    limit: int,
    before: tuple[datetime, str] | None = None,
) -> list[dict[str, Any]]:
    """One page of a conversation, newest first.

    ``before`` is (created_at, id) of the oldest message already shown.
    """
    clauses = ["workspace_id = %s", "conversation_id = %s"]
    params: list[Any] = [workspace_id, conversation_id]
    if before:
        clauses.append("(created_at, id) < (%s, %s::uuid)")
        params.extend(before)
    params.append(limit)

    cur.execute(
        f"""
        SELECT {", ".join(_TIMELINE_FIELDS)} FROM messages
        WHERE {" AND ".join(clauses)}
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        params,
    )
    messages = []
    for row in cur.fetchall():
        message = dict(zip(_TIMELINE_FIELDS, row))
        for field in ("id", "conversation_id", "sender_id", "reply_to_message_id"):
            if message[field] is not None:
                message[field] = str(message[field])
        messages.append(message)
    return messages


def insert_outgoing_message(
    cur: PgCursor,
    *,
    conversation_id: str,
    workspace_id: str,
    content: str,
    message_type: str,
    sender_type: str,
    sender_id: str | None,
    external_id: str,
    file_url: str | None = None,
    file_name: str | None = None,
    mime_type: str | None = None,
    reply_to_message_id: str | None = None,
    quoted_message: dict[str, Any] | None = None,
    origem_resposta: str = "manual",
    metadata: dict[str, Any] | None = None,
) -> str:
    """Insert a message in status ``sending``. Returns its id."""
    cur.execute(
        """
        INSERT INTO messages
            (conversation_id, workspace_id, content, message_type, sender_type, sender_id,
             file_url, file_name, mime_type, reply_to_message_id, quoted_message,
             status, origem_resposta, external_id, metadata)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'sending', %s, %s, %s)
        RETURNING id
        """,
        (
            conversation_id,
            workspace_id,
            content,
            message_type,
            sender_type,
            sender_id,
            file_url,
            file_name,
            mime_type,
            reply_to_message_id,
            as_json(quoted_message) if quoted_message is not None else None,
            origem_resposta,
            external_id,
            as_json(metadata or {}),
        ),
    )
    return str(cur.fetchone()[0])


def insert_inbound_message(
    cur: PgCursor,
    *,
    conversation_id: str,
    workspace_id: str,
    content: str,
    message_type: str,
    external_id: str,
    evolution_key_id: str | None = None,
    file_url: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> str | None:
    """Insert a contact message, once per (workspace, external_id).

    Returns:
        The new message id, or None if the provider id was already stored.
    """
    cur.execute(
        """
        INSERT INTO messages
            (conversation_id, workspace_id, content, message_type, sender_type,
             status, external_id, evolution_key_id, file_url, metadata)
        VALUES (%s, %s, %s, %s, 'contact', 'received', %s, %s, %s, %s)
        ON CONFLICT (workspace_id, external_id) WHERE external_id IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (
            conversation_id,
            workspace_id,
            content,
            message_type,
            external_id,
            evolution_key_id,
            file_url,
            as_json(metadata or {}),
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def get_send_payload(cur: PgCursor, *, message_id: str) -> dict[str, Any] | None:
    """Everything the sender needs: message body plus contact and connection."""
    cur.execute(
        """
        SELECT m.id, m.workspace_id, m.conversation_id, m.content, m.message_type,
               m.file_url, m.file_name, m.mime_type, m.external_id, m.status,
               m.quoted_message, m.sender_id, ct.phone, cv.connection_id,
               cn.instance_name, cn.provider
        FROM messages m
        JOIN conversations cv ON cv.id = m.conversation_id
        JOIN contacts ct ON ct.id = cv.contact_id
        LEFT JOIN connections cn ON cn.id = cv.connection_id
        WHERE m.id = %s
        """,
        (message_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    fields = (
        "id",
        "workspace_id",
        "conversation_id",
        "content",
        "message_type",
        "file_url",
        "file_name",
        "mime_type",
        "external_id",
        "status",
        "quoted_message",
        "sender_id",
        "phone",
        "connection_id",
        "instance_name",
        "provider",
    )
    payload = dict(zip(fields, row))
    for field in ("id", "workspace_id", "conversation_id", "sender_id", "connection_id"):
        if payload[field] is not None:
            payload[field] = str(payload[field])
    return payload


def apply_status(
    cur: PgCursor,
    *,
    message_id: str,
    status: str,
    set_delivered_at: bool = False,
    set_read_at: bool = False,
    evolution_key_id: str | None = None,
    evolution_short_key_id: str | None = None,
) -> None:
    """Write a new status, filling timestamps and key ids only where still empty."""
    cur.execute(
        """
        UPDATE messages
        SET status = %s,
            delivered_at = CASE WHEN %s THEN COALESCE(delivered_at, now()) ELSE delivered_at END,
            read_at = CASE WHEN %s THEN COALESCE(read_at, now()) ELSE read_at END,
            evolution_key_id = COALESCE(evolution_key_id, %s),
            evolution_short_key_id = COALESCE(evolution_short_key_id, %s)
        WHERE id = %s
        """,
        (status, set_delivered_at, set_read_at, evolution_key_id, evolution_short_key_id, message_id),
    )


def mark_sent(
    cur: PgCursor,
    *,
    message_id: str,
    provider_msg_id: str | None,
    method: str,
    metadata: dict[str, Any],
) -> None:
    """Status ``sent`` plus the provider id and send metadata (merged into existing)."""
    merged = dict(metadata)
    merged["method"] = method
    if provider_msg_id:
        merged["provider_msg_id"] = provider_msg_id
    cur.execute(
        """
        UPDATE messages
        SET status = CASE WHEN status IN ('delivered', 'read') THEN status ELSE 'sent' END,
            evolution_key_id = COALESCE(%s, evolution_key_id),
            metadata = metadata || %s
        WHERE id = %s
        """,
        (provider_msg_id, as_json(merged), message_id),
    )


def mark_failed(cur: PgCursor, *, message_id: str, metadata: dict[str, Any]) -> None:
    cur.execute(
        """
        UPDATE messages
        SET status = 'failed', metadata = metadata || %s
        WHERE id = %s AND status IN ('sending', 'failed')
        """,
        (as_json(metadata), message_id),
    )


def backfill_short_key(
    cur: PgCursor,
    *,
    workspace_id: str,
    short_key_id: str,
    since: datetime,
) -> str | None:
    """Attach an Evolution short key to the latest agent message still missing one.

    Returns:
        The updated message id, or None.
    """
    cur.execute(
        """
        UPDATE messages
        SET evolution_short_key_id = %s
        WHERE id = (
            SELECT id FROM messages
            WHERE workspace_id = %s
              AND sender_type = ANY(%s)
              AND evolution_short_key_id IS NULL
              AND created_at >= %s
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
        )
        RETURNING id
        """,
        (short_key_id, workspace_id, list(OUTGOING_SENDER_TYPES), since),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None
