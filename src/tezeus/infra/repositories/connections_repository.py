"""Connections repository - WhatsApp provider instances bound to a workspace."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import as_json

_COLUMNS = """
    id, workspace_id, instance_name, provider, status, phone_number, queue_id,
    auto_create_crm_card, default_pipeline_id, metadata, qr_code
"""

_FIELDS = (
    "id",
    "workspace_id",
    "instance_name",
    "provider",
    "status",
    "phone_number",
    "queue_id",
    "auto_create_crm_card",
    "default_pipeline_id",
    "metadata",
    "qr_code",
)


def _row_to_connection(row: tuple) -> dict[str, Any]:
    connection = dict(zip(_FIELDS, row))
    for field in ("id", "workspace_id", "queue_id", "default_pipeline_id"):
        if connection[field] is not None:
            connection[field] = str(connection[field])
    connection["auto_create_crm_card"] = bool(connection["auto_create_crm_card"])
    connection["metadata"] = connection["metadata"] or {}
    return connection


def get_connection(cur: PgCursor, *, connection_id: str) -> dict[str, Any] | None:
    cur.execute(f"SELECT {_COLUMNS} FROM connections WHERE id = %s", (connection_id,))
    row = cur.fetchone()
    return _row_to_connection(row) if row else None


def get_connection_by_instance(cur: PgCursor, *, instance: str) -> dict[str, Any] | None:
    """Match by instance name, or by the Z-API instance id kept in metadata."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM connections
        WHERE instance_name = %s OR metadata ->> 'instanceId' = %s
        LIMIT 1
        """,
        (instance, instance),
    )
    row = cur.fetchone()
    return _row_to_connection(row) if row else None


def get_default_connection(cur: PgCursor, *, workspace_id: str) -> dict[str, Any] | None:
    """First connected connection of a workspace."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM connections
        WHERE workspace_id = %s AND status = 'connected'
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (workspace_id,),
    )
    row = cur.fetchone()
    return _row_to_connection(row) if row else None


def update_status(
    cur: PgCursor,
    *,
    connection_id: str,
    status: str,
    phone_number: str | None = None,
) -> None:
    cur.execute(
        """
        UPDATE connections
        SET status = %s, phone_number = COALESCE(%s, phone_number),
            qr_code = CASE WHEN %s IN ('connected', 'disconnected') THEN NULL ELSE qr_code END
        WHERE id = %s
        """,
        (status, phone_number, status, connection_id),
    )


def set_qr_code(cur: PgCursor, *, connection_id: str, qr_code: str) -> None:
    """Store the pairing QR code; the connection waits in status ``qr``."""
    cur.execute(
        "UPDATE connections SET qr_code = %s, status = 'qr' WHERE id = %s",
        (qr_code, connection_id),
    )


def insert_connection(
    cur: PgCursor,
    *,
    workspace_id: str,
    instance_name: str,
    provider: str,
    queue_id: str | None = None,
    auto_create_crm_card: bool = False,
    default_pipeline_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> str:
    cur.execute(
        """
        INSERT INTO connections
            (workspace_id, instance_name, provider, status, queue_id,
             auto_create_crm_card, default_pipeline_id, metadata)
        VALUES (%s, %s, %s, 'connecting', %s, %s, %s, %s)
        RETURNING id
        """,
        (
            workspace_id,
            instance_name,
            provider,
            queue_id,
            auto_create_crm_card,
            default_pipeline_id,
            as_json(metadata or {}),
        ),
    )
    return str(cur.fetchone()[0])


def list_connections(cur: PgCursor, *, workspace_id: str) -> list[dict[str, Any]]:
    cur.execute(
        f"SELECT {_COLUMNS} FROM connections WHERE workspace_id = %s ORDER BY created_at ASC",
        (workspace_id,),
    )
    return [_row_to_connection(row) for row in cur.fetchall()]
