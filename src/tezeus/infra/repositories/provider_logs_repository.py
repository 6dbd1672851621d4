"""Provider logs repository - one row per provider call for the admin panel."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import as_json


def insert_provider_log(
    cur: PgCursor,
    *,
    workspace_id: str,
    provider: str,
    action: str,
    success: bool,
    response_time_ms: int | None = None,
    error_message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Record a provider call. ``metadata`` must not hold phones or message text."""
    cur.execute(
        """
        INSERT INTO whatsapp_provider_logs
            (workspace_id, provider, action, result, response_time_ms, error_message, metadata)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (
            workspace_id,
            provider,
            action,
            "success" if success else "error",
            response_time_ms,
            error_message,
            as_json(metadata or {}),
        ),
    )
