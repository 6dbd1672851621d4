"""Campaigns repository - disparador campaigns, send events and responses."""

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def get_campaign(cur: PgCursor, *, campaign_id: str, workspace_id: str | None = None) -> dict[str, Any] | None:
    params: tuple = (campaign_id,)
    query = "SELECT id, workspace_id, name, message, status FROM disparador_campaigns WHERE id = %s"
    if workspace_id:
        query += " AND workspace_id = %s"
        params = (campaign_id, workspace_id)
    cur.execute(query, params)
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "workspace_id": str(row[1]),
        "name": row[2],
        "message": row[3],
        "status": row[4],
    }


def list_campaign_contacts(cur: PgCursor, *, campaign_id: str) -> list[dict[str, Any]]:
    cur.execute(
        """
        SELECT c.id, c.name, c.phone
        FROM disparador_campaign_contacts cc
        JOIN contacts c ON c.id = cc.contact_id
        WHERE cc.campaign_id = %s AND c.phone IS NOT NULL
        ORDER BY c.name NULLS LAST, c.id
        """,
        (campaign_id,),
    )
    return [{"id": str(row[0]), "name": row[1], "phone": row[2]} for row in cur.fetchall()]


def set_campaign_status(cur: PgCursor, *, campaign_id: str, status: str) -> None:
    cur.execute(
        """
        UPDATE disparador_campaigns
        SET status = %s,
            started_at = CASE WHEN %s = 'disparando' THEN COALESCE(started_at, now()) ELSE started_at END,
            completed_at = CASE WHEN %s = 'concluida' THEN now() ELSE completed_at END,
            updated_at = now()
        WHERE id = %s
        """,
        (status, status, status, campaign_id),
    )


def upsert_send_events(
    cur: PgCursor,
    *,
    campaign_id: str,
    contact_ids: list[str],
    status: str,
) -> None:
    """Reset a batch of contacts to one status (used to queue a whole campaign)."""
    for contact_id in contact_ids:
        upsert_send_event(cur, campaign_id=campaign_id, contact_id=contact_id, status=status)


def upsert_send_event(
    cur: PgCursor,
    *,
    campaign_id: str,
    contact_id: str,
    status: str,
    error: str | None = None,
    provider_message_id: str | None = None,
) -> None:
    cur.execute(
        """
        INSERT INTO disparador_send_events
            (campaign_id, contact_id, status, error, provider_message_id, sent_at)
        VALUES (%s, %s, %s, %s, %s, CASE WHEN %s = 'sent' THEN now() END)
        ON CONFLICT (campaign_id, contact_id) DO UPDATE
        SET status = EXCLUDED.status,
            error = EXCLUDED.error,
            provider_message_id = COALESCE(EXCLUDED.provider_message_id, disparador_send_events.provider_message_id),
            sent_at = COALESCE(EXCLUDED.sent_at, disparador_send_events.sent_at),
            updated_at = now()
        """,
        (campaign_id, contact_id, status, error, provider_message_id, status),
    )


def get_response_kind(cur: PgCursor, *, campaign_id: str, contact_id: str) -> str | None:
    cur.execute(
        """
        SELECT kind FROM disparador_response_events
        WHERE campaign_id = %s AND contact_id = %s
        FOR UPDATE
        """,
        (campaign_id, contact_id),
    )
    row = cur.fetchone()
    return row[0] if row else None


def upsert_response_event(
    cur: PgCursor,
    *,
    campaign_id: str,
    contact_id: str,
    kind: str,
    response_text: str | None,
) -> None:
    cur.execute(
        """
        INSERT INTO disparador_response_events (campaign_id, contact_id, kind, response_text)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (campaign_id, contact_id) DO UPDATE
        SET kind = EXCLUDED.kind,
            response_text = COALESCE(EXCLUDED.response_text, disparador_response_events.response_text),
            responded_at = now()
        """,
        (campaign_id, contact_id, kind, response_text),
    )
