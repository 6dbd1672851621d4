"""Contacts repository.

Contacts are unique per (workspace_id, phone). Z-API may identify a chat by
a LID (``...@lid``) instead of a phone; the mapping is kept in
``contacts.whatsapp_lid`` once both are seen together.
"""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = "id, workspace_id, name, phone, email, whatsapp_lid"
_FIELDS = ("id", "workspace_id", "name", "phone", "email", "whatsapp_lid")


def _row_to_contact(row: tuple) -> dict[str, Any]:
    contact = dict(zip(_FIELDS, row))
    contact["id"] = str(contact["id"])
    contact["workspace_id"] = str(contact["workspace_id"])
    return contact


def get_contact(cur: PgCursor, *, contact_id: str) -> dict[str, Any] | None:
    cur.execute(f"SELECT {_COLUMNS} FROM contacts WHERE id = %s", (contact_id,))
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_phone(cur: PgCursor, *, workspace_id: str, phone: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM contacts WHERE workspace_id = %s AND phone = %s",
        (workspace_id, phone),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_lid(cur: PgCursor, *, workspace_id: str, lid: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM contacts WHERE workspace_id = %s AND whatsapp_lid = %s LIMIT 1",
        (workspace_id, lid),
    )
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def upsert_contact(
    cur: PgCursor,
    *,
    workspace_id: str,
    phone: str,
    name: str | None = None,
    profile_image_url: str | None = None,
) -> tuple[str, bool]:
    """Insert or refresh a contact by phone.

    An existing name or picture is only replaced by a non-empty value.

    Returns:
        (contact_id, created)
    """
    cur.execute(
        """
        INSERT INTO contacts (workspace_id, phone, name, profile_image_url)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (workspace_id, phone) DO UPDATE
        SET name = COALESCE(NULLIF(EXCLUDED.name, ''), contacts.name),
            profile_image_url = COALESCE(EXCLUDED.profile_image_url, contacts.profile_image_url),
            updated_at = now()
        RETURNING id, (xmax = 0) AS created
        """,
        (workspace_id, phone, name or phone, profile_image_url),
    )
    row = cur.fetchone()
    return str(row[0]), bool(row[1])


def set_whatsapp_lid(cur: PgCursor, *, contact_id: str, lid: str) -> None:
    cur.execute(
        """
        UPDATE contacts SET whatsapp_lid = %s, updated_at = now()
        WHERE id = %s AND whatsapp_lid IS DISTINCT FROM %s
        """,
        (lid, contact_id, lid),
    )
