"""Google Calendar OAuth storage: pending PKCE states and stored authorizations."""

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor


def insert_oauth_state(
    cur: PgCursor,
    *,
    state: str,
    workspace_id: str,
    user_id: str,
    code_verifier: str,
    redirect_uri: str,
    expires_at: datetime,
) -> None:
    cur.execute(
        """
        INSERT INTO google_calendar_oauth_states
            (state, workspace_id, user_id, code_verifier, redirect_uri, expires_at)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (state, workspace_id, user_id, code_verifier, redirect_uri, expires_at),
    )


def get_oauth_state(cur: PgCursor, *, state: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, workspace_id, user_id, code_verifier, redirect_uri, used, expires_at
        FROM google_calendar_oauth_states
        WHERE state = %s
        FOR UPDATE
        """,
        (state,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "workspace_id": str(row[1]),
        "user_id": str(row[2]),
        "code_verifier": row[3],
        "redirect_uri": row[4],
        "used": bool(row[5]),
        "expires_at": row[6],
    }


def mark_state_used(cur: PgCursor, *, state_id: str) -> None:
    cur.execute("UPDATE google_calendar_oauth_states SET used = true WHERE id = %s", (state_id,))


def delete_stale_states(cur: PgCursor, *, now: datetime) -> int:
    cur.execute(
        "DELETE FROM google_calendar_oauth_states WHERE used = true OR expires_at < %s",
        (now,),
    )
    return cur.rowcount


def get_authorization(cur: PgCursor, *, workspace_id: str, user_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, google_email, refresh_token, authorized_at, last_token_check_at, revoked_at, scopes
        FROM google_calendar_authorizations
        WHERE workspace_id = %s AND user_id = %s
        """,
        (workspace_id, user_id),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "google_email": row[1],
        "refresh_token": row[2],
        "authorized_at": row[3],
        "last_token_check_at": row[4],
        "revoked_at": row[5],
        "scopes": row[6],
    }


def upsert_authorization(
    cur: PgCursor,
    *,
    workspace_id: str,
    user_id: str,
    google_email: str | None,
    refresh_token: str,
    access_token: str | None,
    token_expires_at: datetime | None,
    scopes: str | None,
) -> None:
    """Store (or replace) the grant of one user in one workspace and clear any revocation."""
    cur.execute(
        """
        INSERT INTO google_calendar_authorizations
            (workspace_id, user_id, google_email, refresh_token, access_token,
             token_expires_at, scopes, authorized_at, last_token_check_at, revoked_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, now(), now(), NULL)
        ON CONFLICT (workspace_id, user_id) DO UPDATE
        SET google_email = EXCLUDED.google_email,
            refresh_token = EXCLUDED.refresh_token,
            access_token = EXCLUDED.access_token,
            token_expires_at = EXCLUDED.token_expires_at,
            scopes = EXCLUDED.scopes,
            authorized_at = now(),
            last_token_check_at = now(),
            revoked_at = NULL
        """,
        (workspace_id, user_id, google_email, refresh_token, access_token, token_expires_at, scopes),
    )


def mark_token_checked(
    cur: PgCursor,
    *,
    authorization_id: str,
    access_token: str | None,
    token_expires_at: datetime | None,
) -> None:
    cur.execute(
        """
        UPDATE google_calendar_authorizations
        SET last_token_check_at = now(),
            access_token = COALESCE(%s, access_token),
            token_expires_at = COALESCE(%s, token_expires_at)
        WHERE id = %s
        """,
        (access_token, token_expires_at, authorization_id),
    )


def revoke_authorization(cur: PgCursor, *, authorization_id: str) -> None:
    cur.execute(
        """
        UPDATE google_calendar_authorizations
        SET revoked_at = now(), access_token = NULL
        WHERE id = %s
        """,
        (authorization_id,),
    )
