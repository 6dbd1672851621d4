"""Postgres access layer (psycopg2, raw SQL).

Provides:
- get_conn(): connection from DATABASE_URL
- txn(): short transaction as a context manager
- fetchone/fetchall: query helpers returning tuples
- for_update(): SELECT ... FOR UPDATE helper
- as_json(): wrap a Python value for a jsonb parameter
- savepoint(): best-effort nested write
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import Json

Params = Sequence[Any] | dict[str, Any] | None


def get_conn() -> PgConnection:
    """Open a new connection from DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
        psycopg2.Error: On connection failure.
    """
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Run a short transaction.

    Commits on clean exit and rolls back on exception. A connection opened
    here is closed on exit; a caller-supplied one is left open.

    Example:
        with txn() as cur:
            cur.execute("UPDATE conversations SET status = %s WHERE id = %s", ("open", cid))
    """
    owns_conn = conn is None
    if owns_conn:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if owns_conn:
            conn.close()


def fetchone(cur: PgCursor, query: str, params: Params = None) -> tuple[Any, ...] | None:
    """Execute query and return the first row, or None."""
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(cur: PgCursor, query: str, params: Params = None) -> list[tuple[Any, ...]]:
    """Execute query and return every row."""
    cur.execute(query, params)
    return cur.fetchall()


def for_update(
    cur: PgCursor,
    query: str,
    params: Params = None,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> tuple[Any, ...] | None:
    """Execute SELECT ... FOR UPDATE and fetch one row.

    Args:
        cur: Database cursor.
        query: SELECT query without the locking clause.
        params: Query parameters.
        nowait: Fail immediately if the row is locked.
        skip_locked: Skip locked rows.

    Raises:
        ValueError: If both nowait and skip_locked are True.
    """
    if nowait and skip_locked:
        raise ValueError("Cannot use both nowait and skip_locked")

    suffix = " FOR UPDATE"
    if nowait:
        suffix += " NOWAIT"
    elif skip_locked:
        suffix += " SKIP LOCKED"

    cur.execute(query.rstrip().rstrip(";") + suffix, params)
    return cur.fetchone()


def as_json(value: Any) -> Json:
    """Adapt a dict/list for a jsonb column."""
    return Json(value)


@contextmanager
def savepoint(cur: PgCursor, name: str) -> Iterator[PgCursor]:
    """Scope a best-effort write inside a larger transaction.

    On error the savepoint is rolled back and the exception re-raised, so the
    caller may log it and keep using the outer transaction.
    """
    cur.execute(f"SAVEPOINT {name}")
    try:
        yield cur
    except Exception:
        cur.execute(f"ROLLBACK TO SAVEPOINT {name}")
        raise
    cur.execute(f"RELEASE SAVEPOINT {name}")
