"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an alembic context.
DATABASE_URL may be a URL (postgres://, postgresql://) or a libpq
key=value DSN such as the ones Cloud SQL connectors hand out.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus, urlparse, urlunparse

DRIVER_SCHEME = "postgresql+psycopg2"

_DSN_TOKEN = re.compile(r"(\w+)\s*=\s*('(?:\\.|[^'\\])*'|\S*)")
_ESCAPE = re.compile(r"\\(.)")


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    """Split a libpq DSN into its keywords. Single-quoted values may hold spaces and \\' escapes."""
    tokens: dict[str, str] = {}
    for key, raw in _DSN_TOKEN.findall(dsn):
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            raw = _ESCAPE.sub(r"\1", raw[1:-1])
        tokens[key] = raw
    return tokens


def libpq_dsn_to_url(dsn: str) -> str:
    """Convert a libpq DSN into a SQLAlchemy URL.

    A host starting with ``/`` is a unix socket directory (Cloud SQL) and is
    passed as the ``host`` query parameter.
    """
    tokens = parse_libpq_dsn(dsn)
    password = tokens.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = f"{quote_plus(tokens.get('user', ''))}:{quote_plus(password)}"
    dbname = quote_plus(tokens.get("dbname", ""))
    host = tokens.get("host", "localhost")

    if host.startswith("/"):
        return f"{DRIVER_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    return f"{DRIVER_SCHEME}://{credentials}@{host}:{tokens.get('port', '5432')}/{dbname}"


def normalize_url(url: str) -> str:
    """Force the psycopg2 driver and fill an empty password from DB_PASSWORD."""
    scheme, sep, rest = url.partition("://")
    if scheme in ("postgres", "postgresql"):
        url = f"{DRIVER_SCHEME}{sep}{rest}"

    db_password = os.environ.get("DB_PASSWORD", "")
    parsed = urlparse(url)
    if db_password and not parsed.password:
        netloc = f"{quote_plus(parsed.username or '')}:{quote_plus(db_password)}@{parsed.hostname}"
        if parsed.port:
            netloc += f":{parsed.port}"
        url = urlunparse(parsed._replace(netloc=netloc))
    return url


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" in url:
        return normalize_url(url)
    return libpq_dsn_to_url(url)
