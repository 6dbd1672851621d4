"""Campaign dispatcher tables and Google Calendar OAuth storage.

Revision ID: 002_disparador_and_calendar
Revises: 001_initial_schema
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_disparador_and_calendar"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "002_disparador_and_calendar.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text())


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
