"""Connection QR code and inbox indexes.

Revision ID: 003_connection_qr_code
Revises: 002_disparador_and_calendar
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "003_connection_qr_code"
down_revision = "002_disparador_and_calendar"
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "003_connection_qr_code.sql"


def upgrade() -> None:
    op.execute(_SQL_FILE.read_text())


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
