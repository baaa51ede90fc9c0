"""Track superseded payment sessions and add reschedule_log.

Revision ID: 002_superseded_sessions
Revises: 001_initial_schema
Create Date: 2026-10-17
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "002_superseded_sessions"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    sql_path = (
        Path(__file__).resolve().parents[1] / "sql" / "002_superseded_sessions_and_reschedules.sql"
    )
    sql = sql_path.read_text(encoding="utf-8")
    conn = op.get_bind()
    conn.exec_driver_sql(sql)


def downgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("DROP TABLE IF EXISTS reschedule_log")
    conn.exec_driver_sql("DROP INDEX IF EXISTS idx_payments_superseded_sessions")
    conn.exec_driver_sql("ALTER TABLE payments DROP COLUMN IF EXISTS superseded_checkout_request_ids")
