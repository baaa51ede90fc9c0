"""Manual entries repository - host-recorded offline bookings.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import date
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tembea.infra.db import json_param

ACTIVE_STATUS = "confirmed"


def insert_manual_entry(
    cur: PgCursor,
    *,
    item_id: str,
    host_id: str | None,
    guest_name: str,
    guest_contact: str,
    slots_booked: int,
    visit_date: date | None,
    entry_details: dict[str, Any],
    total_cents: int,
) -> str:
    """Insert a manual entry, always in status 'confirmed'.

    Returns:
        Manual entry UUID string.
    """
    cur.execute(
        """
        INSERT INTO manual_entries (
            item_id, host_id, guest_name, guest_contact, status,
            slots_booked, visit_date, entry_details, total_cents
        )
        VALUES (%s, %s, %s, %s, 'confirmed', %s, %s, %s, %s)
        RETURNING id
        """,
        (
            item_id,
            host_id,
            guest_name,
            guest_contact,
            slots_booked,
            visit_date,
            json_param(entry_details),
            total_cents,
        ),
    )
    return str(cur.fetchone()[0])


def list_active_entry_details(cur: PgCursor, *, item_id: str) -> list[tuple[str, date | None, dict]]:
    """Return (id, visit_date, entry_details) of manual entries holding capacity."""
    cur.execute(
        """
        SELECT id, visit_date, entry_details
        FROM manual_entries
        WHERE item_id = %s AND status = %s
        ORDER BY created_at
        """,
        (item_id, ACTIVE_STATUS),
    )
    return [(str(row[0]), row[1], row[2] or {}) for row in cur.fetchall()]
