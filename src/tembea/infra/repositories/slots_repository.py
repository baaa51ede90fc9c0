"""Booked-slot aggregate - per item, per visit date.

item_date_slots holds the number of slots taken on a date by confirmed
bookings and confirmed manual entries together. Each record increments it
exactly once when it is written and decrements it when it is cancelled.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import date

from psycopg2.extensions import cursor as PgCursor


def get_booked_slots(cur: PgCursor, *, item_id: str, visit_date: date) -> int:
    """Return slots already taken on a date (0 when no row exists)."""
    cur.execute(
        """
        SELECT booked_slots FROM item_date_slots
        WHERE item_id = %s AND visit_date = %s
        """,
        (item_id, visit_date),
    )
    row = cur.fetchone()
    return int(row[0]) if row else 0


def increment_booked_slots(
    cur: PgCursor,
    *,
    item_id: str,
    visit_date: date,
    slots: int,
    capacity: int,
) -> int | None:
    """Take slots on a date with a capacity guard (compare-and-set).

    The upsert only succeeds while booked_slots + slots <= capacity. On a
    conflicting row the UPDATE re-evaluates the guard against the latest
    committed value, so two concurrent writers can never both pass when only
    one of them fits.

    Returns:
        New booked_slots value, or None if the guard rejected the write.
    """
    if slots > capacity:
        return None
    cur.execute(
        """
        INSERT INTO item_date_slots (item_id, visit_date, booked_slots)
        VALUES (%s, %s, %s)
        ON CONFLICT (item_id, visit_date) DO UPDATE
        SET booked_slots = item_date_slots.booked_slots + EXCLUDED.booked_slots,
            updated_at = now()
        WHERE item_date_slots.booked_slots + EXCLUDED.booked_slots <= %s
        RETURNING booked_slots
        """,
        (item_id, visit_date, slots, capacity),
    )
    row = cur.fetchone()
    return int(row[0]) if row else None


def decrement_booked_slots(
    cur: PgCursor,
    *,
    item_id: str,
    visit_date: date,
    slots: int,
) -> bool:
    """Release slots on a date. Returns False if fewer slots were recorded."""
    cur.execute(
        """
        UPDATE item_date_slots
        SET booked_slots = booked_slots - %s, updated_at = now()
        WHERE item_id = %s AND visit_date = %s AND booked_slots >= %s
        """,
        (slots, item_id, visit_date, slots),
    )
    return cur.rowcount > 0
