"""Bookings repository - persistence for self-service bookings.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import date
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tembea.infra.db import is_uuid, json_param

# Bookings that hold capacity.
ACTIVE_STATUS = "confirmed"
ACTIVE_PAYMENT_STATUSES = ("completed",)


def insert_booking(
    cur: PgCursor,
    *,
    item_id: str,
    booking_type: str,
    total_cents: int,
    currency: str,
    slots_booked: int,
    visit_date: date | None,
    booking_details: dict[str, Any],
    user_id: str | None,
    guest_name: str,
    guest_email: str,
    guest_phone: str | None,
    payment_status: str,
    payment_method: str | None = None,
    payment_phone: str | None = None,
    payment_id: str | None = None,
    referral_tracking_id: str | None = None,
) -> tuple[str | None, bool]:
    """Insert a confirmed booking.

    A paid booking is keyed by its payment: UNIQUE(payment_id) makes
    materializing the same payment twice a no-op.

    Returns:
        Tuple of (booking_id, created).
        - created: False if a booking already existed for payment_id.
    """
    cur.execute(
        """
        INSERT INTO bookings (
            item_id, booking_type, user_id, is_guest_booking,
            guest_name, guest_email, guest_phone,
            status, payment_status, payment_method, payment_phone, payment_id,
            slots_booked, visit_date, booking_details,
            total_cents, currency, referral_tracking_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'confirmed', %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s)
        ON CONFLICT (payment_id) WHERE payment_id IS NOT NULL DO NOTHING
        RETURNING id
        """,
        (
            item_id,
            booking_type,
            user_id,
            user_id is None,
            guest_name,
            guest_email,
            guest_phone,
            payment_status,
            payment_method,
            payment_phone,
            payment_id,
            slots_booked,
            visit_date,
            json_param(booking_details),
            total_cents,
            currency,
            referral_tracking_id,
        ),
    )
    row = cur.fetchone()
    if row is not None:
        return (str(row[0]), True)

    if payment_id is None:
        return (None, False)

    cur.execute("SELECT id FROM bookings WHERE payment_id = %s", (payment_id,))
    row = cur.fetchone()
    if row is not None:
        return (str(row[0]), False)
    return (None, False)


_BOOKING_COLUMNS = """
    id, item_id, status, payment_status, slots_booked, visit_date,
    booking_details, total_cents, currency, referral_tracking_id, payment_id,
    guest_name, guest_email, guest_phone, user_id, created_at
"""


def _row_to_booking(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "item_id": str(row[1]),
        "status": row[2],
        "payment_status": row[3],
        "slots_booked": row[4],
        "visit_date": row[5],
        "booking_details": row[6] or {},
        "total_cents": row[7],
        "currency": row[8],
        "referral_tracking_id": str(row[9]) if row[9] else None,
        "payment_id": str(row[10]) if row[10] else None,
        "guest_name": row[11],
        "guest_email": row[12],
        "guest_phone": row[13],
        "user_id": str(row[14]) if row[14] else None,
        "created_at": row[15],
    }


def get_booking(cur: PgCursor, booking_id: str, *, lock: bool = False) -> dict[str, Any] | None:
    if not is_uuid(booking_id):
        return None
    suffix = " FOR UPDATE" if lock else ""
    cur.execute(
        f"SELECT {_BOOKING_COLUMNS} FROM bookings WHERE id = %s{suffix}",
        (booking_id,),
    )
    row = cur.fetchone()
    return _row_to_booking(row) if row else None


def list_active_booking_details(cur: PgCursor, *, item_id: str) -> list[tuple[str, date | None, dict]]:
    """Return (id, visit_date, booking_details) of bookings holding capacity."""
    cur.execute(
        """
        SELECT id, visit_date, booking_details
        FROM bookings
        WHERE item_id = %s
          AND status = %s
          AND payment_status = ANY(%s)
        ORDER BY created_at
        """,
        (item_id, ACTIVE_STATUS, list(ACTIVE_PAYMENT_STATUSES)),
    )
    return [(str(row[0]), row[1], row[2] or {}) for row in cur.fetchall()]


def mark_booking_cancelled(cur: PgCursor, booking_id: str) -> None:
    cur.execute(
        """
        UPDATE bookings
        SET status = 'cancelled',
            cancelled_at = now(),
            updated_at = now()
        WHERE id = %s
        """,
        (booking_id,),
    )


def update_booking_visit_date(cur: PgCursor, booking_id: str, visit_date: date) -> None:
    cur.execute(
        """
        UPDATE bookings
        SET visit_date = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (visit_date, booking_id),
    )


def insert_reschedule_log(
    cur: PgCursor,
    *,
    booking_id: str,
    old_date: date,
    new_date: date,
    user_id: str | None = None,
    reason: str | None = None,
) -> str:
    """Record a date change of a booking.

    Returns:
        reschedule_log UUID string.
    """
    cur.execute(
        """
        INSERT INTO reschedule_log (booking_id, user_id, old_date, new_date, reason)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (booking_id, user_id, old_date, new_date, reason),
    )
    return str(cur.fetchone()[0])
