"""Referral repository - tracking rows, settings and commission records.

Uses raw SQL with psycopg2 (no ORM).
"""

from decimal import Decimal
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tembea.infra.db import is_uuid


def get_referral_tracking(cur: PgCursor, tracking_id: str) -> dict[str, Any] | None:
    if not is_uuid(tracking_id):
        return None
    cur.execute(
        """
        SELECT id, referrer_id, referred_user_id, item_id, item_type, status
        FROM referral_tracking
        WHERE id = %s
        """,
        (tracking_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "referrer_id": str(row[1]),
        "referred_user_id": str(row[2]) if row[2] else None,
        "item_id": str(row[3]) if row[3] else None,
        "item_type": row[4],
        "status": row[5],
    }


def mark_tracking_converted(cur: PgCursor, tracking_id: str) -> None:
    cur.execute(
        """
        UPDATE referral_tracking
        SET status = 'converted', converted_at = now()
        WHERE id = %s AND status <> 'converted'
        """,
        (tracking_id,),
    )


def insert_commission(
    cur: PgCursor,
    *,
    booking_id: str,
    referral_tracking_id: str,
    referrer_id: str,
    referred_user_id: str | None,
    commission_cents: int,
    commission_rate: Decimal,
    booking_amount_cents: int,
) -> str | None:
    """Insert a commission; UNIQUE(booking_id) turns a repeat into a no-op.

    Returns:
        New commission UUID, or None if the booking already has one.
    """
    cur.execute(
        """
        INSERT INTO referral_commissions (
            booking_id, referral_tracking_id, referrer_id, referred_user_id,
            commission_type, commission_cents, commission_rate,
            booking_amount_cents, status, paid_at
        )
        VALUES (%s, %s, %s, %s, 'booking', %s, %s, %s, 'paid', now())
        ON CONFLICT (booking_id) DO NOTHING
        RETURNING id
        """,
        (
            booking_id,
            referral_tracking_id,
            referrer_id,
            referred_user_id,
            commission_cents,
            commission_rate,
            booking_amount_cents,
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def get_commission_by_booking(cur: PgCursor, booking_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, booking_id, referrer_id, commission_cents, commission_rate,
               booking_amount_cents
        FROM referral_commissions
        WHERE booking_id = %s
        """,
        (booking_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "booking_id": str(row[1]),
        "referrer_id": str(row[2]),
        "commission_cents": row[3],
        "commission_rate": Decimal(row[4]),
        "booking_amount_cents": row[5],
    }
