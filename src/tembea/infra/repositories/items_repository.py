"""Bookable items repository - read access to listings.

Uses raw SQL with psycopg2 (no ORM). Listings are written by host editing
flows elsewhere; the booking engine only reads and row-locks them.
"""

from psycopg2.extensions import cursor as PgCursor

from tembea.domain.models import Activity, BookableItem, Facility
from tembea.infra.db import is_uuid

_ITEM_COLUMNS = """
    id, item_type, name, total_capacity, facilities, activities,
    entrance_type, adult_price_cents, child_price_cents,
    fixed_date, is_flexible_date, booking_horizon_days,
    host_id, approval_status, currency
"""


def _row_to_item(row: tuple) -> BookableItem:
    facilities = tuple(
        Facility(
            name=f["name"],
            price_cents=int(f.get("price_cents", 0) or 0),
            capacity=int(f["capacity"]) if f.get("capacity") else None,
        )
        for f in (row[4] or [])
    )
    activities = tuple(
        Activity(name=a["name"], price_cents=int(a.get("price_cents", 0) or 0))
        for a in (row[5] or [])
    )
    return BookableItem(
        id=str(row[0]),
        item_type=row[1],
        name=row[2],
        total_capacity=row[3] or 0,
        facilities=facilities,
        activities=activities,
        entrance_type=row[6] or "paid",
        adult_price_cents=row[7] or 0,
        child_price_cents=row[8] or 0,
        fixed_date=row[9],
        is_flexible_date=bool(row[10]),
        booking_horizon_days=row[11] or 30,
        host_id=str(row[12]) if row[12] else None,
        approval_status=row[13],
        currency=row[14] or "KES",
    )


def get_item(cur: PgCursor, item_id: str, *, lock: bool = False) -> BookableItem | None:
    """Load a bookable item.

    Args:
        cur: Database cursor.
        item_id: Item UUID.
        lock: If True, locks the item row FOR UPDATE. Every writer that
            consumes capacity of the item takes this lock first, so the
            capacity re-check and the write that follows are serialized
            per item.

    Returns:
        BookableItem or None if not found.
    """
    if not is_uuid(item_id):
        return None
    suffix = " FOR UPDATE" if lock else ""
    cur.execute(
        f"SELECT {_ITEM_COLUMNS} FROM bookable_items WHERE id = %s{suffix}",
        (item_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return _row_to_item(row)
