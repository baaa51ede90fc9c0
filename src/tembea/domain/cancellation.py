"""Booking cancellation - transactional cancellation that releases capacity.

Orchestrates cancellation inside a single DB transaction:
lock booking → validate → lock item → update status → release slots → emit event.

A booking may be cancelled up to 48 hours before the start of its visit date
(local time).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from tembea.domain.capacity import get_availability_cache, release_slots, store_guard
from tembea.domain.models import SLOT_BASED
from tembea.infra.db import txn
from tembea.infra.repositories.bookings_repository import get_booking, mark_booking_cancelled
from tembea.infra.repositories.items_repository import get_item
from tembea.infra.repositories.outbox_repository import BOOKING_CANCELLED, emit_event
from tembea.infra.time import start_of_day, utc_now

logger = logging.getLogger(__name__)

CANCELLATION_LEAD_TIME = timedelta(hours=48)


class BookingNotFoundError(Exception):
    """Raised when the booking does not exist."""


class CancellationNotAllowed(Exception):
    """Raised when the booking cannot be cancelled (status or lead time)."""


def can_cancel(visit_date, *, now: datetime) -> bool:
    """True while the visit starts at least 48 hours from now."""
    if visit_date is None:
        return False
    return start_of_day(visit_date) - now >= CANCELLATION_LEAD_TIME


def cancel_booking(
    booking_id: str,
    *,
    now: datetime | None = None,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Cancel a confirmed, paid booking and give its capacity back.

    Facility holds are released by the status change alone (cancelled
    bookings no longer count in overlap checks); slot-based bookings also
    decrement item_date_slots.

    Returns:
        Dict with result:
        - {"status": "already_cancelled", "booking_id": str}
        - {"status": "cancelled", "booking_id": str, "slots_released": int}

    Raises:
        BookingNotFoundError: If the booking doesn't exist.
        CancellationNotAllowed: If the booking is not confirmed and paid, or
            its visit date is less than 48 hours away.
        StoreUnavailable: If the store could not be read or written.
    """
    now = now or utc_now()

    with store_guard("cancel_booking"), txn() as cur:
        booking = get_booking(cur, booking_id, lock=True)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        if booking["status"] == "cancelled":
            return {"status": "already_cancelled", "booking_id": booking_id}

        if booking["status"] != "confirmed" or booking["payment_status"] != "completed":
            raise CancellationNotAllowed(
                f"Booking {booking_id} is {booking['status']}/{booking['payment_status']}, "
                "only confirmed paid bookings can be cancelled"
            )

        if not can_cancel(booking["visit_date"], now=now):
            raise CancellationNotAllowed(
                "Bookings can only be cancelled at least 48 hours before the visit date"
            )

        # Same lock order as every capacity writer: item row before slots.
        item = get_item(cur, booking["item_id"], lock=True)

        mark_booking_cancelled(cur, booking_id)

        slots_released = 0
        if item is not None and item.capacity_mode == SLOT_BASED and booking["slots_booked"]:
            release_slots(
                cur,
                item_id=booking["item_id"],
                visit_date=booking["visit_date"],
                slots=booking["slots_booked"],
            )
            slots_released = booking["slots_booked"]

        emit_event(
            cur,
            item_id=booking["item_id"],
            event_type=BOOKING_CANCELLED,
            aggregate_type="booking",
            aggregate_id=booking_id,
            payload={
                "visit_date": booking["visit_date"].isoformat(),
                "total_cents": booking["total_cents"],
                "guest_email": booking["guest_email"],
                "reason": reason,
            },
            correlation_id=correlation_id,
        )

    get_availability_cache().invalidate(booking["item_id"], booking["visit_date"])
    logger.info(
        "booking cancelled",
        extra={"extra_fields": {"booking_id": booking_id, "slots_released": slots_released}},
    )
    return {"status": "cancelled", "booking_id": booking_id, "slots_released": slots_released}
