"""Booking reschedule - move a confirmed booking to another visit date.

Runs inside a single DB transaction, in the same lock order as cancellation:
lock booking → validate → lock item → take slots on the new date → release
slots on the old date → update visit date → log → emit event.

The rules follow cancellation: only confirmed paid bookings, at least 48
hours before the current visit date. The new date must satisfy the item's
booking window. Fixed-date items and facility stays cannot be moved.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from tembea.domain.cancellation import CANCELLATION_LEAD_TIME, BookingNotFoundError
from tembea.domain.capacity import get_availability_cache, release_slots, reserve_slots, store_guard
from tembea.domain.errors import DateOutOfPolicy
from tembea.domain.models import SLOT_BASED
from tembea.infra.db import txn
from tembea.infra.repositories.bookings_repository import (
    get_booking,
    insert_reschedule_log,
    update_booking_visit_date,
)
from tembea.infra.repositories.items_repository import get_item
from tembea.infra.repositories.outbox_repository import BOOKING_RESCHEDULED, emit_event
from tembea.infra.time import local_tz, start_of_day, utc_now

logger = logging.getLogger(__name__)

RESCHEDULE_LEAD_TIME = CANCELLATION_LEAD_TIME


class RescheduleNotAllowed(Exception):
    """Raised when the booking cannot be moved (status, item kind or lead time)."""


def can_reschedule(visit_date: date | None, *, now: datetime) -> bool:
    """True while the current visit starts at least 48 hours from now."""
    if visit_date is None:
        return False
    return start_of_day(visit_date) - now >= RESCHEDULE_LEAD_TIME


def reschedule_booking(
    booking_id: str,
    new_visit_date: date,
    *,
    now: datetime | None = None,
    user_id: str | None = None,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Move a slot-based booking to a new visit date.

    Slots on the new date are taken with the same conditional write as a
    new booking, so a full date rejects the move and leaves the booking
    where it was.

    Returns:
        Dict with result:
        - {"status": "unchanged", "booking_id": str, "visit_date": str}
        - {"status": "rescheduled", "booking_id": str, "old_visit_date": str,
           "new_visit_date": str}

    Raises:
        BookingNotFoundError: If the booking doesn't exist.
        RescheduleNotAllowed: If the booking is not confirmed and paid, is a
            facility stay or fixed-date item, or is less than 48 hours away.
        DateOutOfPolicy: If the new date is in the past or beyond the
            item's booking horizon.
        InsufficientCapacity: If the new date has too few slots left.
        StoreUnavailable: If the store could not be read or written.
    """
    now = now or utc_now()
    today = now.astimezone(local_tz()).date()

    with store_guard("reschedule_booking"), txn() as cur:
        booking = get_booking(cur, booking_id, lock=True)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        if booking["status"] != "confirmed" or booking["payment_status"] != "completed":
            raise RescheduleNotAllowed(
                f"Booking {booking_id} is {booking['status']}/{booking['payment_status']}, "
                "only confirmed paid bookings can be rescheduled"
            )

        old_date = booking["visit_date"]
        if old_date == new_visit_date:
            return {
                "status": "unchanged",
                "booking_id": booking_id,
                "visit_date": old_date.isoformat(),
            }

        if not can_reschedule(old_date, now=now):
            raise RescheduleNotAllowed(
                "Bookings can only be rescheduled at least 48 hours before the visit date"
            )

        item = get_item(cur, booking["item_id"], lock=True)
        if item is None:
            raise BookingNotFoundError(f"Item of booking {booking_id} no longer exists")
        if item.has_fixed_date:
            raise RescheduleNotAllowed("This item has a fixed date and cannot be rescheduled")
        if item.capacity_mode != SLOT_BASED:
            raise RescheduleNotAllowed(
                "Facility stays cannot be rescheduled; cancel and book the new dates"
            )

        if new_visit_date < today:
            raise DateOutOfPolicy(f"{new_visit_date.isoformat()} is in the past")
        if new_visit_date > today + timedelta(days=item.booking_horizon_days):
            raise DateOutOfPolicy(
                f"Bookings open at most {item.booking_horizon_days} days ahead"
            )

        slots = booking["slots_booked"]
        if slots:
            reserve_slots(cur, item, new_visit_date, slots)
            release_slots(cur, item_id=item.id, visit_date=old_date, slots=slots)

        update_booking_visit_date(cur, booking_id, new_visit_date)
        insert_reschedule_log(
            cur,
            booking_id=booking_id,
            old_date=old_date,
            new_date=new_visit_date,
            user_id=user_id,
            reason=reason,
        )
        emit_event(
            cur,
            item_id=booking["item_id"],
            event_type=BOOKING_RESCHEDULED,
            aggregate_type="booking",
            aggregate_id=booking_id,
            payload={
                "old_visit_date": old_date.isoformat(),
                "new_visit_date": new_visit_date.isoformat(),
                "guest_email": booking["guest_email"],
                "reason": reason,
            },
            correlation_id=correlation_id,
        )

    cache = get_availability_cache()
    cache.invalidate(booking["item_id"], old_date)
    cache.invalidate(booking["item_id"], new_visit_date)
    logger.info(
        "booking rescheduled",
        extra={
            "extra_fields": {
                "booking_id": booking_id,
                "old_visit_date": old_date.isoformat(),
                "new_visit_date": new_visit_date.isoformat(),
                "slots": slots,
            }
        },
    )
    return {
        "status": "rescheduled",
        "booking_id": booking_id,
        "old_visit_date": old_date.isoformat(),
        "new_visit_date": new_visit_date.isoformat(),
    }
