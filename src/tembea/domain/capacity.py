"""Capacity ledger - how much of an item is already taken.

Slot-based items: booked slots per visit date come from item_date_slots,
which confirmed bookings and confirmed manual entries each increment once.
    remaining(item, date) = item.total_capacity - booked(item, date)

Facility-based items: a facility holds one rental unit per day unless it
declares a numeric capacity; a day is full once that many holds cover it.

Reads are pure. A store error is never read as "available": it is raised as
StoreUnavailable and the booking does not proceed.

AvailabilityCache is a short-lived read-through cache for advisory checks
(calendar hints, first-pass feedback). The authoritative re-check before a
write never consults it.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Callable, Iterable, Iterator

import psycopg2
from psycopg2.extensions import cursor as PgCursor

from tembea.domain.errors import FacilityConflict, InsufficientCapacity, StoreUnavailable
from tembea.domain.models import FACILITY_BASED, BookableItem, FacilitySelection, ReservationRequest
from tembea.domain.overlap import (
    FacilityHold,
    find_conflict,
    load_facility_holds,
    overlapping_holds,
    validate_range,
)
from tembea.infra.db import txn
from tembea.infra.repositories.slots_repository import (
    decrement_booked_slots,
    get_booked_slots,
    increment_booked_slots,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30.0


@contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Translate store failures into StoreUnavailable (fail closed)."""
    try:
        yield
    except psycopg2.Error as exc:
        logger.error(
            "capacity store unavailable",
            extra={
                "extra_fields": {
                    "operation": operation,
                    "error_type": type(exc).__name__,
                }
            },
        )
        raise StoreUnavailable() from exc


# ── Slot-based ─────────────────────────────────────────────────────────


def booked_units(cur: PgCursor, *, item_id: str, visit_date: date) -> int:
    return get_booked_slots(cur, item_id=item_id, visit_date=visit_date)


def remaining(cur: PgCursor, item: BookableItem, visit_date: date) -> int:
    return item.total_capacity - booked_units(cur, item_id=item.id, visit_date=visit_date)


def assert_slots_available(
    cur: PgCursor,
    item: BookableItem,
    visit_date: date,
    requested: int,
) -> int:
    """Raise InsufficientCapacity if requested > remaining.

    Returns:
        Slots remaining before this request.
    """
    left = remaining(cur, item, visit_date)
    if requested > left:
        raise InsufficientCapacity(
            item_id=item.id,
            visit_date=visit_date,
            requested=requested,
            remaining=left,
        )
    return left


def reserve_slots(cur: PgCursor, item: BookableItem, visit_date: date, slots: int) -> int:
    """Take slots with the conditional write; must run in the commit transaction.

    Returns:
        Booked slots on the date after the write.

    Raises:
        InsufficientCapacity: If the capacity guard rejected the write.
    """
    booked = increment_booked_slots(
        cur,
        item_id=item.id,
        visit_date=visit_date,
        slots=slots,
        capacity=item.total_capacity,
    )
    if booked is None:
        raise InsufficientCapacity(
            item_id=item.id,
            visit_date=visit_date,
            requested=slots,
            remaining=remaining(cur, item, visit_date),
        )
    return booked


def release_slots(cur: PgCursor, *, item_id: str, visit_date: date, slots: int) -> None:
    if not decrement_booked_slots(cur, item_id=item_id, visit_date=visit_date, slots=slots):
        logger.warning(
            "slot release found fewer booked slots than expected",
            extra={
                "extra_fields": {
                    "item_id": item_id,
                    "visit_date": visit_date.isoformat(),
                    "slots": slots,
                }
            },
        )


# ── Facility-based ─────────────────────────────────────────────────────


def facility_day_usage(
    holds: Iterable[FacilityHold],
    *,
    facility_name: str,
    start: date,
    end: date,
) -> dict[date, int]:
    """Number of holds covering each day of [start, end] for a facility."""
    validate_range(start, end)
    relevant = overlapping_holds(holds, facility_name=facility_name, start=start, end=end)
    usage: dict[date, int] = {}
    day = start
    while day <= end:
        usage[day] = sum(1 for h in relevant if h.covers(day))
        day += timedelta(days=1)
    return usage


def facility_booked_units(
    cur: PgCursor,
    item: BookableItem,
    *,
    facility_name: str,
    start: date,
    end: date,
) -> dict[date, int]:
    holds = load_facility_holds(cur, item_id=item.id)
    return facility_day_usage(holds, facility_name=facility_name, start=start, end=end)


def assert_facility_available(
    item: BookableItem,
    selection: FacilitySelection,
    holds: list[FacilityHold],
) -> None:
    """Raise FacilityConflict if any day of the selection is full.

    Raises:
        ValidationError: If the selection's end is before its start.
    """
    facility = item.facility(selection.name)
    units = facility.units if facility is not None else 1

    if units == 1:
        conflict = find_conflict(
            holds,
            facility_name=selection.name,
            start=selection.start_date,
            end=selection.end_date,
        )
        if conflict is not None:
            raise FacilityConflict(conflict)
        return

    usage = facility_day_usage(
        holds,
        facility_name=selection.name,
        start=selection.start_date,
        end=selection.end_date,
    )
    for day, used in usage.items():
        if used >= units:
            blocking = min(
                (h for h in holds if h.facility_name == selection.name and h.covers(day)),
                key=lambda h: h.start_date,
            )
            raise FacilityConflict(blocking.describe())


def assert_request_capacity(cur: PgCursor, item: BookableItem, request: ReservationRequest) -> None:
    """Check a whole request against current data.

    Used for the advisory first pass (no lock) and for the authoritative
    re-check (caller holds the item row lock in the commit transaction).
    """
    if item.capacity_mode == FACILITY_BASED:
        holds = load_facility_holds(cur, item_id=item.id)
        for selection in request.facilities:
            assert_facility_available(item, selection, holds)
        return

    assert_slots_available(cur, item, request.visit_date, request.participants)


# ── Advisory cache ─────────────────────────────────────────────────────


class AvailabilityCache:
    """TTL read-through cache of remaining slots per (item, date)."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = float(
                os.environ.get("AVAILABILITY_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS)
            )
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, date], tuple[float, int]] = {}
        self._lock = threading.Lock()

    def get_remaining(self, item_id: str, visit_date: date, loader: Callable[[], int]) -> int:
        key = (item_id, visit_date)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                return entry[1]

        value = loader()
        with self._lock:
            self._entries[key] = (now + self._ttl, value)
        return value

    def invalidate(self, item_id: str, visit_date: date | None = None) -> None:
        with self._lock:
            if visit_date is not None:
                self._entries.pop((item_id, visit_date), None)
                return
            for key in [k for k in self._entries if k[0] == item_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_availability_cache = AvailabilityCache()


def get_availability_cache() -> AvailabilityCache:
    """Get the process-wide cache (allows override in tests)."""
    return _availability_cache


def advisory_remaining(item: BookableItem, visit_date: date) -> int:
    """Remaining slots for display and early feedback; may be slightly stale."""

    def _load() -> int:
        with store_guard("advisory_remaining"), txn() as cur:
            return remaining(cur, item, visit_date)

    return get_availability_cache().get_remaining(item.id, visit_date, _load)
