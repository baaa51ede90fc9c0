"""Manual entries - bookings a host records for offline sales.

A manual entry bypasses payment but never validation: it competes for the
same capacity pool as online bookings, under the same item row lock and the
same conditional slot write. Past dates are allowed (hosts record walk-ins
after the fact); reversed ranges and conflicts are not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

from tembea.domain.capacity import (
    assert_request_capacity,
    get_availability_cache,
    reserve_slots,
    store_guard,
)
from tembea.domain.errors import ItemNotFound, ValidationError
from tembea.domain.models import (
    SLOT_BASED,
    ActivitySelection,
    FacilitySelection,
    ReservationRequest,
    detail_for_request,
    detail_to_json,
)
from tembea.domain.overlap import validate_range
from tembea.domain.pricing import apply_catalog_prices, compute_total
from tembea.infra.db import is_uuid, txn
from tembea.infra.repositories.items_repository import get_item
from tembea.infra.repositories.manual_entries_repository import insert_manual_entry
from tembea.infra.repositories.outbox_repository import MANUAL_ENTRY_CREATED, emit_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManualEntryRequest:
    item_id: str
    guest_name: str
    guest_contact: str
    visit_date: date | None = None
    adults: int = 0
    children: int = 0
    facilities: tuple[FacilitySelection, ...] = ()
    activities: tuple[ActivitySelection, ...] = ()
    host_id: str | None = None
    # Amount collected offline; priced from the catalog when omitted.
    total_cents: int | None = None

    def as_reservation(self) -> ReservationRequest:
        visit_date = self.visit_date
        if visit_date is None and self.facilities:
            visit_date = min(f.start_date for f in self.facilities)
        return ReservationRequest(
            item_id=self.item_id,
            visit_date=visit_date,
            adults=self.adults,
            children=self.children,
            facilities=self.facilities,
            activities=self.activities,
        )


def _validate(entry: ManualEntryRequest) -> None:
    if not entry.guest_name.strip():
        raise ValidationError("Guest name is required")
    if not entry.guest_contact.strip():
        raise ValidationError("Guest contact is required")
    if entry.adults < 0 or entry.children < 0:
        raise ValidationError("Participant counts cannot be negative")
    if entry.adults + entry.children == 0 and not entry.facilities:
        raise ValidationError("Select at least one participant or facility")
    names = [f.name for f in entry.facilities]
    if len(names) != len(set(names)):
        raise ValidationError("Each facility can be selected once per entry")
    for selection in entry.facilities:
        validate_range(selection.start_date, selection.end_date)
    if entry.host_id is not None and not is_uuid(entry.host_id):
        raise ValidationError("Invalid host id")
    if entry.total_cents is not None and entry.total_cents < 0:
        raise ValidationError("Amount cannot be negative")


def create_manual_entry(
    entry: ManualEntryRequest,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Record a host's offline booking against the item's capacity.

    Returns:
        Dict with manual_entry_id, item_id, visit_date and total_cents.

    Raises:
        ItemNotFound: If the item does not exist.
        ValidationError: Missing guest data, zero quantity, unknown or
            repeated facility, reversed range.
        InsufficientCapacity / FacilityConflict: If the entry does not fit.
        StoreUnavailable: If the store could not be read or written.
    """
    _validate(entry)
    request = entry.as_reservation()

    with store_guard("create_manual_entry"), txn() as cur:
        item = get_item(cur, entry.item_id, lock=True)
        if item is None:
            raise ItemNotFound(entry.item_id)
        if item.capacity_mode == SLOT_BASED:
            if request.visit_date is None:
                raise ValidationError("A visit date is required")
            if request.facilities:
                raise ValidationError("This item has no facilities to rent")

        request = apply_catalog_prices(item, request)
        total_cents = entry.total_cents if entry.total_cents is not None else compute_total(item, request)

        assert_request_capacity(cur, item, request)
        if item.capacity_mode == SLOT_BASED:
            reserve_slots(cur, item, request.visit_date, request.participants)

        entry_id = insert_manual_entry(
            cur,
            item_id=item.id,
            host_id=entry.host_id or item.host_id,
            guest_name=entry.guest_name,
            guest_contact=entry.guest_contact,
            slots_booked=request.participants,
            visit_date=request.visit_date,
            entry_details=detail_to_json(detail_for_request(request, item)),
            total_cents=total_cents,
        )
        emit_event(
            cur,
            item_id=item.id,
            event_type=MANUAL_ENTRY_CREATED,
            aggregate_type="manual_entry",
            aggregate_id=entry_id,
            payload={
                "visit_date": request.visit_date.isoformat() if request.visit_date else None,
                "slots_booked": request.participants,
                "total_cents": total_cents,
            },
            correlation_id=correlation_id,
        )

    get_availability_cache().invalidate(entry.item_id, request.visit_date)
    logger.info(
        "manual entry created",
        extra={"extra_fields": {"manual_entry_id": entry_id, "item_id": entry.item_id}},
    )
    return {
        "manual_entry_id": entry_id,
        "item_id": entry.item_id,
        "visit_date": request.visit_date,
        "total_cents": total_cents,
    }
