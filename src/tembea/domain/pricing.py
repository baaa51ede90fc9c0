"""Reservation pricing.

total = entrance fees + facility rentals + activities, where
- entrance = adults * adult price + children * child price (zero for free entry),
- facility rental = price per day * billed days,
- activity = price per participant * participants.

Catalog prices from the bookable item are authoritative; prices carried by a
request are replaced before pricing.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date

from tembea.domain.errors import ValidationError
from tembea.domain.models import (
    ENTRANCE_FREE,
    ActivitySelection,
    BookableItem,
    FacilitySelection,
    ReservationRequest,
)


def billed_days(start: date, end: date) -> int:
    """Days billed for an inclusive range; a same-day rental bills one day.

    Raises:
        ValidationError: If end is before start.
    """
    if end < start:
        raise ValidationError(
            f"End date {end.isoformat()} is before start date {start.isoformat()}"
        )
    return max(1, (end - start).days)


def entrance_total(item: BookableItem, adults: int, children: int) -> int:
    if item.entrance_type == ENTRANCE_FREE:
        return 0
    return adults * item.adult_price_cents + children * item.child_price_cents


def facilities_total(facilities: tuple[FacilitySelection, ...]) -> int:
    return sum(f.price_cents * billed_days(f.start_date, f.end_date) for f in facilities)


def activities_total(activities: tuple[ActivitySelection, ...]) -> int:
    return sum(a.price_cents * a.participants for a in activities)


def apply_catalog_prices(item: BookableItem, request: ReservationRequest) -> ReservationRequest:
    """Return the request with facility/activity prices taken from the item.

    Raises:
        ValidationError: If a selection names a facility or activity the item
            does not offer.
    """
    facilities = []
    for selection in request.facilities:
        facility = item.facility(selection.name)
        if facility is None:
            raise ValidationError(f"Unknown facility: {selection.name}")
        facilities.append(replace(selection, price_cents=facility.price_cents))

    activities = []
    for selection in request.activities:
        activity = item.activity(selection.name)
        if activity is None:
            raise ValidationError(f"Unknown activity: {selection.name}")
        activities.append(replace(selection, price_cents=activity.price_cents))

    return replace(request, facilities=tuple(facilities), activities=tuple(activities))


def compute_total(item: BookableItem, request: ReservationRequest) -> int:
    """Total amount in cents for a request already carrying catalog prices."""
    return (
        entrance_total(item, request.adults, request.children)
        + facilities_total(request.facilities)
        + activities_total(request.activities)
    )
