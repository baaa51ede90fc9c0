"""Booking engine value types.

Bookable items come in two capacity modes:
- slot-based (trips, events): a fixed number of participant slots per date.
- facility-based (hotels, adventure places): named facilities rented per day
  over an inclusive date range.

Booking detail payloads are stored as JSONB. They are a tagged union
(SlotDetail | FacilityDetail) serialized with an explicit "kind" tag; payloads
written by older clients (untagged, camelCase keys) are still parsed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Union

SLOT_BASED = "slot"
FACILITY_BASED = "facility"

SLOT_ITEM_TYPES = ("trip", "event")
FACILITY_ITEM_TYPES = ("hotel", "adventure_place")
ITEM_TYPES = SLOT_ITEM_TYPES + FACILITY_ITEM_TYPES

ENTRANCE_FREE = "free"

SOURCE_BOOKING = "booking"
SOURCE_MANUAL_ENTRY = "manual_entry"


@dataclass(frozen=True)
class Facility:
    name: str
    price_cents: int
    capacity: int | None = None

    @property
    def units(self) -> int:
        """Concurrent holders allowed per day (one rental unit by default)."""
        return self.capacity if self.capacity and self.capacity > 0 else 1


@dataclass(frozen=True)
class Activity:
    name: str
    price_cents: int


@dataclass(frozen=True)
class BookableItem:
    """A listing that can be booked. Read-only to the booking engine."""

    id: str
    item_type: str
    name: str
    total_capacity: int = 0
    facilities: tuple[Facility, ...] = ()
    activities: tuple[Activity, ...] = ()
    entrance_type: str = "paid"
    adult_price_cents: int = 0
    child_price_cents: int = 0
    fixed_date: date | None = None
    is_flexible_date: bool = True
    booking_horizon_days: int = 30
    host_id: str | None = None
    approval_status: str = "approved"
    currency: str = "KES"

    @property
    def capacity_mode(self) -> str:
        if self.item_type in FACILITY_ITEM_TYPES:
            return FACILITY_BASED
        return SLOT_BASED

    @property
    def has_fixed_date(self) -> bool:
        return self.fixed_date is not None and not self.is_flexible_date

    def facility(self, name: str) -> Facility | None:
        for facility in self.facilities:
            if facility.name == name:
                return facility
        return None

    def activity(self, name: str) -> Activity | None:
        for activity in self.activities:
            if activity.name == name:
                return activity
        return None


@dataclass(frozen=True)
class GuestInfo:
    name: str = ""
    email: str = ""
    phone: str = ""


@dataclass(frozen=True)
class FacilitySelection:
    """A facility rented over an inclusive date range."""

    name: str
    start_date: date
    end_date: date
    price_cents: int = 0


@dataclass(frozen=True)
class ActivitySelection:
    name: str
    participants: int
    price_cents: int = 0


@dataclass(frozen=True)
class SlotDetail:
    adults: int = 0
    children: int = 0
    activities: tuple[ActivitySelection, ...] = ()

    kind = SLOT_BASED


@dataclass(frozen=True)
class FacilityDetail:
    facilities: tuple[FacilitySelection, ...] = ()
    activities: tuple[ActivitySelection, ...] = ()
    adults: int = 0
    children: int = 0

    kind = FACILITY_BASED


BookingDetail = Union[SlotDetail, FacilityDetail]


@dataclass(frozen=True)
class ReservationRequest:
    """A booking attempt as submitted by a payer. Never persisted as such."""

    item_id: str
    visit_date: date | None = None
    adults: int = 0
    children: int = 0
    facilities: tuple[FacilitySelection, ...] = ()
    activities: tuple[ActivitySelection, ...] = ()
    user_id: str | None = None
    guest: GuestInfo = field(default_factory=GuestInfo)
    payment_method: str = "mpesa"
    payment_phone: str | None = None
    referral_tracking_id: str | None = None

    @property
    def participants(self) -> int:
        return self.adults + self.children


@dataclass(frozen=True)
class ConflictDescription:
    """An existing reservation that overlaps a requested facility range."""

    facility_name: str
    start_date: date
    end_date: date
    source: str
    record_id: str | None = None

    @property
    def message(self) -> str:
        origin = "manual entry" if self.source == SOURCE_MANUAL_ENTRY else "online booking"
        return (
            f"{self.facility_name} is already booked from "
            f"{self.start_date:%b} {self.start_date.day} to "
            f"{self.end_date:%b} {self.end_date.day}, {self.end_date.year} ({origin})"
        )


# ── Serialization ──────────────────────────────────────────────────────


def _activity_to_json(a: ActivitySelection) -> dict[str, Any]:
    return {"name": a.name, "price_cents": a.price_cents, "participants": a.participants}


def _facility_to_json(f: FacilitySelection) -> dict[str, Any]:
    return {
        "name": f.name,
        "price_cents": f.price_cents,
        "start_date": f.start_date.isoformat(),
        "end_date": f.end_date.isoformat(),
    }


def detail_to_json(detail: BookingDetail) -> dict[str, Any]:
    """Serialize a booking detail with its kind tag."""
    payload: dict[str, Any] = {
        "kind": detail.kind,
        "adults": detail.adults,
        "children": detail.children,
        "activities": [_activity_to_json(a) for a in detail.activities],
    }
    if isinstance(detail, FacilityDetail):
        payload["facilities"] = [_facility_to_json(f) for f in detail.facilities]
    return payload


def _as_date(value: Any, fallback: date | None) -> date | None:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        # Older clients stored full ISO timestamps.
        return date.fromisoformat(value[:10])
    return fallback


def _parse_activities(raw: list[dict[str, Any]]) -> tuple[ActivitySelection, ...]:
    return tuple(
        ActivitySelection(
            name=str(a.get("name", "")),
            participants=int(a.get("participants", a.get("numberOfPeople", 0)) or 0),
            price_cents=int(a.get("price_cents", 0) or 0),
        )
        for a in raw
    )


def parse_booking_detail(
    payload: dict[str, Any] | None,
    visit_date: date | None = None,
) -> BookingDetail:
    """Parse a stored booking detail payload.

    Facility entries without their own dates fall back to the record's
    visit date (single-day reservation). Entries that end up with no date
    at all are dropped since they cannot hold any day.

    Raises:
        ValueError: If the kind tag is unknown.
    """
    payload = payload or {}
    kind = payload.get("kind")
    activities = _parse_activities(
        payload.get("activities") or payload.get("selectedActivities") or []
    )
    adults = int(payload.get("adults", 0) or 0)
    children = int(payload.get("children", 0) or 0)

    raw_facilities = (
        payload.get("facilities") or payload.get("selectedFacilities") or []
    )
    if kind == SLOT_BASED or (kind is None and not raw_facilities):
        return SlotDetail(adults=adults, children=children, activities=activities)
    if kind not in (None, FACILITY_BASED):
        raise ValueError(f"Unknown booking detail kind: {kind}")

    facilities = []
    for f in raw_facilities:
        start = _as_date(f.get("start_date", f.get("startDate")), visit_date)
        end = _as_date(f.get("end_date", f.get("endDate")), start)
        if start is None or end is None:
            continue
        facilities.append(
            FacilitySelection(
                name=str(f.get("name", "")),
                start_date=start,
                end_date=end,
                price_cents=int(f.get("price_cents", 0) or 0),
            )
        )
    return FacilityDetail(
        facilities=tuple(facilities),
        activities=activities,
        adults=adults,
        children=children,
    )


def detail_for_request(request: ReservationRequest, item: BookableItem) -> BookingDetail:
    """Build the detail payload matching the item's capacity mode."""
    if item.capacity_mode == FACILITY_BASED:
        return FacilityDetail(
            facilities=request.facilities,
            activities=request.activities,
            adults=request.adults,
            children=request.children,
        )
    return SlotDetail(
        adults=request.adults,
        children=request.children,
        activities=request.activities,
    )
