"""Facility overlap detection.

Centralised logic to check whether a facility of a bookable item is already
held for any day of a proposed date range.

Overlap formula:  (new_start <= existing_end) AND (existing_start <= new_end)
Ranges are inclusive on both ends: a stay ending on the 5th conflicts with
one starting on the 5th.

Holders are confirmed bookings and confirmed manual entries. A record's detail
payload may select several facilities; every selection is checked on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Iterator

from psycopg2.extensions import cursor as PgCursor

from tembea.domain.errors import FacilityConflict, ValidationError
from tembea.domain.models import (
    SOURCE_BOOKING,
    SOURCE_MANUAL_ENTRY,
    ConflictDescription,
    FacilityDetail,
    parse_booking_detail,
)
from tembea.infra.repositories.bookings_repository import list_active_booking_details
from tembea.infra.repositories.manual_entries_repository import list_active_entry_details

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FacilityHold:
    """One facility selection of an existing booking or manual entry."""

    facility_name: str
    start_date: date
    end_date: date
    source: str
    record_id: str

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def describe(self) -> ConflictDescription:
        return ConflictDescription(
            facility_name=self.facility_name,
            start_date=self.start_date,
            end_date=self.end_date,
            source=self.source,
            record_id=self.record_id,
        )


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return start_a <= end_b and start_b <= end_a


def validate_range(start: date, end: date) -> None:
    if end < start:
        raise ValidationError(
            f"End date {end.isoformat()} is before start date {start.isoformat()}"
        )


def iter_facility_holds(
    records: Iterable[tuple[str, date | None, dict]],
    source: str,
) -> Iterator[FacilityHold]:
    """Expand (record_id, visit_date, detail payload) rows into facility holds."""
    for record_id, visit_date, payload in records:
        detail = parse_booking_detail(payload, visit_date)
        if not isinstance(detail, FacilityDetail):
            continue
        for selection in detail.facilities:
            yield FacilityHold(
                facility_name=selection.name,
                start_date=selection.start_date,
                end_date=selection.end_date,
                source=source,
                record_id=record_id,
            )


def load_facility_holds(cur: PgCursor, *, item_id: str) -> list[FacilityHold]:
    """Load every facility hold of an item from bookings and manual entries."""
    holds = list(
        iter_facility_holds(list_active_booking_details(cur, item_id=item_id), SOURCE_BOOKING)
    )
    holds.extend(
        iter_facility_holds(
            list_active_entry_details(cur, item_id=item_id), SOURCE_MANUAL_ENTRY
        )
    )
    return holds


def overlapping_holds(
    holds: Iterable[FacilityHold],
    *,
    facility_name: str,
    start: date,
    end: date,
) -> list[FacilityHold]:
    return [
        h
        for h in holds
        if h.facility_name == facility_name
        and ranges_overlap(start, end, h.start_date, h.end_date)
    ]


def find_conflict(
    holds: Iterable[FacilityHold],
    *,
    facility_name: str,
    start: date,
    end: date,
) -> ConflictDescription | None:
    """Return the earliest-starting hold overlapping the range, if any.

    Raises:
        ValidationError: If end is before start.
    """
    validate_range(start, end)
    overlaps = overlapping_holds(holds, facility_name=facility_name, start=start, end=end)
    if not overlaps:
        return None
    return min(overlaps, key=lambda h: h.start_date).describe()


def find_facility_conflict(
    cur: PgCursor,
    *,
    item_id: str,
    facility_name: str,
    start: date,
    end: date,
) -> ConflictDescription | None:
    """Check whether a facility is held on any day of [start, end].

    Args:
        cur: Database cursor. For the authoritative check the caller must
            already hold the item row lock.
        item_id: Bookable item identifier.
        facility_name: Facility name (unique per item).
        start: First day (inclusive).
        end: Last day (inclusive).

    Returns:
        ConflictDescription of the first conflicting hold, or None.
    """
    validate_range(start, end)
    conflict = find_conflict(
        load_facility_holds(cur, item_id=item_id),
        facility_name=facility_name,
        start=start,
        end=end,
    )
    if conflict is not None:
        # Only identifiers and dates are logged, never guest data.
        logger.warning(
            "facility conflict detected",
            extra={
                "extra_fields": {
                    "item_id": item_id,
                    "facility": facility_name,
                    "requested_start": start.isoformat(),
                    "requested_end": end.isoformat(),
                    "conflict_source": conflict.source,
                    "conflicting_record_id": conflict.record_id,
                    "existing_start": conflict.start_date.isoformat(),
                    "existing_end": conflict.end_date.isoformat(),
                },
            },
        )
    return conflict


def assert_no_facility_conflict(
    cur: PgCursor,
    *,
    item_id: str,
    facility_name: str,
    start: date,
    end: date,
) -> None:
    """Raise FacilityConflict if the facility is held during the range."""
    conflict = find_facility_conflict(
        cur,
        item_id=item_id,
        facility_name=facility_name,
        start=start,
        end=end,
    )
    if conflict is not None:
        raise FacilityConflict(conflict)
