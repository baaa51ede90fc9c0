"""Request bodies and response shapes shared by several routes."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from tembea.domain.models import ActivitySelection, FacilitySelection
from tembea.domain.reservations import Booking


class FacilityIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    start_date: date
    end_date: date

    def to_selection(self) -> FacilitySelection:
        return FacilitySelection(name=self.name, start_date=self.start_date, end_date=self.end_date)


class ActivityIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    participants: int = Field(ge=1, le=100)

    def to_selection(self) -> ActivitySelection:
        return ActivitySelection(name=self.name, participants=self.participants)


def booking_to_dict(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "item_id": booking.item_id,
        "status": "confirmed",
        "payment_status": booking.payment_status,
        "visit_date": booking.visit_date.isoformat() if booking.visit_date else None,
        "total_cents": booking.total_cents,
        "currency": booking.currency,
        "payment_id": booking.payment_id,
    }
