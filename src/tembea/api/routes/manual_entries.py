"""Host manual entries - offline bookings recorded against an item."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Path
from pydantic import BaseModel, Field

from tembea.api.schemas import ActivityIn, FacilityIn
from tembea.domain.manual_entries import ManualEntryRequest, create_manual_entry
from tembea.observability.correlation import get_correlation_id


class ManualEntryIn(BaseModel):
    guest_name: str = Field(min_length=1, max_length=100)
    guest_contact: str = Field(min_length=1, max_length=255)
    visit_date: date | None = None
    adults: int = Field(default=0, ge=0, le=500)
    children: int = Field(default=0, ge=0, le=500)
    facilities: list[FacilityIn] = Field(default_factory=list)
    activities: list[ActivityIn] = Field(default_factory=list)
    host_id: str | None = None
    total_cents: int | None = Field(default=None, ge=0)


router = APIRouter(prefix="/items", tags=["manual-entries"])


@router.post("/{item_id}/manual-entries", status_code=201)
def post_manual_entry(
    body: ManualEntryIn,
    item_id: str = Path(..., description="Bookable item UUID"),
) -> dict:
    result = create_manual_entry(
        ManualEntryRequest(
            item_id=item_id,
            guest_name=body.guest_name,
            guest_contact=body.guest_contact,
            visit_date=body.visit_date,
            adults=body.adults,
            children=body.children,
            facilities=tuple(f.to_selection() for f in body.facilities),
            activities=tuple(a.to_selection() for a in body.activities),
            host_id=body.host_id,
            total_cents=body.total_cents,
        ),
        correlation_id=get_correlation_id(),
    )
    return {
        "id": result["manual_entry_id"],
        "item_id": result["item_id"],
        "status": "confirmed",
        "visit_date": result["visit_date"].isoformat() if result["visit_date"] else None,
        "total_cents": result["total_cents"],
    }
