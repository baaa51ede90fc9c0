"""Advisory availability for a bookable item on a date.

Numbers here may be a few seconds stale (cached); a booking is always
re-checked under lock when it is written.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Path, Query

from tembea.domain.capacity import advisory_remaining, facility_booked_units, store_guard
from tembea.domain.errors import ItemNotFound
from tembea.domain.models import FACILITY_BASED
from tembea.infra.db import txn
from tembea.infra.repositories.items_repository import get_item

router = APIRouter(prefix="/items", tags=["items"])


@router.get("/{item_id}/availability")
def get_availability(
    item_id: str = Path(..., description="Bookable item UUID"),
    day: date = Query(..., alias="date", description="Visit date (YYYY-MM-DD)"),
) -> dict:
    with store_guard("availability"), txn() as cur:
        item = get_item(cur, item_id)
        if item is None:
            raise ItemNotFound(item_id)

        if item.capacity_mode == FACILITY_BASED:
            facilities = []
            for facility in item.facilities:
                used = facility_booked_units(
                    cur, item, facility_name=facility.name, start=day, end=day
                )[day]
                facilities.append(
                    {
                        "name": facility.name,
                        "units": facility.units,
                        "booked": used,
                        "available": used < facility.units,
                    }
                )
            return {
                "item_id": item_id,
                "date": day.isoformat(),
                "capacity_mode": item.capacity_mode,
                "facilities": facilities,
            }

    remaining = max(advisory_remaining(item, day), 0)
    return {
        "item_id": item_id,
        "date": day.isoformat(),
        "capacity_mode": item.capacity_mode,
        "total_capacity": item.total_capacity,
        "remaining": remaining,
        "available": remaining > 0,
    }
