"""Booking cancellation and reschedule endpoints."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Path
from pydantic import BaseModel, Field

from tembea.domain.cancellation import cancel_booking
from tembea.domain.reschedule import reschedule_booking
from tembea.observability.correlation import get_correlation_id
from tembea.observability.logging import get_logger
from tembea.observability.redaction import safe_log_context


class CancelBookingIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class RescheduleBookingIn(BaseModel):
    visit_date: date
    reason: str | None = Field(default=None, max_length=500)


router = APIRouter(prefix="/bookings", tags=["bookings"])

logger = get_logger(__name__)


@router.post("/{booking_id}/cancel")
def post_cancel_booking(
    body: CancelBookingIn | None = None,
    booking_id: str = Path(..., description="Booking UUID"),
) -> dict:
    result = cancel_booking(
        booking_id,
        reason=body.reason if body else None,
        correlation_id=get_correlation_id(),
    )
    logger.info(
        "booking cancel handled",
        extra={"extra_fields": safe_log_context(booking_id=booking_id, outcome=result["status"])},
    )
    return result


@router.post("/{booking_id}/reschedule")
def post_reschedule_booking(
    body: RescheduleBookingIn,
    booking_id: str = Path(..., description="Booking UUID"),
) -> dict:
    """Move a slot-based booking to another visit date."""
    result = reschedule_booking(
        booking_id,
        body.visit_date,
        reason=body.reason,
        correlation_id=get_correlation_id(),
    )
    logger.info(
        "booking reschedule handled",
        extra={"extra_fields": safe_log_context(booking_id=booking_id, outcome=result["status"])},
    )
    return result
