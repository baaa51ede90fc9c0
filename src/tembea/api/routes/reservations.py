"""Reservation submission endpoint.

POST /reservations
- 201 with the booking when nothing is owed (free path), or when wait=true
  and the payer approved the charge within the polling window.
- 202 with the pending payment otherwise; the reconciliation loop keeps
  running in the background and the client follows up with
  POST /payments/{payment_id}/await.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Cookie, Depends, Query, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from tembea.api.runtime import get_gateway, get_reconciler
from tembea.api.schemas import ActivityIn, FacilityIn, booking_to_dict
from tembea.domain.models import GuestInfo, ReservationRequest
from tembea.domain.payments import PaymentGateway
from tembea.domain.reconciliation import PaymentReconciler
from tembea.domain.reservations import Booking, submit_reservation
from tembea.observability.correlation import get_correlation_id
from tembea.observability.logging import get_logger
from tembea.observability.redaction import safe_log_context

REFERRAL_COOKIE = "referral_tracking_id"

router = APIRouter(prefix="/reservations", tags=["reservations"])

logger = get_logger(__name__)


class GuestIn(BaseModel):
    name: str = Field(default="", max_length=100)
    email: str = Field(default="", max_length=255)
    phone: str = Field(default="", max_length=20)


class ReservationIn(BaseModel):
    item_id: str
    visit_date: date | None = None
    adults: int = Field(default=0, ge=0, le=100)
    children: int = Field(default=0, ge=0, le=100)
    facilities: list[FacilityIn] = Field(default_factory=list)
    activities: list[ActivityIn] = Field(default_factory=list)
    user_id: str | None = None
    guest: GuestIn = Field(default_factory=GuestIn)
    payment_method: str = "mpesa"
    payment_phone: str | None = None
    referral_tracking_id: str | None = None

    def to_request(self, referral_cookie: str | None) -> ReservationRequest:
        return ReservationRequest(
            item_id=self.item_id,
            visit_date=self.visit_date,
            adults=self.adults,
            children=self.children,
            facilities=tuple(f.to_selection() for f in self.facilities),
            activities=tuple(a.to_selection() for a in self.activities),
            user_id=self.user_id,
            guest=GuestInfo(name=self.guest.name, email=self.guest.email, phone=self.guest.phone),
            payment_method=self.payment_method,
            payment_phone=self.payment_phone,
            referral_tracking_id=self.referral_tracking_id or referral_cookie,
        )


@router.post("", status_code=201)
async def create_reservation(
    body: ReservationIn,
    response: Response,
    wait: bool = Query(False, description="Block until the payment outcome is known"),
    referral_tracking_id: str | None = Cookie(None),
    gateway: PaymentGateway | None = Depends(get_gateway),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> dict:
    correlation_id = get_correlation_id()
    request = body.to_request(referral_tracking_id)

    result = await run_in_threadpool(
        submit_reservation,
        request,
        gateway=gateway,
        correlation_id=correlation_id,
    )

    if request.referral_tracking_id:
        response.delete_cookie(REFERRAL_COOKIE)

    if isinstance(result, Booking):
        logger.info(
            "reservation confirmed",
            extra={"extra_fields": safe_log_context(booking_id=result.id, item_id=result.item_id)},
        )
        return {"status": "confirmed", "booking": booking_to_dict(result)}

    logger.info(
        "reservation awaiting payment",
        extra={"extra_fields": safe_log_context(payment_id=result.payment_id, item_id=request.item_id)},
    )

    if wait:
        outcome = await reconciler.run(result.payment_id, correlation_id=correlation_id)
        booking = outcome.booking_or_raise()
        return {"status": "confirmed", "booking": booking_to_dict(booking)}

    reconciler.start(result.payment_id, correlation_id=correlation_id)
    response.status_code = 202
    return {
        "status": "pending_payment",
        "payment_id": result.payment_id,
        "checkout_request_id": result.checkout_request_id,
        "amount": result.amount,
        "total_cents": result.total_cents,
        "currency": result.currency,
    }
