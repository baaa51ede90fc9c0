"""Reservation orchestration - from a submitted request to a booking.

Flow:
1. validate the request against the item's rules
2. advisory capacity check (early feedback, no lock)
3. price the request from the item's catalog
4. zero total: commit the booking at once
5. non-zero total: persist a pending M-Pesa payment carrying the booking
   payload and prompt the payer; the booking is materialized later by
   finalize_paid_reservation once the gateway reports success

Every commit runs the authoritative re-check inside the write transaction:
the bookable item row is locked FOR UPDATE (serializing writers of the same
item), capacity is re-read, and slot increments go through the conditional
upsert on item_date_slots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Any, Union

from psycopg2.extensions import cursor as PgCursor

from tembea.domain.capacity import (
    assert_request_capacity,
    get_availability_cache,
    reserve_slots,
    store_guard,
)
from tembea.domain.commissions import CommissionPolicy, award_commission
from tembea.domain.errors import (
    DateOutOfPolicy,
    FacilityConflict,
    InsufficientCapacity,
    ItemNotFound,
    PaidBookingRejected,
    PaymentInitiationFailed,
    PaymentMethodUnsupported,
    ValidationError,
)
from tembea.domain.models import (
    SLOT_BASED,
    BookableItem,
    FacilityDetail,
    GuestInfo,
    ReservationRequest,
    detail_for_request,
    detail_to_json,
    parse_booking_detail,
)
from tembea.domain.overlap import validate_range
from tembea.domain.payments import (
    PAYMENT_METHOD_MPESA,
    PaymentGateway,
    PaymentNotFoundError,
    initiate_payment,
)
from tembea.domain.pricing import apply_catalog_prices, compute_total
from tembea.infra.db import is_uuid, txn
from tembea.infra.repositories.bookings_repository import get_booking, insert_booking
from tembea.infra.repositories.items_repository import get_item
from tembea.infra.repositories.outbox_repository import (
    BOOKING_CONFIRMED,
    PAID_BOOKING_REJECTED,
    emit_event,
)
from tembea.infra.repositories.payments_repository import (
    get_payment,
    mark_payment_consumed,
    mark_payment_rejected,
)
from tembea.infra.time import local_today
from tembea.mpesa.client import normalize_phone

logger = logging.getLogger(__name__)

APPROVED = "approved"


class PaymentNotCompletedError(Exception):
    """The payment has not been confirmed by the gateway yet."""


class BookingConsistencyError(Exception):
    """A write that the locks should have made impossible did not apply."""


@dataclass(frozen=True)
class Booking:
    id: str
    item_id: str
    total_cents: int
    currency: str
    payment_status: str
    visit_date: date | None
    payment_id: str | None = None
    created: bool = True
    commission_id: str | None = None


@dataclass(frozen=True)
class PendingPayment:
    payment_id: str
    checkout_request_id: str
    amount: int
    total_cents: int
    currency: str


SubmitResult = Union[Booking, PendingPayment]


# ── Validation ─────────────────────────────────────────────────────────


def _validate_shape(request: ReservationRequest, item: BookableItem) -> None:
    if item.approval_status != APPROVED:
        raise ValidationError("Item is not available for booking")

    if request.user_id is not None and not is_uuid(request.user_id):
        raise ValidationError("Invalid user id")
    if request.user_id is None:
        guest = request.guest
        if not (guest.name.strip() and guest.email.strip() and guest.phone.strip()):
            raise ValidationError("Guest name, email and phone are required")

    if request.adults < 0 or request.children < 0:
        raise ValidationError("Participant counts cannot be negative")
    if request.participants == 0 and not request.facilities:
        raise ValidationError("Select at least one participant or facility")

    names = [f.name for f in request.facilities]
    if len(names) != len(set(names)):
        raise ValidationError("Each facility can be selected once per booking")
    for selection in request.facilities:
        validate_range(selection.start_date, selection.end_date)
    for activity in request.activities:
        if activity.participants <= 0:
            raise ValidationError(f"Activity {activity.name} needs at least one participant")

    if item.capacity_mode == SLOT_BASED:
        if request.visit_date is None:
            raise ValidationError("A visit date is required")
        if request.facilities:
            raise ValidationError("This item has no facilities to rent")
    elif not request.facilities and request.visit_date is None:
        raise ValidationError("A visit date is required")


def _validate_dates(request: ReservationRequest, item: BookableItem, today: date) -> None:
    days = [request.visit_date] if request.visit_date is not None else []
    days.extend(f.start_date for f in request.facilities)

    for day in days:
        if day < today:
            raise DateOutOfPolicy(f"{day.isoformat()} is in the past")

    if item.has_fixed_date:
        if request.visit_date != item.fixed_date:
            raise DateOutOfPolicy(
                f"This item is only available on {item.fixed_date.isoformat()}"
            )
        return

    # A facility stay must end inside the horizon too.
    days.extend(f.end_date for f in request.facilities)
    last_bookable = today + timedelta(days=item.booking_horizon_days)
    for day in days:
        if day > last_bookable:
            raise DateOutOfPolicy(
                f"Bookings open at most {item.booking_horizon_days} days ahead"
            )


def validate_request(
    request: ReservationRequest,
    item: BookableItem,
    *,
    today: date | None = None,
) -> None:
    """Check a request against the item's booking rules.

    Raises:
        ValidationError: Missing guest data, zero quantity, unknown or
            repeated facility, reversed date range, item not approved.
        DateOutOfPolicy: Past date, date beyond the booking horizon, or a
            fixed-date item booked on another date.
    """
    _validate_shape(request, item)
    _validate_dates(request, item, today or local_today())


def _with_referral(request: ReservationRequest) -> ReservationRequest:
    """Drop a referral id that cannot name a tracking row (stale or tampered cookie)."""
    if request.referral_tracking_id is None or is_uuid(request.referral_tracking_id):
        return request
    logger.warning(
        "malformed referral tracking id ignored",
        extra={"extra_fields": {"item_id": request.item_id}},
    )
    return replace(request, referral_tracking_id=None)


def _with_visit_date(request: ReservationRequest) -> ReservationRequest:
    """Facility bookings without a visit date start on their first facility day."""
    if request.visit_date is not None or not request.facilities:
        return request
    return replace(request, visit_date=min(f.start_date for f in request.facilities))


# ── Booking payload ────────────────────────────────────────────────────


def booking_data_for(
    request: ReservationRequest,
    item: BookableItem,
    *,
    total_cents: int,
) -> dict[str, Any]:
    """Everything needed to materialize the booking after payment."""
    return {
        "item_id": item.id,
        "booking_type": item.item_type,
        "visit_date": request.visit_date.isoformat() if request.visit_date else None,
        "slots_booked": request.participants,
        "total_cents": total_cents,
        "currency": item.currency,
        "detail": detail_to_json(detail_for_request(request, item)),
        "user_id": request.user_id,
        "guest": {
            "name": request.guest.name,
            "email": request.guest.email,
            "phone": request.guest.phone,
        },
        "payment_method": request.payment_method,
        "payment_phone": request.payment_phone,
        "referral_tracking_id": request.referral_tracking_id,
    }


def request_from_booking_data(data: dict[str, Any]) -> ReservationRequest:
    visit_date = date.fromisoformat(data["visit_date"]) if data.get("visit_date") else None
    detail = parse_booking_detail(data.get("detail"), visit_date)
    guest = data.get("guest") or {}
    return ReservationRequest(
        item_id=data["item_id"],
        visit_date=visit_date,
        adults=detail.adults,
        children=detail.children,
        facilities=detail.facilities if isinstance(detail, FacilityDetail) else (),
        activities=detail.activities,
        user_id=data.get("user_id"),
        guest=GuestInfo(
            name=guest.get("name", ""),
            email=guest.get("email", ""),
            phone=guest.get("phone", ""),
        ),
        payment_method=data.get("payment_method") or PAYMENT_METHOD_MPESA,
        payment_phone=data.get("payment_phone"),
        referral_tracking_id=data.get("referral_tracking_id"),
    )


# ── Commit ─────────────────────────────────────────────────────────────


def _load_item(item_id: str) -> BookableItem:
    with store_guard("load_item"), txn() as cur:
        item = get_item(cur, item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


def first_pass_check(item: BookableItem, request: ReservationRequest) -> None:
    """Advisory capacity check before any payment is requested.

    Gives early feedback only; the commit re-checks under lock.
    """
    with store_guard("first_pass_check"), txn() as cur:
        assert_request_capacity(cur, item, request)


def _commit_booking(
    cur: PgCursor,
    item: BookableItem,
    request: ReservationRequest,
    *,
    total_cents: int,
    payment_status: str,
    payment_method: str | None,
    payment_id: str | None,
    correlation_id: str | None,
    commission_policy: CommissionPolicy | None,
) -> Booking:
    """Re-check capacity and write the booking. Caller holds the item row lock.

    Raises:
        InsufficientCapacity / FacilityConflict: If the request no longer fits.
            Nothing has been written when these are raised.
    """
    assert_request_capacity(cur, item, request)
    if item.capacity_mode == SLOT_BASED:
        reserve_slots(cur, item, request.visit_date, request.participants)

    detail = detail_for_request(request, item)
    booking_id, created = insert_booking(
        cur,
        item_id=item.id,
        booking_type=item.item_type,
        total_cents=total_cents,
        currency=item.currency,
        slots_booked=request.participants,
        visit_date=request.visit_date,
        booking_details=detail_to_json(detail),
        user_id=request.user_id,
        guest_name=request.guest.name,
        guest_email=request.guest.email,
        guest_phone=request.guest.phone or None,
        payment_status=payment_status,
        payment_method=payment_method,
        payment_phone=request.payment_phone,
        payment_id=payment_id,
        referral_tracking_id=request.referral_tracking_id,
    )
    if booking_id is None or not created:
        raise BookingConsistencyError(f"Booking for payment {payment_id} already exists")

    emit_event(
        cur,
        item_id=item.id,
        event_type=BOOKING_CONFIRMED,
        aggregate_type="booking",
        aggregate_id=booking_id,
        payload={
            "item_name": item.name,
            "visit_date": request.visit_date.isoformat() if request.visit_date else None,
            "total_cents": total_cents,
            "currency": item.currency,
            "guest_name": request.guest.name,
            "guest_email": request.guest.email,
            "payment_id": payment_id,
        },
        correlation_id=correlation_id,
    )

    commission_id = None
    if request.referral_tracking_id:
        award = award_commission(
            cur,
            booking_id=booking_id,
            amount_cents=total_cents,
            referral_tracking_id=request.referral_tracking_id,
            item_type=item.item_type,
            referred_user_id=request.user_id,
            policy=commission_policy,
        )
        commission_id = award.get("commission_id")

    return Booking(
        id=booking_id,
        item_id=item.id,
        total_cents=total_cents,
        currency=item.currency,
        payment_status=payment_status,
        visit_date=request.visit_date,
        payment_id=payment_id,
        commission_id=commission_id,
    )


def _invalidate_cache(item_id: str, visit_date: date | None) -> None:
    get_availability_cache().invalidate(item_id, visit_date)


def commit_free_reservation(
    request: ReservationRequest,
    *,
    correlation_id: str | None = None,
    commission_policy: CommissionPolicy | None = None,
) -> Booking:
    """Commit a zero-total reservation as completed/confirmed.

    Raises:
        InsufficientCapacity / FacilityConflict: If the re-check fails.
        StoreUnavailable: If the store could not be read or written.
    """
    with store_guard("commit_free_reservation"), txn() as cur:
        item = get_item(cur, request.item_id, lock=True)
        if item is None:
            raise ItemNotFound(request.item_id)
        booking = _commit_booking(
            cur,
            item,
            request,
            total_cents=0,
            payment_status="completed",
            payment_method=None,
            payment_id=None,
            correlation_id=correlation_id,
            commission_policy=commission_policy,
        )

    _invalidate_cache(booking.item_id, booking.visit_date)
    logger.info(
        "free booking confirmed",
        extra={"extra_fields": {"booking_id": booking.id, "item_id": booking.item_id}},
    )
    return booking


def submit_reservation(
    request: ReservationRequest,
    *,
    gateway: PaymentGateway | None = None,
    today: date | None = None,
    correlation_id: str | None = None,
    commission_policy: CommissionPolicy | None = None,
) -> SubmitResult:
    """Submit a reservation.

    Args:
        request: The booking attempt.
        gateway: M-Pesa gateway; required when the total is non-zero.
        today: Local date used for date policy (defaults to today).
        correlation_id: Optional correlation ID for tracing.
        commission_policy: Overrides the default service-fee policy.

    Returns:
        Booking (free path, already committed) or PendingPayment (paid path,
        to be driven by the reconciliation loop).

    Raises:
        ItemNotFound, ValidationError, DateOutOfPolicy, InsufficientCapacity,
        FacilityConflict, PaymentMethodUnsupported, PaymentInitiationFailed,
        StoreUnavailable.
    """
    item = _load_item(request.item_id)
    validate_request(request, item, today=today)

    request = _with_referral(_with_visit_date(apply_catalog_prices(item, request)))
    first_pass_check(item, request)

    total_cents = compute_total(item, request)
    if total_cents == 0:
        return commit_free_reservation(
            request,
            correlation_id=correlation_id,
            commission_policy=commission_policy,
        )

    if request.payment_method != PAYMENT_METHOD_MPESA:
        raise PaymentMethodUnsupported(request.payment_method)

    try:
        phone = normalize_phone(request.payment_phone or request.guest.phone)
    except ValueError as exc:
        raise ValidationError("A valid M-Pesa phone number is required") from exc
    request = replace(request, payment_phone=phone)

    if gateway is None:
        raise PaymentInitiationFailed("Payment gateway is not configured")

    initiated = initiate_payment(
        item_id=item.id,
        host_id=item.host_id,
        user_id=request.user_id,
        phone_number=phone,
        total_cents=total_cents,
        booking_data=booking_data_for(request, item, total_cents=total_cents),
        gateway=gateway,
        correlation_id=correlation_id,
    )
    return PendingPayment(
        payment_id=initiated["payment_id"],
        checkout_request_id=initiated["checkout_request_id"],
        amount=initiated["amount"],
        total_cents=total_cents,
        currency=item.currency,
    )


def _existing_booking(cur: PgCursor, booking_id: str) -> Booking:
    row = get_booking(cur, booking_id)
    if row is None:
        raise BookingConsistencyError(f"Payment points at missing booking {booking_id}")
    return Booking(
        id=row["id"],
        item_id=row["item_id"],
        total_cents=row["total_cents"],
        currency=row["currency"],
        payment_status=row["payment_status"],
        visit_date=row["visit_date"],
        payment_id=row["payment_id"],
        created=False,
    )


def finalize_paid_reservation(
    payment_id: str,
    *,
    correlation_id: str | None = None,
    commission_policy: CommissionPolicy | None = None,
) -> Booking:
    """Materialize the booking of a completed payment.

    Idempotent: the payment row is locked, and a payment already consumed
    returns its booking with created=False.

    If the re-check fails (capacity taken while the payer was authorizing),
    no booking is written; a PAID_BOOKING_REJECTED event is emitted once so
    the host can refund.

    Raises:
        PaymentNotFoundError: If the payment does not exist.
        PaymentNotCompletedError: If the gateway has not confirmed the charge.
        PaidBookingRejected: If the booking no longer fits.
        StoreUnavailable: If the store could not be read or written.
    """
    rejection: PaidBookingRejected | None = None
    cause: Exception | None = None

    with store_guard("finalize_paid_reservation"), txn() as cur:
        payment = get_payment(cur, payment_id, lock=True)
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        if payment["booking_id"] is not None:
            return _existing_booking(cur, payment["booking_id"])
        if payment["status"] != "completed":
            raise PaymentNotCompletedError(
                f"Payment {payment_id} is {payment['status']}, not completed"
            )
        if payment["rejection_reason"]:
            raise PaidBookingRejected(payment_id, payment["rejection_reason"])

        data = payment["booking_data"]
        request = request_from_booking_data(data)
        item = get_item(cur, request.item_id, lock=True)
        if item is None:
            raise ItemNotFound(request.item_id)

        try:
            booking = _commit_booking(
                cur,
                item,
                request,
                total_cents=int(data["total_cents"]),
                payment_status="completed",
                payment_method=PAYMENT_METHOD_MPESA,
                payment_id=payment_id,
                correlation_id=correlation_id,
                commission_policy=commission_policy,
            )
        except (InsufficientCapacity, FacilityConflict) as exc:
            # Nothing was written by the failed commit; record the rejection.
            mark_payment_rejected(cur, payment_id=payment_id, reason=exc.message)
            emit_event(
                cur,
                item_id=item.id,
                event_type=PAID_BOOKING_REJECTED,
                aggregate_type="payment",
                aggregate_id=payment_id,
                payload={
                    "reason": exc.code,
                    "message": exc.message,
                    "amount": payment["amount"],
                    "guest_email": request.guest.email,
                },
                correlation_id=correlation_id,
            )
            rejection = PaidBookingRejected(payment_id, exc.message)
            cause = exc
        else:
            mark_payment_consumed(cur, payment_id=payment_id, booking_id=booking.id)

    if rejection is not None:
        logger.warning(
            "paid booking rejected on re-check",
            extra={
                "extra_fields": {
                    "payment_id": payment_id,
                    "item_id": item.id,
                    "reason": rejection.message,
                }
            },
        )
        raise rejection from cause

    _invalidate_cache(booking.item_id, booking.visit_date)
    logger.info(
        "paid booking confirmed",
        extra={
            "extra_fields": {
                "booking_id": booking.id,
                "payment_id": payment_id,
                "item_id": booking.item_id,
            }
        },
    )
    return booking
