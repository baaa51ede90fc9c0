"""Reservation outcomes surfaced to callers.

Every rejection is a per-request outcome, never fatal to the process. Each
error carries a stable ``code`` for API clients and a ``retryable`` flag: only
payment declines and payment timeouts may be offered a "retry payment" action.
"""

from __future__ import annotations

from datetime import date

from tembea.domain.models import ConflictDescription
from tembea.mpesa.result_codes import DeclineReason


class ReservationError(Exception):
    """Base class for all booking rejections."""

    code = "reservation_error"
    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(ReservationError):
    """Request shape is invalid (missing guest fields, zero quantity, ...)."""

    code = "validation_error"


class DateOutOfPolicy(ReservationError):
    """Requested date is in the past or outside the item's booking window."""

    code = "date_out_of_policy"


class InsufficientCapacity(ReservationError):
    code = "insufficient_capacity"

    def __init__(
        self,
        *,
        item_id: str,
        visit_date: date,
        requested: int,
        remaining: int,
    ) -> None:
        self.item_id = item_id
        self.visit_date = visit_date
        self.requested = requested
        self.remaining = max(remaining, 0)
        if self.remaining == 0:
            message = f"{visit_date.isoformat()} is fully booked"
        else:
            message = (
                f"Only {self.remaining} slots available on {visit_date.isoformat()} "
                f"({requested} requested)"
            )
        super().__init__(message)


class FacilityConflict(ReservationError):
    code = "facility_conflict"

    def __init__(self, conflict: ConflictDescription) -> None:
        self.conflict = conflict
        super().__init__(conflict.message)


class PaymentMethodUnsupported(ReservationError):
    code = "payment_method_unsupported"

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(f"Payment method '{method}' is not available")


class PaymentInitiationFailed(ReservationError):
    code = "payment_initiation_failed"


class PaymentDeclined(ReservationError):
    code = "payment_declined"
    retryable = True

    def __init__(
        self,
        reason: DeclineReason,
        *,
        result_code: str | None = None,
        payment_id: str | None = None,
    ) -> None:
        self.reason = reason
        self.result_code = result_code
        self.payment_id = payment_id
        super().__init__(f"Payment declined: {reason.label}")


class PaymentTimeout(ReservationError):
    code = "payment_timeout"
    retryable = True

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__("Payment was not confirmed in time")


class StoreUnavailable(ReservationError):
    """Capacity data could not be read; bookings never proceed on it."""

    code = "store_unavailable"

    def __init__(self, message: str = "Availability could not be verified") -> None:
        super().__init__(message)


class ItemNotFound(ReservationError):
    code = "item_not_found"

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class PaidBookingRejected(ReservationError):
    """The payer was charged but the booking no longer fits.

    Raised when the re-check after a successful payment finds the capacity
    taken by a concurrent booking. The host is notified to refund.
    """

    code = "paid_booking_rejected"

    def __init__(self, payment_id: str, message: str) -> None:
        self.payment_id = payment_id
        super().__init__(message)
