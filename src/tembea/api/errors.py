"""Translation of domain errors into HTTP responses.

Body shape for every booking rejection:
    {"error": <stable code>, "message": <human text>, "retryable": <bool>}
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tembea.domain.cancellation import BookingNotFoundError, CancellationNotAllowed
from tembea.domain.errors import ReservationError
from tembea.domain.payments import PaymentNotFoundError
from tembea.domain.reconciliation import ReconciliationInProgress
from tembea.domain.reschedule import RescheduleNotAllowed
from tembea.domain.reservations import PaymentNotCompletedError
from tembea.observability.logging import get_logger
from tembea.observability.redaction import safe_log_context

logger = get_logger(__name__)

STATUS_BY_CODE = {
    "validation_error": 422,
    "date_out_of_policy": 422,
    "payment_method_unsupported": 422,
    "item_not_found": 404,
    "insufficient_capacity": 409,
    "facility_conflict": 409,
    "paid_booking_rejected": 409,
    "payment_initiation_failed": 502,
    "payment_declined": 402,
    "payment_timeout": 504,
    "store_unavailable": 503,
}

# Non-booking errors raised by the same operations.
_OTHER_ERRORS: dict[type[Exception], tuple[int, str]] = {
    PaymentNotFoundError: (404, "payment_not_found"),
    BookingNotFoundError: (404, "booking_not_found"),
    PaymentNotCompletedError: (409, "payment_not_completed"),
    CancellationNotAllowed: (409, "cancellation_not_allowed"),
    RescheduleNotAllowed: (409, "reschedule_not_allowed"),
    ReconciliationInProgress: (409, "reconciliation_in_progress"),
}


def error_body(code: str, message: str, retryable: bool = False) -> dict:
    return {"error": code, "message": message, "retryable": retryable}


async def reservation_error_handler(request: Request, exc: ReservationError) -> JSONResponse:
    status = STATUS_BY_CODE.get(exc.code, 400)
    log = logger.warning if status < 500 else logger.error
    log(
        "request rejected",
        extra={
            "extra_fields": safe_log_context(
                path=request.url.path,
                error=exc.code,
                status=status,
            )
        },
    )
    return JSONResponse(
        status_code=status,
        content=error_body(exc.code, exc.message, exc.retryable),
    )


async def other_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status, code = _OTHER_ERRORS[type(exc)]
    return JSONResponse(status_code=status, content=error_body(code, str(exc)))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReservationError, reservation_error_handler)
    for exc_type in _OTHER_ERRORS:
        app.add_exception_handler(exc_type, other_error_handler)
