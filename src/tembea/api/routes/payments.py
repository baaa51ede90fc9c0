"""Payment follow-up endpoints for a pending M-Pesa reservation."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from fastapi.concurrency import run_in_threadpool

from tembea.api.runtime import get_reconciler
from tembea.api.schemas import booking_to_dict
from tembea.domain.payments import read_payment_state
from tembea.domain.reconciliation import PaymentReconciler
from tembea.observability.correlation import get_correlation_id
from tembea.observability.logging import get_logger
from tembea.observability.redaction import safe_log_context

router = APIRouter(prefix="/payments", tags=["payments"])

logger = get_logger(__name__)


@router.get("/{payment_id}")
def get_payment_status(
    payment_id: str = Path(..., description="Payment UUID"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> dict:
    state = read_payment_state(payment_id)
    return {
        "payment_id": payment_id,
        "status": state.status,
        "result_code": state.result_code,
        "booking_id": state.booking_id,
        "reconciliation": reconciler.state(payment_id).value,
    }


@router.post("/{payment_id}/await")
async def await_payment(
    payment_id: str = Path(..., description="Payment UUID"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> dict:
    """Wait for the payment outcome (joins the running loop if there is one).

    Returns the booking; declines, timeouts and rejected paid bookings are
    returned as errors.
    """
    await run_in_threadpool(read_payment_state, payment_id)
    outcome = await reconciler.wait(payment_id, correlation_id=get_correlation_id())
    booking = outcome.booking_or_raise()
    return {"status": "confirmed", "booking": booking_to_dict(booking)}


@router.post("/{payment_id}/retry")
async def retry_payment(
    payment_id: str = Path(..., description="Payment UUID"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> dict:
    """Re-send the M-Pesa prompt for a declined or timed-out payment and wait again."""
    logger.info(
        "payment retry requested",
        extra={"extra_fields": safe_log_context(payment_id=payment_id)},
    )
    outcome = await reconciler.retry(payment_id, correlation_id=get_correlation_id())
    booking = outcome.booking_or_raise()
    return {"status": "confirmed", "booking": booking_to_dict(booking)}


@router.delete("/{payment_id}/poll")
def stop_polling(
    payment_id: str = Path(..., description="Payment UUID"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> dict:
    """Stop the reconciliation loop. The payment record is left as it is."""
    return {"payment_id": payment_id, "cancelled": reconciler.cancel(payment_id)}
