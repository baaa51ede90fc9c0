"""M-Pesa STK callback endpoint.

Rules:
- Never log the callback body (it carries the payer's phone number).
- Record the outcome on the payment record; a completed payment is also
  materialized here so the booking exists even when nobody is polling.
- Acknowledge with Daraja's {"ResultCode": 0} once the outcome is stored;
  answer 5xx if it could not be stored.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from tembea.domain.errors import PaidBookingRejected
from tembea.domain.payments import record_gateway_result
from tembea.domain.reservations import finalize_paid_reservation
from tembea.mpesa.callback import InvalidCallbackError, parse_stk_callback
from tembea.observability.correlation import get_correlation_id
from tembea.observability.logging import get_logger
from tembea.observability.redaction import safe_log_context

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/webhooks/mpesa")
async def mpesa_callback(request: Request) -> JSONResponse:
    correlation_id = get_correlation_id()

    try:
        callback = parse_stk_callback(await request.json())
    except (InvalidCallbackError, ValueError):
        logger.warning(
            "mpesa callback rejected",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return JSONResponse(status_code=400, content={"ResultCode": 1, "ResultDesc": "Rejected"})

    result = await run_in_threadpool(
        record_gateway_result,
        checkout_request_id=callback.checkout_request_id,
        result_code=callback.result_code,
        result_desc=callback.result_desc,
        receipt_number=callback.receipt_number,
        correlation_id=correlation_id,
    )

    logger.info(
        "mpesa callback recorded",
        extra={
            "extra_fields": safe_log_context(
                checkout_request_id=callback.checkout_request_id,
                result_code=callback.result_code,
                outcome=result["status"],
            )
        },
    )

    if result["status"] == "completed":
        try:
            await run_in_threadpool(
                finalize_paid_reservation,
                result["payment_id"],
                correlation_id=correlation_id,
            )
        except PaidBookingRejected as exc:
            # Recorded and announced by finalize; the charge itself is still acknowledged.
            logger.warning(
                "paid booking rejected after callback",
                extra={"extra_fields": safe_log_context(payment_id=exc.payment_id)},
            )

    return JSONResponse(status_code=200, content=ACCEPTED)
