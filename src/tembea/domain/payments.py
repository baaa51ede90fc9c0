"""Payment domain logic.

Handles the M-Pesa STK payment record of a paid reservation:
- initiate: persist a pending record carrying the full booking payload, then
  ask the gateway to prompt the payer.
- retry: re-issue the prompt for the same record (never a second booking).
- record_gateway_result: apply a callback or query outcome to the record.

No capacity is held while a payment is pending; the booking is materialized
only after the gateway reports success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from tembea.domain.capacity import store_guard
from tembea.domain.errors import PaymentInitiationFailed
from tembea.infra.db import txn
from tembea.infra.repositories.outbox_repository import PAYMENT_FAILED, emit_event
from tembea.infra.repositories.payments_repository import (
    get_payment,
    get_payment_by_checkout_request,
    get_payment_state,
    insert_pending_payment,
    set_checkout_request,
    update_payment_result,
)
from tembea.mpesa.client import MpesaError, StkPushResult, StkQueryResult
from tembea.mpesa.result_codes import decline_reason, is_success

logger = logging.getLogger(__name__)

PAYMENT_METHOD_MPESA = "mpesa"

# Result code stored when the gateway never accepted the push.
INITIATION_FAILED_RESULT_CODE = "initiation_failed"

DEFAULT_ACCOUNT_REFERENCE = "TEMBEA"
DEFAULT_TRANSACTION_DESC = "Booking"

# Statuses a gateway success may still move to 'completed'. A retried
# payment sits in 'failed' between a refused push and the next prompt.
OPEN_STATUSES = ("pending", "failed")


class PaymentGateway(Protocol):
    def stk_push(
        self,
        *,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_desc: str,
        correlation_id: str | None = None,
    ) -> StkPushResult: ...

    def stk_query(self, checkout_request_id: str) -> StkQueryResult: ...


class PaymentNotFoundError(Exception):
    """Payment record does not exist."""


@dataclass(frozen=True)
class PaymentState:
    """What the reconciliation loop reads on each poll."""

    status: str
    result_code: str | None
    booking_id: str | None


def stk_amount(total_cents: int) -> int:
    """Whole-shilling amount for the STK prompt (half up, at least 1)."""
    return max(1, (total_cents + 50) // 100)


def _push(
    gateway: PaymentGateway,
    *,
    payment_id: str,
    phone_number: str,
    amount: int,
    account_reference: str,
    transaction_desc: str,
    correlation_id: str | None,
) -> StkPushResult:
    """Send the STK push; on failure mark the record failed and raise."""
    try:
        return gateway.stk_push(
            phone_number=phone_number,
            amount=amount,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
            correlation_id=correlation_id,
        )
    except (MpesaError, ValueError) as exc:
        with store_guard("mark_initiation_failed"), txn() as cur:
            update_payment_result(
                cur,
                payment_id=payment_id,
                status="failed",
                result_code=INITIATION_FAILED_RESULT_CODE,
                result_desc=str(exc)[:255],
                only_from=OPEN_STATUSES,
            )
        logger.warning(
            "payment_initiation_failed",
            extra={
                "extra_fields": {
                    "payment_id": payment_id,
                    "error_type": type(exc).__name__,
                    "correlation_id": correlation_id,
                }
            },
        )
        raise PaymentInitiationFailed("Payment could not be initiated") from exc


def initiate_payment(
    *,
    item_id: str,
    host_id: str | None,
    user_id: str | None,
    phone_number: str,
    total_cents: int,
    booking_data: dict[str, Any],
    gateway: PaymentGateway,
    account_reference: str = DEFAULT_ACCOUNT_REFERENCE,
    transaction_desc: str = DEFAULT_TRANSACTION_DESC,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Persist a pending payment record and prompt the payer.

    The record is committed before the gateway call so the booking payload
    survives even if the process dies while the payer is deciding.

    Returns:
        Dict with payment_id, checkout_request_id and amount.

    Raises:
        PaymentInitiationFailed: If the gateway refused or could not be reached.
        StoreUnavailable: If the payment record could not be written.
    """
    amount = stk_amount(total_cents)

    with store_guard("insert_pending_payment"), txn() as cur:
        payment_id = insert_pending_payment(
            cur,
            item_id=item_id,
            phone_number=phone_number,
            amount=amount,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
            booking_data=booking_data,
            user_id=user_id,
            host_id=host_id,
        )

    push = _push(
        gateway,
        payment_id=payment_id,
        phone_number=phone_number,
        amount=amount,
        account_reference=account_reference,
        transaction_desc=transaction_desc,
        correlation_id=correlation_id,
    )

    with store_guard("set_checkout_request"), txn() as cur:
        set_checkout_request(
            cur,
            payment_id=payment_id,
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
        )

    logger.info(
        "payment_initiated",
        extra={
            "extra_fields": {
                "payment_id": payment_id,
                "item_id": item_id,
                "amount": amount,
                "correlation_id": correlation_id,
            }
        },
    )
    return {
        "payment_id": payment_id,
        "checkout_request_id": push.checkout_request_id,
        "amount": amount,
    }


def _settled(payment: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": "completed",
        "payment_id": payment["id"],
        "checkout_request_id": payment["checkout_request_id"],
        "amount": payment["amount"],
        "booking_id": payment["booking_id"],
    }


def _load_for_retry(payment_id: str) -> dict[str, Any]:
    with store_guard("load_payment"), txn() as cur:
        payment = get_payment(cur, payment_id, lock=True)
    if payment is None:
        raise PaymentNotFoundError(f"Payment not found: {payment_id}")
    return payment


def retry_payment(
    payment_id: str,
    *,
    gateway: PaymentGateway,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Re-issue the STK prompt for a pending or failed payment.

    Reuses the stored booking payload, stores the new session reference and
    resets the record to 'pending'. The previous session stays attached to
    the record, so a late success for it still completes the payment.

    A payment that already completed (or already produced its booking) is
    never re-prompted: its current state comes back with status "completed".
    While the previous session is still pending, the gateway is queried
    first so a payment that just went through is not charged twice.

    Returns:
        Dict with status ("pending" or "completed"), payment_id,
        checkout_request_id, amount and booking_id.

    Raises:
        PaymentNotFoundError: If the payment does not exist.
        PaymentInitiationFailed: If the gateway refused the new push.
    """
    payment = _load_for_retry(payment_id)
    if payment["booking_id"] is not None or payment["status"] == "completed":
        return _settled(payment)

    if payment["status"] == "pending" and payment["checkout_request_id"]:
        try:
            refreshed = refresh_from_gateway(
                payment_id, gateway=gateway, correlation_id=correlation_id
            )
        except MpesaError as exc:
            logger.warning(
                "payment_retry_query_failed",
                extra={
                    "extra_fields": {
                        "payment_id": payment_id,
                        "error_type": type(exc).__name__,
                        "correlation_id": correlation_id,
                    }
                },
            )
        else:
            if refreshed["status"] in ("completed", "duplicate"):
                payment = _load_for_retry(payment_id)
                if payment["status"] == "completed":
                    return _settled(payment)

    push = _push(
        gateway,
        payment_id=payment_id,
        phone_number=payment["phone_number"],
        amount=payment["amount"],
        account_reference=payment["account_reference"],
        transaction_desc=payment["transaction_desc"],
        correlation_id=correlation_id,
    )

    with store_guard("set_checkout_request"), txn() as cur:
        stored = set_checkout_request(
            cur,
            payment_id=payment_id,
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
        )
        if not stored:
            payment = get_payment(cur, payment_id)

    if not stored:
        # The previous session completed while the new prompt was in flight.
        # The new session is not recorded; a payer who also accepts it needs
        # a refund, so its reference goes to the log.
        logger.warning(
            "payment_retry_lost_to_completion",
            extra={
                "extra_fields": {
                    "payment_id": payment_id,
                    "orphaned_checkout_request_id": push.checkout_request_id,
                    "correlation_id": correlation_id,
                }
            },
        )
        return _settled(payment)

    logger.info(
        "payment_retried",
        extra={
            "extra_fields": {
                "payment_id": payment_id,
                "previous_result_code": payment["result_code"],
                "correlation_id": correlation_id,
            }
        },
    )
    return {
        "status": "pending",
        "payment_id": payment_id,
        "checkout_request_id": push.checkout_request_id,
        "amount": payment["amount"],
        "booking_id": None,
    }


def read_payment_state(payment_id: str) -> PaymentState:
    """Read (status, result_code, booking_id) of a payment record.

    Raises:
        PaymentNotFoundError: If the payment does not exist.
        StoreUnavailable: If the store could not be read.
    """
    with store_guard("read_payment_state"), txn() as cur:
        row = get_payment_state(cur, payment_id)
    if row is None:
        raise PaymentNotFoundError(f"Payment not found: {payment_id}")
    return PaymentState(status=row[0], result_code=row[1], booking_id=row[2])


def record_gateway_result(
    *,
    checkout_request_id: str,
    result_code: str,
    result_desc: str | None,
    receipt_number: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Apply a gateway outcome (callback or status query) to its payment record.

    A decline changes only a pending record; a repeated callback is a no-op.
    A success also lands on a record a failed retry left in 'failed', and a
    success for a session superseded by a retry still completes the record.
    A decline for a superseded session is ignored. A decline also writes a
    PAYMENT_FAILED event in the same transaction.

    Returns:
        Dict with status:
        - {"status": "unknown"} - no payment for this session reference
        - {"status": "stale", "payment_id": str} - decline for a superseded session
        - {"status": "duplicate", "payment_id": str} - record already settled
        - {"status": "completed" | "failed", "payment_id": str}
    """
    succeeded = is_success(result_code)
    new_status = "completed" if succeeded else "failed"

    with store_guard("record_gateway_result"), txn() as cur:
        payment = get_payment_by_checkout_request(cur, checkout_request_id, lock=True)
        if payment is None:
            logger.warning(
                "gateway_result_for_unknown_session",
                extra={"extra_fields": {"checkout_request_id": checkout_request_id}},
            )
            return {"status": "unknown"}

        superseded = payment["checkout_request_id"] != checkout_request_id
        if superseded and not succeeded:
            logger.info(
                "gateway_result_for_superseded_session",
                extra={
                    "extra_fields": {
                        "payment_id": payment["id"],
                        "result_code": str(result_code),
                        "correlation_id": correlation_id,
                    }
                },
            )
            return {"status": "stale", "payment_id": payment["id"]}

        updated = update_payment_result(
            cur,
            payment_id=payment["id"],
            status=new_status,
            result_code=str(result_code),
            result_desc=result_desc,
            mpesa_receipt=receipt_number,
            only_from=OPEN_STATUSES if succeeded else ("pending",),
        )
        if not updated:
            return {"status": "duplicate", "payment_id": payment["id"]}

        if not succeeded:
            reason = decline_reason(result_code)
            emit_event(
                cur,
                item_id=payment["item_id"],
                event_type=PAYMENT_FAILED,
                aggregate_type="payment",
                aggregate_id=payment["id"],
                payload={
                    "result_code": str(result_code),
                    "reason": reason.value,
                    "amount": payment["amount"],
                },
                correlation_id=correlation_id,
            )

    logger.info(
        "gateway_result_recorded",
        extra={
            "extra_fields": {
                "payment_id": payment["id"],
                "status": new_status,
                "result_code": str(result_code),
                "correlation_id": correlation_id,
            }
        },
    )
    return {"status": new_status, "payment_id": payment["id"]}


def refresh_from_gateway(
    payment_id: str,
    *,
    gateway: PaymentGateway,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Query the gateway for a pending payment and record a final outcome.

    Used when the callback is late or lost. A query that reports the session
    as still in progress changes nothing.

    Returns:
        Dict with status "pending" or the record_gateway_result outcome.

    Raises:
        PaymentNotFoundError: If the payment does not exist.
        MpesaError: If the query itself failed.
    """
    with store_guard("load_payment"), txn() as cur:
        payment = get_payment(cur, payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment not found: {payment_id}")
    if payment["status"] != "pending" or not payment["checkout_request_id"]:
        return {"status": payment["status"], "payment_id": payment_id}

    result = gateway.stk_query(payment["checkout_request_id"])
    if result.in_progress:
        return {"status": "pending", "payment_id": payment_id}

    return record_gateway_result(
        checkout_request_id=payment["checkout_request_id"],
        result_code=result.result_code,
        result_desc=result.result_desc,
        correlation_id=correlation_id,
    )
