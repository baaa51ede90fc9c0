"""Payments repository - persistence for M-Pesa payment records.

A payment record carries the full would-be booking payload (booking_data)
so the booking can be materialized only after the gateway confirms the
charge. booking_id is set once the payload has been consumed.

Uses raw SQL with psycopg2 (no ORM).
"""

from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tembea.infra.db import is_uuid, json_param

VALID_STATUSES = {"pending", "completed", "failed"}

_PAYMENT_COLUMNS = """
    id, item_id, status, checkout_request_id, merchant_request_id,
    phone_number, amount, account_reference, transaction_desc,
    booking_data, result_code, result_desc, booking_id, mpesa_receipt,
    rejection_reason
"""


def _row_to_payment(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "item_id": str(row[1]),
        "status": row[2],
        "checkout_request_id": row[3],
        "merchant_request_id": row[4],
        "phone_number": row[5],
        "amount": row[6],
        "account_reference": row[7],
        "transaction_desc": row[8],
        "booking_data": row[9] or {},
        "result_code": row[10],
        "result_desc": row[11],
        "booking_id": str(row[12]) if row[12] else None,
        "mpesa_receipt": row[13],
        "rejection_reason": row[14],
    }


def insert_pending_payment(
    cur: PgCursor,
    *,
    item_id: str,
    phone_number: str,
    amount: int,
    account_reference: str,
    transaction_desc: str,
    booking_data: dict[str, Any],
    user_id: str | None = None,
    host_id: str | None = None,
) -> str:
    """Insert a payment in 'pending' state before the charge is sent.

    Returns:
        Payment UUID string.
    """
    cur.execute(
        """
        INSERT INTO payments (
            item_id, phone_number, amount, account_reference,
            transaction_desc, booking_data, status, user_id, host_id
        )
        VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s, %s)
        RETURNING id
        """,
        (
            item_id,
            phone_number,
            amount,
            account_reference,
            transaction_desc,
            json_param(booking_data),
            user_id,
            host_id,
        ),
    )
    return str(cur.fetchone()[0])


def get_payment(cur: PgCursor, payment_id: str, *, lock: bool = False) -> dict[str, Any] | None:
    if not is_uuid(payment_id):
        return None
    suffix = " FOR UPDATE" if lock else ""
    cur.execute(
        f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE id = %s{suffix}",
        (payment_id,),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def get_payment_by_checkout_request(
    cur: PgCursor,
    checkout_request_id: str,
    *,
    lock: bool = False,
) -> dict[str, Any] | None:
    """Find the payment owning a session, current or superseded by a retry.

    Callers compare the returned checkout_request_id with the one they passed
    to tell the two apart.
    """
    suffix = " FOR UPDATE" if lock else ""
    cur.execute(
        f"""
        SELECT {_PAYMENT_COLUMNS} FROM payments
        WHERE checkout_request_id = %s
           OR %s = ANY(superseded_checkout_request_ids){suffix}
        """,
        (checkout_request_id, checkout_request_id),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def get_payment_state(cur: PgCursor, payment_id: str) -> tuple[str, str | None, str | None] | None:
    """Return (status, result_code, booking_id) - the columns the poller reads."""
    if not is_uuid(payment_id):
        return None
    cur.execute(
        "SELECT status, result_code, booking_id FROM payments WHERE id = %s",
        (payment_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return (row[0], row[1], str(row[2]) if row[2] else None)


def set_checkout_request(
    cur: PgCursor,
    *,
    payment_id: str,
    checkout_request_id: str,
    merchant_request_id: str | None,
) -> bool:
    """Store a new session reference and reset the record to 'pending'.

    The previous session id moves to superseded_checkout_request_ids so a late
    callback for it still finds this record. A record that already completed
    or produced a booking is left untouched.

    Returns:
        True if the record was updated, False if it had already completed.
    """
    cur.execute(
        """
        UPDATE payments
        SET superseded_checkout_request_ids = CASE
                WHEN checkout_request_id IS NULL OR checkout_request_id = %s
                    THEN superseded_checkout_request_ids
                ELSE array_append(superseded_checkout_request_ids, checkout_request_id)
            END,
            checkout_request_id = %s,
            merchant_request_id = %s,
            status = 'pending',
            result_code = NULL,
            result_desc = NULL,
            updated_at = now()
        WHERE id = %s
          AND status <> 'completed'
          AND booking_id IS NULL
        """,
        (checkout_request_id, checkout_request_id, merchant_request_id, payment_id),
    )
    return cur.rowcount > 0


def update_payment_result(
    cur: PgCursor,
    *,
    payment_id: str,
    status: str,
    result_code: str | None,
    result_desc: str | None,
    mpesa_receipt: str | None = None,
    only_from: tuple[str, ...] | None = None,
) -> bool:
    """Record a gateway result.

    Args:
        only_from: If given, the update applies only while the record is in
            one of these statuses (duplicate callbacks become no-ops and a
            completed record is never overwritten).

    Returns:
        True if a row was updated.

    Raises:
        ValueError: If status is not in VALID_STATUSES.
    """
    if status not in VALID_STATUSES:
        raise ValueError(f"Invalid status: {status}. Must be one of {VALID_STATUSES}")

    params: list[Any] = [status, result_code, result_desc, mpesa_receipt, payment_id]
    guard = ""
    if only_from is not None:
        guard = " AND status = ANY(%s)"
        params.append(list(only_from))
    cur.execute(
        f"""
        UPDATE payments
        SET status = %s,
            result_code = %s,
            result_desc = %s,
            mpesa_receipt = COALESCE(%s, mpesa_receipt),
            updated_at = now()
        WHERE id = %s{guard}
        """,
        tuple(params),
    )
    return cur.rowcount > 0


def mark_payment_consumed(cur: PgCursor, *, payment_id: str, booking_id: str) -> None:
    cur.execute(
        """
        UPDATE payments
        SET booking_id = %s, updated_at = now()
        WHERE id = %s
        """,
        (booking_id, payment_id),
    )


def mark_payment_rejected(cur: PgCursor, *, payment_id: str, reason: str) -> None:
    """Record that a completed payment could not be turned into a booking."""
    cur.execute(
        """
        UPDATE payments
        SET rejection_reason = %s, updated_at = now()
        WHERE id = %s AND rejection_reason IS NULL
        """,
        (reason, payment_id),
    )
