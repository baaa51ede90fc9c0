"""Outbox repository - booking events for the notification dispatcher.

Events are written in the same transaction as the state change they
describe; a separate dispatcher formats and delivers e-mail/SMS.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor

BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
BOOKING_CANCELLED = "BOOKING_CANCELLED"
MANUAL_ENTRY_CREATED = "MANUAL_ENTRY_CREATED"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAID_BOOKING_REJECTED = "PAID_BOOKING_REJECTED"
BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"


def emit_event(
    cur: PgCursor,
    *,
    item_id: str,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Emit an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        item_id: Bookable item the event relates to.
        event_type: Event type (e.g., BOOKING_CONFIRMED).
        aggregate_type: Aggregate type (booking, payment, manual_entry).
        aggregate_id: Aggregate UUID.
        payload: Optional JSON payload for the notifier.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload, default=str) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            item_id, event_type, aggregate_type,
            aggregate_id, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            item_id,
            event_type,
            aggregate_type,
            aggregate_id,
            payload_json,
            correlation_id,
        ),
    )
    return cur.fetchone()[0]
