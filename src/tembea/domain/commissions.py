"""Referral commission award.

When a booking carries a referral tracking id, the referrer earns a share of
the platform service fee:

    service_fee = amount * service_fee_percent / 100
    commission  = service_fee * commission_percent / 100

with both rates taken per item type from referral_settings. A booking earns
at most one commission; awarding twice returns the existing record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from psycopg2.extensions import cursor as PgCursor

from tembea.infra.referral_settings import ReferralSettings, load_referral_settings
from tembea.infra.repositories.commissions_repository import (
    get_commission_by_booking,
    get_referral_tracking,
    insert_commission,
    mark_tracking_converted,
)

logger = logging.getLogger(__name__)

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class CommissionQuote:
    commission_cents: int
    # Percentage recorded with the commission.
    rate: Decimal


class CommissionPolicy(Protocol):
    def quote(self, cur: PgCursor, *, amount_cents: int, item_type: str | None) -> CommissionQuote: ...


def _to_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class ServiceFeeCommissionPolicy:
    """Commission as a share of the item type's service fee."""

    def __init__(self, settings: ReferralSettings | None = None) -> None:
        self._settings = settings

    def quote(self, cur: PgCursor, *, amount_cents: int, item_type: str | None) -> CommissionQuote:
        settings = self._settings or load_referral_settings(cur)
        rates = settings.rates_for(item_type)
        service_fee = Decimal(amount_cents) * rates.service_fee_percent / _HUNDRED
        commission = service_fee * rates.commission_percent / _HUNDRED
        return CommissionQuote(commission_cents=_to_cents(commission), rate=rates.commission_percent)


class FixedCommissionPolicy:
    """Commission as a flat percentage of the booking amount."""

    def __init__(self, percent: Decimal | str | int) -> None:
        self._percent = Decimal(percent)

    def quote(self, cur: PgCursor, *, amount_cents: int, item_type: str | None) -> CommissionQuote:
        commission = Decimal(amount_cents) * self._percent / _HUNDRED
        return CommissionQuote(commission_cents=_to_cents(commission), rate=self._percent)


def award_commission(
    cur: PgCursor,
    *,
    booking_id: str,
    amount_cents: int,
    referral_tracking_id: str,
    item_type: str | None = None,
    referred_user_id: str | None = None,
    policy: CommissionPolicy | None = None,
) -> dict[str, Any]:
    """Award the referrer's commission for a booking, at most once.

    Must run in the transaction that commits the booking.

    Returns:
        Dict with status:
        - {"status": "skipped", "reason": str} - unknown tracking, self-referral or zero amount
        - {"status": "awarded", "commission_id": str, "commission_cents": int, "created": True}
        - {"status": "existing", "commission_id": str, "commission_cents": int, "created": False}
    """
    tracking = get_referral_tracking(cur, referral_tracking_id)
    if tracking is None:
        logger.warning(
            "referral tracking not found",
            extra={"extra_fields": {"booking_id": booking_id, "referral_tracking_id": referral_tracking_id}},
        )
        return {"status": "skipped", "reason": "tracking_not_found"}

    if referred_user_id is not None and referred_user_id == tracking["referrer_id"]:
        return {"status": "skipped", "reason": "self_referral"}

    if amount_cents <= 0:
        return {"status": "skipped", "reason": "zero_amount"}

    policy = policy or ServiceFeeCommissionPolicy()
    quote = policy.quote(
        cur,
        amount_cents=amount_cents,
        item_type=tracking["item_type"] or item_type,
    )

    commission_id = insert_commission(
        cur,
        booking_id=booking_id,
        referral_tracking_id=referral_tracking_id,
        referrer_id=tracking["referrer_id"],
        referred_user_id=referred_user_id or tracking["referred_user_id"],
        commission_cents=quote.commission_cents,
        commission_rate=quote.rate,
        booking_amount_cents=amount_cents,
    )

    if commission_id is None:
        existing = get_commission_by_booking(cur, booking_id)
        return {
            "status": "existing",
            "commission_id": existing["id"] if existing else None,
            "commission_cents": existing["commission_cents"] if existing else 0,
            "created": False,
        }

    mark_tracking_converted(cur, referral_tracking_id)

    logger.info(
        "commission awarded",
        extra={
            "extra_fields": {
                "booking_id": booking_id,
                "commission_id": commission_id,
                "commission_cents": quote.commission_cents,
            }
        },
    )
    return {
        "status": "awarded",
        "commission_id": commission_id,
        "commission_cents": quote.commission_cents,
        "created": True,
    }
