"""Referral commission rates.

Rates are configured per item type in the referral_settings table. Missing
item types fall back to environment defaults:
- REFERRAL_SERVICE_FEE_PERCENT (default 20)
- REFERRAL_COMMISSION_PERCENT (default 5)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from psycopg2.extensions import cursor as PgCursor

from .db import fetchall

DEFAULT_SERVICE_FEE_PERCENT = "20"
DEFAULT_COMMISSION_PERCENT = "5"


@dataclass(frozen=True)
class ItemTypeRates:
    """Service fee charged on a booking, and the referrer's cut of that fee."""

    service_fee_percent: Decimal
    commission_percent: Decimal


@dataclass(frozen=True)
class ReferralSettings:
    default: ItemTypeRates
    by_item_type: dict[str, ItemTypeRates] = field(default_factory=dict)

    def rates_for(self, item_type: str | None) -> ItemTypeRates:
        if item_type == "adventure":
            item_type = "adventure_place"
        return self.by_item_type.get(item_type or "", self.default)


def default_rates() -> ItemTypeRates:
    return ItemTypeRates(
        service_fee_percent=Decimal(
            os.environ.get("REFERRAL_SERVICE_FEE_PERCENT", DEFAULT_SERVICE_FEE_PERCENT)
        ),
        commission_percent=Decimal(
            os.environ.get("REFERRAL_COMMISSION_PERCENT", DEFAULT_COMMISSION_PERCENT)
        ),
    )


def load_referral_settings(cur: PgCursor) -> ReferralSettings:
    """Load per-item-type rates merged with environment defaults."""
    rows = fetchall(
        cur,
        """
        SELECT item_type, service_fee_percent, commission_percent
        FROM referral_settings
        """,
    )
    return ReferralSettings(
        default=default_rates(),
        by_item_type={
            row[0]: ItemTypeRates(
                service_fee_percent=Decimal(row[1]),
                commission_percent=Decimal(row[2]),
            )
            for row in rows
        },
    )
