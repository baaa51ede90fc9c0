"""Shared test helper functions for Tembea tests.

Regular functions and classes (not fixtures) imported by individual test
files.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

from tembea.domain.models import (
    Activity,
    BookableItem,
    Facility,
    FacilitySelection,
    GuestInfo,
    ReservationRequest,
)

ITEM_ID = "6f1c1b5e-1f0a-4c55-9d43-0c6a2a0f3b11"
HOST_ID = "0b9a5d2e-7a44-4f7e-9c1d-5d2f3e4a6b77"
PAYMENT_ID = "3a7d9c1e-2b4f-4e6a-8c0d-1f2e3d4c5b6a"
BOOKING_ID = "9e8d7c6b-5a4f-4e3d-8c2b-1a0f9e8d7c6b"
TRACKING_ID = "c4b3a291-8f7e-4d6c-9b5a-4f3e2d1c0b9a"
REFERRER_ID = "d1e2f3a4-b5c6-4d7e-8f90-a1b2c3d4e5f6"

GUEST = GuestInfo(name="Amina Njeri", email="amina@example.com", phone="0712345678")


def trip(**overrides) -> BookableItem:
    values = dict(
        id=ITEM_ID,
        item_type="trip",
        name="Hell's Gate day trip",
        total_capacity=10,
        adult_price_cents=250000,
        child_price_cents=100000,
        host_id=HOST_ID,
        booking_horizon_days=30,
        activities=(Activity(name="Cycling", price_cents=50000),),
    )
    values.update(overrides)
    return BookableItem(**values)


def hotel(**overrides) -> BookableItem:
    values = dict(
        id=ITEM_ID,
        item_type="hotel",
        name="Lake Naivasha Lodge",
        facilities=(
            Facility(name="Cottage A", price_cents=800000),
            Facility(name="Campsite", price_cents=150000, capacity=3),
        ),
        activities=(Activity(name="Boat ride", price_cents=120000),),
        entrance_type="free",
        host_id=HOST_ID,
        booking_horizon_days=90,
    )
    values.update(overrides)
    return BookableItem(**values)


def slot_request(visit_date: date, adults: int = 2, children: int = 0, **overrides) -> ReservationRequest:
    values = dict(
        item_id=ITEM_ID,
        visit_date=visit_date,
        adults=adults,
        children=children,
        guest=GUEST,
        payment_phone="0712345678",
    )
    values.update(overrides)
    return ReservationRequest(**values)


def facility_request(name: str, start: date, end: date, **overrides) -> ReservationRequest:
    values = dict(
        item_id=ITEM_ID,
        facilities=(FacilitySelection(name=name, start_date=start, end_date=end),),
        guest=GUEST,
        payment_phone="0712345678",
    )
    values.update(overrides)
    return ReservationRequest(**values)


class MockTxnContext:
    """Stands in for infra.db.txn(): yields the same cursor every time."""

    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self._cursor

    def __exit__(self, *args):
        return False


def mock_txn_factory(cursor=None):
    """Return (txn replacement, cursor) for patch(..., new=...)."""
    cursor = cursor if cursor is not None else MagicMock()

    def _txn(*args, **kwargs):
        return MockTxnContext(cursor)

    return _txn, cursor
