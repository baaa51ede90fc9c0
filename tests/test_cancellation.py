"""Tests for booking cancellation and the 48-hour lead time."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tembea.domain.cancellation import (
    BookingNotFoundError,
    CancellationNotAllowed,
    can_cancel,
    cancel_booking,
)
from tembea.infra.time import start_of_day
from tests.helpers import BOOKING_ID, ITEM_ID, hotel, mock_txn_factory, trip

MODULE = "tembea.domain.cancellation"

VISIT = date(2026, 11, 14)


def _booking(**overrides):
    booking = {
        "id": BOOKING_ID,
        "item_id": ITEM_ID,
        "status": "confirmed",
        "payment_status": "completed",
        "slots_booked": 3,
        "visit_date": VISIT,
        "booking_details": {"kind": "slot", "adults": 3},
        "total_cents": 750000,
        "currency": "KES",
        "guest_email": "amina@example.com",
    }
    booking.update(overrides)
    return booking


class TestCanCancel:
    def test_exactly_48_hours_before_is_allowed(self):
        now = start_of_day(VISIT) - timedelta(hours=48)
        assert can_cancel(VISIT, now=now)

    def test_less_than_48_hours_is_refused(self):
        now = start_of_day(VISIT) - timedelta(hours=47, minutes=59)
        assert not can_cancel(VISIT, now=now)

    def test_lead_time_uses_local_midnight(self):
        # 21:00 UTC on the 11th is midnight of the 12th in Nairobi: 48 h before the 14th.
        now = datetime(2026, 11, 11, 21, 0, tzinfo=timezone.utc)
        assert can_cancel(VISIT, now=now)
        assert not can_cancel(VISIT, now=now + timedelta(seconds=1))

    def test_no_visit_date(self):
        assert not can_cancel(None, now=datetime(2026, 11, 1, tzinfo=timezone.utc))


class TestCancelBooking:
    EARLY = datetime(2026, 11, 1, 9, 0, tzinfo=timezone.utc)

    def test_slot_booking_releases_slots(self):
        fake_txn, cur = mock_txn_factory()
        with (
            patch(f"{MODULE}.txn", new=fake_txn),
            patch(f"{MODULE}.get_booking", return_value=_booking()) as get_booking,
            patch(f"{MODULE}.get_item", return_value=trip()) as get_item,
            patch(f"{MODULE}.mark_booking_cancelled") as mark,
            patch(f"{MODULE}.release_slots") as release,
            patch(f"{MODULE}.emit_event") as emit,
        ):
            result = cancel_booking(BOOKING_ID, now=self.EARLY, reason="change of plans")

        assert result == {"status": "cancelled", "booking_id": BOOKING_ID, "slots_released": 3}
        assert get_booking.call_args.kwargs == {"lock": True}
        assert get_item.call_args.kwargs == {"lock": True}
        mark.assert_called_once_with(cur, BOOKING_ID)
        release.assert_called_once_with(cur, item_id=ITEM_ID, visit_date=VISIT, slots=3)
        assert emit.call_args.kwargs["event_type"] == "BOOKING_CANCELLED"
        assert emit.call_args.kwargs["payload"]["reason"] == "change of plans"

    def test_facility_booking_releases_by_status_only(self):
        fake_txn, cur = mock_txn_factory()
        with (
            patch(f"{MODULE}.txn", new=fake_txn),
            patch(f"{MODULE}.get_booking", return_value=_booking(slots_booked=0)),
            patch(f"{MODULE}.get_item", return_value=hotel()),
            patch(f"{MODULE}.mark_booking_cancelled") as mark,
            patch(f"{MODULE}.release_slots") as release,
            patch(f"{MODULE}.emit_event"),
        ):
            result = cancel_booking(BOOKING_ID, now=self.EARLY)

        assert result["slots_released"] == 0
        mark.assert_called_once()
        release.assert_not_called()

    def test_already_cancelled_is_a_no_op(self):
        fake_txn, cur = mock_txn_factory()
        with (
            patch(f"{MODULE}.txn", new=fake_txn),
            patch(f"{MODULE}.get_booking", return_value=_booking(status="cancelled")),
            patch(f"{MODULE}.mark_booking_cancelled") as mark,
            patch(f"{MODULE}.emit_event") as emit,
        ):
            result = cancel_booking(BOOKING_ID, now=self.EARLY)

        assert result == {"status": "already_cancelled", "booking_id": BOOKING_ID}
        mark.assert_not_called()
        emit.assert_not_called()

    def test_too_close_to_visit(self):
        fake_txn, cur = mock_txn_factory()
        late = datetime(2026, 11, 13, 6, 0, tzinfo=timezone.utc)
        with (
            patch(f"{MODULE}.txn", new=fake_txn),
            patch(f"{MODULE}.get_booking", return_value=_booking()),
            patch(f"{MODULE}.mark_booking_cancelled") as mark,
        ):
            with pytest.raises(CancellationNotAllowed, match="48 hours"):
                cancel_booking(BOOKING_ID, now=late)
        mark.assert_not_called()

    def test_unpaid_booking_cannot_be_cancelled(self):
        fake_txn, cur = mock_txn_factory()
        with (
            patch(f"{MODULE}.txn", new=fake_txn),
            patch(f"{MODULE}.get_booking", return_value=_booking(payment_status="pending")),
        ):
            with pytest.raises(CancellationNotAllowed):
                cancel_booking(BOOKING_ID, now=self.EARLY)

    def test_unknown_booking(self):
        fake_txn, cur = mock_txn_factory()
        with patch(f"{MODULE}.txn", new=fake_txn), patch(f"{MODULE}.get_booking", return_value=None):
            with pytest.raises(BookingNotFoundError):
                cancel_booking(BOOKING_ID, now=self.EARLY)
