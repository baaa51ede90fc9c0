"""Tests for host manual entries."""

from contextlib import ExitStack
from datetime import date
from unittest.mock import patch

import pytest

from tembea.domain.errors import FacilityConflict, ItemNotFound, ValidationError
from tembea.domain.manual_entries import ManualEntryRequest, create_manual_entry
from tembea.domain.models import ConflictDescription, FacilitySelection
from tests.helpers import HOST_ID, ITEM_ID, hotel, mock_txn_factory, trip

MODULE = "tembea.domain.manual_entries"


def _patch_store(stack: ExitStack, item, capacity_error=None):
    fake_txn, cur = mock_txn_factory()
    stack.enter_context(patch(f"{MODULE}.txn", new=fake_txn))
    mocks = {
        "get_item": stack.enter_context(patch(f"{MODULE}.get_item", return_value=item)),
        "assert_request_capacity": stack.enter_context(
            patch(f"{MODULE}.assert_request_capacity", side_effect=capacity_error)
        ),
        "reserve_slots": stack.enter_context(patch(f"{MODULE}.reserve_slots", return_value=5)),
        "insert_manual_entry": stack.enter_context(
            patch(f"{MODULE}.insert_manual_entry", return_value="entry-1")
        ),
        "emit_event": stack.enter_context(patch(f"{MODULE}.emit_event")),
    }
    return cur, mocks


def _walk_in(**overrides):
    values = dict(
        item_id=ITEM_ID,
        guest_name="Walk-in group",
        guest_contact="front desk",
        visit_date=date(2026, 10, 1),
        adults=3,
        host_id=HOST_ID,
    )
    values.update(overrides)
    return ManualEntryRequest(**values)


def test_slot_entry_reserves_slots_even_for_past_dates():
    with ExitStack() as stack:
        cur, mocks = _patch_store(stack, trip())
        result = create_manual_entry(_walk_in(), correlation_id="corr-1")

    assert result == {
        "manual_entry_id": "entry-1",
        "item_id": ITEM_ID,
        "visit_date": date(2026, 10, 1),
        "total_cents": 750000,
    }
    mocks["get_item"].assert_called_once_with(cur, ITEM_ID, lock=True)
    mocks["reserve_slots"].assert_called_once()
    assert mocks["reserve_slots"].call_args.args[2:] == (date(2026, 10, 1), 3)
    kwargs = mocks["insert_manual_entry"].call_args.kwargs
    assert kwargs["slots_booked"] == 3
    assert kwargs["entry_details"]["kind"] == "slot"
    assert mocks["emit_event"].call_args.kwargs["event_type"] == "MANUAL_ENTRY_CREATED"


def test_offline_amount_overrides_catalog_price():
    with ExitStack() as stack:
        _patch_store(stack, trip())
        result = create_manual_entry(_walk_in(total_cents=600000))

    assert result["total_cents"] == 600000


def test_facility_entry_prices_from_catalog_without_slot_write():
    entry = _walk_in(
        visit_date=None,
        adults=0,
        facilities=(
            FacilitySelection(name="Cottage A", start_date=date(2026, 12, 1), end_date=date(2026, 12, 5)),
        ),
    )
    with ExitStack() as stack:
        _, mocks = _patch_store(stack, hotel())
        result = create_manual_entry(entry)

    # 4 nights at 8,000.00.
    assert result["total_cents"] == 3200000
    assert result["visit_date"] == date(2026, 12, 1)
    mocks["reserve_slots"].assert_not_called()
    assert mocks["insert_manual_entry"].call_args.kwargs["entry_details"]["kind"] == "facility"


def test_conflict_with_online_booking_is_rejected():
    conflict = ConflictDescription(
        facility_name="Cottage A",
        start_date=date(2026, 12, 3),
        end_date=date(2026, 12, 6),
        source="booking",
    )
    entry = _walk_in(
        visit_date=None,
        adults=0,
        facilities=(
            FacilitySelection(name="Cottage A", start_date=date(2026, 12, 1), end_date=date(2026, 12, 5)),
        ),
    )
    with ExitStack() as stack:
        _, mocks = _patch_store(stack, hotel(), capacity_error=FacilityConflict(conflict))
        with pytest.raises(FacilityConflict, match="Cottage A is already booked"):
            create_manual_entry(entry)

    mocks["insert_manual_entry"].assert_not_called()


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"guest_name": "  "}, "Guest name is required"),
        ({"guest_contact": ""}, "Guest contact is required"),
        ({"adults": 0}, "at least one participant"),
        ({"host_id": "not-a-uuid"}, "Invalid host id"),
    ],
)
def test_invalid_entries(overrides, message):
    with ExitStack() as stack:
        _, mocks = _patch_store(stack, trip())
        with pytest.raises(ValidationError, match=message):
            create_manual_entry(_walk_in(**overrides))

    mocks["get_item"].assert_not_called()


def test_reversed_range_is_rejected():
    entry = _walk_in(
        facilities=(
            FacilitySelection(name="Cottage A", start_date=date(2026, 12, 5), end_date=date(2026, 12, 1)),
        ),
    )
    with pytest.raises(ValidationError):
        create_manual_entry(entry)


def test_unknown_item():
    with ExitStack() as stack:
        _patch_store(stack, None)
        with pytest.raises(ItemNotFound):
            create_manual_entry(_walk_in())
