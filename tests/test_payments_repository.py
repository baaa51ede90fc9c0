"""Tests for payments_repository SQL guards (mocked cursor)."""

from unittest.mock import MagicMock

import pytest

from tembea.infra.repositories.payments_repository import (
    get_payment_by_checkout_request,
    set_checkout_request,
    update_payment_result,
)
from tests.helpers import PAYMENT_ID


class TestSetCheckoutRequest:
    def test_completed_or_consumed_record_is_not_reset(self):
        cur = MagicMock()
        cur.rowcount = 1

        assert set_checkout_request(
            cur, payment_id=PAYMENT_ID, checkout_request_id="ws_CO_2", merchant_request_id="29115-2"
        ) is True

        sql = cur.execute.call_args[0][0]
        assert "status <> 'completed'" in sql
        assert "booking_id IS NULL" in sql

    def test_returns_false_when_record_already_completed(self):
        cur = MagicMock()
        cur.rowcount = 0

        assert set_checkout_request(
            cur, payment_id=PAYMENT_ID, checkout_request_id="ws_CO_2", merchant_request_id=None
        ) is False

    def test_previous_session_is_kept_as_superseded(self):
        cur = MagicMock()
        cur.rowcount = 1

        set_checkout_request(
            cur, payment_id=PAYMENT_ID, checkout_request_id="ws_CO_2", merchant_request_id=None
        )

        sql = cur.execute.call_args[0][0]
        assert "array_append(superseded_checkout_request_ids, checkout_request_id)" in sql


class TestGetPaymentByCheckoutRequest:
    def test_matches_superseded_sessions(self):
        cur = MagicMock()
        cur.fetchone.return_value = None

        assert get_payment_by_checkout_request(cur, "ws_CO_1", lock=True) is None

        sql, params = cur.execute.call_args[0]
        assert "ANY(superseded_checkout_request_ids)" in sql
        assert "FOR UPDATE" in sql
        assert params == ("ws_CO_1", "ws_CO_1")


class TestUpdatePaymentResult:
    def test_only_from_limits_source_statuses(self):
        cur = MagicMock()
        cur.rowcount = 0

        updated = update_payment_result(
            cur,
            payment_id=PAYMENT_ID,
            status="failed",
            result_code="initiation_failed",
            result_desc="Bad Request",
            only_from=("pending", "failed"),
        )

        assert updated is False
        sql, params = cur.execute.call_args[0]
        assert "status = ANY(%s)" in sql
        assert params[-1] == ["pending", "failed"]

    def test_unguarded_update(self):
        cur = MagicMock()
        cur.rowcount = 1

        assert update_payment_result(
            cur, payment_id=PAYMENT_ID, status="completed", result_code="0", result_desc=None
        ) is True
        assert "ANY" not in cur.execute.call_args[0][0]

    def test_invalid_status(self):
        with pytest.raises(ValueError):
            update_payment_result(
                MagicMock(), payment_id=PAYMENT_ID, status="refunded", result_code=None, result_desc=None
            )
