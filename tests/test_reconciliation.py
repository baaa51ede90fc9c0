"""Tests for the payment reconciliation loop.

Sleep and clock are faked: the loop runs instantly and elapsed time is
exactly the sum of the requested sleeps.
"""

import asyncio
from dataclasses import replace
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from tembea.domain.errors import (
    PaidBookingRejected,
    PaymentDeclined,
    PaymentInitiationFailed,
    PaymentTimeout,
    ReservationError,
    StoreUnavailable,
)
from tembea.domain.payments import PaymentNotFoundError, PaymentState
from tembea.domain.reconciliation import (
    POLL_INTERVAL_SECONDS,
    POLL_TIMEOUT_SECONDS,
    PaymentReconciler,
    ReconciliationInProgress,
    ReconciliationState,
)
from tembea.domain.reservations import Booking
from tembea.mpesa.client import MpesaError
from tembea.mpesa.result_codes import DeclineReason
from tests.helpers import BOOKING_ID, ITEM_ID, PAYMENT_ID

MODULE = "tembea.domain.reconciliation"

PENDING = PaymentState(status="pending", result_code=None, booking_id=None)
COMPLETED = PaymentState(status="completed", result_code="0", booking_id=None)
CANCELLED_BY_USER = PaymentState(status="failed", result_code="1032", booking_id=None)

BOOKING = Booking(
    id=BOOKING_ID,
    item_id=ITEM_ID,
    total_cents=500000,
    currency="KES",
    payment_status="completed",
    visit_date=date(2026, 11, 14),
    payment_id=PAYMENT_ID,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self.on_sleep = None

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            await self.on_sleep()


def _reconciler(clock, *, read_state, finalize=None, gateway=None, **kwargs):
    return PaymentReconciler(
        gateway=gateway,
        read_state=read_state,
        finalize=finalize or MagicMock(return_value=BOOKING),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


class TestPolling:
    def test_defaults_are_two_seconds_and_forty_seconds(self):
        assert POLL_INTERVAL_SECONDS == 2
        assert POLL_TIMEOUT_SECONDS == 40

    def test_completed_payment_is_materialized(self):
        clock = FakeClock()
        finalize = MagicMock(return_value=BOOKING)
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[PENDING, PENDING, COMPLETED]), finalize=finalize
        )

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.COMPLETED
        assert outcome.booking_or_raise() == BOOKING
        assert outcome.polls == 3
        assert clock.sleeps == [2, 2]
        finalize.assert_called_once_with(PAYMENT_ID, correlation_id=None)
        assert reconciler.state(PAYMENT_ID) == ReconciliationState.COMPLETED

    def test_already_consumed_payment_completes(self):
        clock = FakeClock()
        consumed = PaymentState(status="completed", result_code="0", booking_id=BOOKING_ID)
        reconciler = _reconciler(clock, read_state=MagicMock(return_value=consumed))

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.booking == BOOKING
        assert clock.sleeps == []

    def test_user_cancelled_is_declined_without_booking(self):
        clock = FakeClock()
        finalize = MagicMock()
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[PENDING, CANCELLED_BY_USER]), finalize=finalize
        )

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.DECLINED
        assert outcome.reason == DeclineReason.USER_CANCELLED
        finalize.assert_not_called()
        with pytest.raises(PaymentDeclined, match="cancelled by user") as exc_info:
            outcome.booking_or_raise()
        assert exc_info.value.retryable is True
        assert exc_info.value.result_code == "1032"

    def test_timeout_reads_once_more_at_the_boundary(self):
        clock = FakeClock()
        read_times = []

        def read_state(payment_id):
            read_times.append(clock.now)
            return PENDING

        reconciler = _reconciler(clock, read_state=read_state, poll_interval=3, timeout=40)

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.TIMED_OUT
        assert read_times[-1] == 40
        assert clock.sleeps[-1] == 1
        assert sum(clock.sleeps) == 40
        with pytest.raises(PaymentTimeout):
            outcome.booking_or_raise()

    def test_default_window_polls_every_two_seconds(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(return_value=PENDING))

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.TIMED_OUT
        assert outcome.polls == 21
        assert set(clock.sleeps) == {2}

    def test_store_outage_does_not_end_polling(self):
        clock = FakeClock()
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[StoreUnavailable(), PENDING, COMPLETED])
        )

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.COMPLETED
        assert outcome.polls == 3

    def test_paid_booking_rejection_is_surfaced(self):
        clock = FakeClock()
        rejected = PaidBookingRejected(PAYMENT_ID, "2026-11-14 is fully booked")
        reconciler = _reconciler(
            clock, read_state=MagicMock(return_value=COMPLETED), finalize=MagicMock(side_effect=rejected)
        )

        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.COMPLETED
        assert outcome.booking is None
        with pytest.raises(PaidBookingRejected):
            outcome.booking_or_raise()


class TestGatewayQuery:
    def test_lost_callback_is_recovered_by_query(self):
        clock = FakeClock()
        read_state = MagicMock(side_effect=[PENDING, COMPLETED])

        with patch(
            f"{MODULE}.refresh_from_gateway",
            return_value={"status": "completed", "payment_id": PAYMENT_ID},
        ) as refresh:
            reconciler = _reconciler(clock, read_state=read_state, gateway=MagicMock())
            outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.COMPLETED
        assert outcome.polls == 1
        assert clock.sleeps == []
        refresh.assert_called_once()

    def test_query_failure_keeps_polling(self):
        clock = FakeClock()
        read_state = MagicMock(side_effect=[PENDING, COMPLETED])

        with patch(f"{MODULE}.refresh_from_gateway", side_effect=[MpesaError("timeout"), None]):
            reconciler = _reconciler(clock, read_state=read_state, gateway=MagicMock())
            outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.COMPLETED
        assert clock.sleeps == [2]

    def test_in_progress_query_does_not_reread(self):
        clock = FakeClock()
        read_state = MagicMock(side_effect=[PENDING, CANCELLED_BY_USER])

        with patch(
            f"{MODULE}.refresh_from_gateway",
            return_value={"status": "pending", "payment_id": PAYMENT_ID},
        ):
            reconciler = _reconciler(clock, read_state=read_state, gateway=MagicMock())
            outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert outcome.state == ReconciliationState.DECLINED
        assert outcome.polls == 2


class TestCancellation:
    def test_cancel_stops_the_loop_and_leaves_record(self):
        clock = FakeClock()
        read_state = MagicMock(return_value=PENDING)
        finalize = MagicMock()
        reconciler = _reconciler(clock, read_state=read_state, finalize=finalize)
        cancelled = []

        async def on_sleep():
            cancelled.append(reconciler.cancel(PAYMENT_ID))

        clock.on_sleep = on_sleep
        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert cancelled == [True]
        assert outcome.state == ReconciliationState.STOPPED
        assert read_state.call_count == 1
        finalize.assert_not_called()
        assert not reconciler.is_active(PAYMENT_ID)
        with pytest.raises(ReservationError, match="stopped"):
            outcome.booking_or_raise()

    def test_external_cancel_event(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(return_value=PENDING))

        async def main():
            event = asyncio.Event()
            event.set()
            return await reconciler.run(PAYMENT_ID, event)

        outcome = asyncio.run(main())
        assert outcome.state == ReconciliationState.STOPPED
        assert outcome.polls == 0

    def test_cancel_without_loop(self):
        reconciler = _reconciler(FakeClock(), read_state=MagicMock())
        assert reconciler.cancel(PAYMENT_ID) is False
        assert reconciler.state(PAYMENT_ID) == ReconciliationState.IDLE


class TestSingleLoopPerPayment:
    def test_second_run_is_refused_while_active(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(side_effect=[PENDING, COMPLETED]))
        refused = []

        async def on_sleep():
            try:
                await reconciler.run(PAYMENT_ID)
            except ReconciliationInProgress:
                refused.append(True)

        clock.on_sleep = on_sleep
        outcome = asyncio.run(reconciler.run(PAYMENT_ID))

        assert refused == [True]
        assert outcome.state == ReconciliationState.COMPLETED

    def test_wait_joins_the_background_task(self):
        clock = FakeClock()
        read_state = MagicMock(side_effect=[PENDING, COMPLETED])
        reconciler = _reconciler(clock, read_state=read_state)

        async def main():
            task = reconciler.start(PAYMENT_ID)
            with pytest.raises(ReconciliationInProgress):
                reconciler.start(PAYMENT_ID)
            joined = await reconciler.wait(PAYMENT_ID)
            return task, joined

        task, joined = asyncio.run(main())

        assert joined is task.result()
        assert read_state.call_count == 2


class TestRetry:
    def test_retry_prompts_again_and_polls(self):
        clock = FakeClock()
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[PENDING, COMPLETED]), gateway=MagicMock()
        )

        with (
            patch(f"{MODULE}.retry_payment", return_value={"booking_id": None}) as retry,
            patch(f"{MODULE}.refresh_from_gateway", return_value={"status": "pending"}),
        ):
            outcome = asyncio.run(reconciler.retry(PAYMENT_ID))

        retry.assert_called_once()
        assert outcome.booking_or_raise() == BOOKING

    def test_retry_of_materialized_payment_returns_same_booking(self):
        clock = FakeClock()
        read_state = MagicMock()
        existing = replace(BOOKING, created=False)
        finalize = MagicMock(return_value=existing)
        reconciler = _reconciler(clock, read_state=read_state, finalize=finalize, gateway=MagicMock())

        with patch(f"{MODULE}.retry_payment", return_value={"booking_id": BOOKING_ID}):
            outcome = asyncio.run(reconciler.retry(PAYMENT_ID))

        assert outcome.booking.id == BOOKING_ID
        assert outcome.booking.created is False
        read_state.assert_not_called()

    def test_retry_that_finds_payment_completed_materializes_it(self):
        clock = FakeClock()
        finalize = MagicMock(return_value=BOOKING)
        reconciler = _reconciler(
            clock, read_state=MagicMock(return_value=COMPLETED), finalize=finalize, gateway=MagicMock()
        )

        with patch(
            f"{MODULE}.retry_payment",
            return_value={"status": "completed", "payment_id": PAYMENT_ID, "booking_id": None},
        ):
            outcome = asyncio.run(reconciler.retry(PAYMENT_ID))

        assert outcome.booking_or_raise() == BOOKING
        finalize.assert_called_once_with(PAYMENT_ID, correlation_id=None)
        assert clock.sleeps == []

    def test_retry_without_gateway(self):
        reconciler = _reconciler(FakeClock(), read_state=MagicMock())
        with pytest.raises(PaymentInitiationFailed, match="not configured"):
            asyncio.run(reconciler.retry(PAYMENT_ID))

    def test_retry_refused_while_polling(self):
        clock = FakeClock()
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[PENDING, COMPLETED]), gateway=MagicMock()
        )
        refused = []

        async def on_sleep():
            try:
                await reconciler.retry(PAYMENT_ID)
            except ReconciliationInProgress:
                refused.append(True)

        clock.on_sleep = on_sleep
        with patch(f"{MODULE}.refresh_from_gateway", return_value={"status": "pending"}):
            asyncio.run(reconciler.run(PAYMENT_ID))

        assert refused == [True]


class TestTrackedStates:
    def test_oldest_finished_outcomes_are_evicted(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(return_value=COMPLETED), max_tracked=2)

        for payment_id in ("pay-1", "pay-2", "pay-3"):
            asyncio.run(reconciler.run(payment_id))

        assert reconciler.state("pay-1") == ReconciliationState.IDLE
        assert reconciler.state("pay-2") == ReconciliationState.COMPLETED
        assert reconciler.state("pay-3") == ReconciliationState.COMPLETED

    def test_running_loop_is_never_evicted(self):
        clock = FakeClock()
        reconciler = _reconciler(
            clock, read_state=MagicMock(side_effect=[PENDING, COMPLETED, COMPLETED]), max_tracked=1
        )
        seen = []

        async def on_sleep():
            await reconciler.run("pay-2")
            seen.append(reconciler.state(PAYMENT_ID))

        clock.on_sleep = on_sleep
        asyncio.run(reconciler.run(PAYMENT_ID))

        assert seen == [ReconciliationState.POLLING]
        assert reconciler.state(PAYMENT_ID) == ReconciliationState.COMPLETED
        assert reconciler.state("pay-2") == ReconciliationState.IDLE


class TestBackgroundTaskFailure:
    def test_failure_is_retrieved_and_logged(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(side_effect=PaymentNotFoundError(PAYMENT_ID)))

        async def scenario():
            task = reconciler.start(PAYMENT_ID)
            await asyncio.wait([task])
            await asyncio.sleep(0)
            return task

        with patch(f"{MODULE}.logger") as log:
            task = asyncio.run(scenario())

        assert isinstance(task.exception(), PaymentNotFoundError)
        assert log.error.call_args[0][0] == "reconciliation task failed"
        assert log.error.call_args.kwargs["extra"]["extra_fields"] == {
            "payment_id": PAYMENT_ID,
            "error_type": "PaymentNotFoundError",
        }
        assert not reconciler.is_active(PAYMENT_ID)

    def test_cancelled_task_is_not_reported(self):
        clock = FakeClock()
        reconciler = _reconciler(clock, read_state=MagicMock(return_value=PENDING))

        async def scenario():
            task = reconciler.start(PAYMENT_ID)
            await asyncio.sleep(0)
            task.cancel()
            await asyncio.wait([task])
            await asyncio.sleep(0)

        with patch(f"{MODULE}.logger") as log:
            asyncio.run(scenario())

        log.error.assert_not_called()
