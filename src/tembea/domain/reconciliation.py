"""Payment reconciliation loop.

Drives a pending M-Pesa payment to a final outcome within a bounded window:

    IDLE -> INITIATED -> POLLING -> COMPLETED | DECLINED | TIMED_OUT
                                 -> STOPPED (cancelled by the caller)

Each poll reads the payment record (written by the gateway callback). While
the record is still pending, the gateway is also queried directly so a lost
callback does not stall the payer. A completed payment is materialized into
a booking; the loop never holds locks or capacity while waiting.

At most one loop runs per payment id in a process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from tembea.domain.errors import (
    PaidBookingRejected,
    PaymentDeclined,
    PaymentInitiationFailed,
    PaymentTimeout,
    ReservationError,
    StoreUnavailable,
)
from tembea.domain.payments import (
    PaymentGateway,
    PaymentState,
    read_payment_state,
    refresh_from_gateway,
    retry_payment,
)
from tembea.domain.reservations import Booking, finalize_paid_reservation
from tembea.mpesa.client import MpesaError
from tembea.mpesa.result_codes import DeclineReason, decline_reason

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2
POLL_TIMEOUT_SECONDS = 40

# Finished outcomes kept for state(); older ones fall back to IDLE.
MAX_TRACKED_PAYMENTS = 1000


class ReconciliationState(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    POLLING = "polling"
    COMPLETED = "completed"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


class ReconciliationInProgress(Exception):
    """A loop is already running for this payment."""

    def __init__(self, payment_id: str) -> None:
        self.payment_id = payment_id
        super().__init__(f"Reconciliation already running for payment {payment_id}")


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment_id: str
    state: ReconciliationState
    booking: Booking | None = None
    result_code: str | None = None
    reason: DeclineReason | None = None
    # Set when the payment completed but the booking could not be written.
    error: ReservationError | None = None
    polls: int = 0

    def booking_or_raise(self) -> Booking:
        """Return the booking, or raise the error matching the outcome.

        Raises:
            PaymentDeclined: The payer declined or the charge failed.
            PaymentTimeout: No final status within the polling window.
            PaidBookingRejected: Charged, but capacity was taken meanwhile.
            ReservationError: If the loop was stopped before an outcome.
        """
        if self.error is not None:
            raise self.error
        if self.state == ReconciliationState.COMPLETED and self.booking is not None:
            return self.booking
        if self.state == ReconciliationState.DECLINED:
            raise PaymentDeclined(
                self.reason or DeclineReason.INVALID_REQUEST,
                result_code=self.result_code,
                payment_id=self.payment_id,
            )
        if self.state == ReconciliationState.TIMED_OUT:
            raise PaymentTimeout(self.payment_id)
        raise ReservationError("Payment reconciliation was stopped")


class PaymentReconciler:
    """Runs and tracks reconciliation loops.

    Reads, gateway queries and the booking commit are blocking calls and run
    in worker threads; sleep and clock are injectable for tests.
    """

    def __init__(
        self,
        *,
        gateway: PaymentGateway | None = None,
        read_state: Callable[[str], PaymentState] = read_payment_state,
        finalize: Callable[..., Booking] = finalize_paid_reservation,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        max_tracked: int = MAX_TRACKED_PAYMENTS,
    ) -> None:
        self._gateway = gateway
        self._read_state = read_state
        self._finalize = finalize
        self._sleep = sleep
        self._clock = clock
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._active: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._max_tracked = max_tracked
        self._states: OrderedDict[str, ReconciliationState] = OrderedDict()

    # ── Introspection ──────────────────────────────────────────────────

    def state(self, payment_id: str) -> ReconciliationState:
        return self._states.get(payment_id, ReconciliationState.IDLE)

    def is_active(self, payment_id: str) -> bool:
        return payment_id in self._active

    def _set_state(self, payment_id: str, state: ReconciliationState) -> None:
        """Record a state, evicting the oldest finished entries past max_tracked."""
        self._states[payment_id] = state
        self._states.move_to_end(payment_id)
        excess = len(self._states) - self._max_tracked
        if excess > 0:
            finished = [pid for pid in self._states if pid not in self._active]
            for pid in finished[:excess]:
                del self._states[pid]

    # ── Loop ───────────────────────────────────────────────────────────

    async def run(
        self,
        payment_id: str,
        cancel_event: asyncio.Event | None = None,
        *,
        correlation_id: str | None = None,
    ) -> ReconciliationOutcome:
        """Poll the payment until it completes, is declined or times out.

        Cancelling (via cancel_event or cancel()) stops polling and leaves
        the payment record as it is.

        Raises:
            ReconciliationInProgress: If a loop is already running for it.
        """
        if payment_id in self._active:
            raise ReconciliationInProgress(payment_id)
        cancel_event = cancel_event or asyncio.Event()
        self._active[payment_id] = cancel_event
        self._set_state(payment_id, ReconciliationState.INITIATED)

        try:
            outcome = await self._poll(payment_id, cancel_event, correlation_id)
        finally:
            self._active.pop(payment_id, None)

        self._set_state(payment_id, outcome.state)
        logger.info(
            "reconciliation finished",
            extra={
                "extra_fields": {
                    "payment_id": payment_id,
                    "state": outcome.state.value,
                    "result_code": outcome.result_code,
                    "polls": outcome.polls,
                    "correlation_id": correlation_id,
                }
            },
        )
        return outcome

    async def _poll(
        self,
        payment_id: str,
        cancel_event: asyncio.Event,
        correlation_id: str | None,
    ) -> ReconciliationOutcome:
        started = self._clock()
        polls = 0

        while True:
            if cancel_event.is_set():
                return ReconciliationOutcome(payment_id, ReconciliationState.STOPPED, polls=polls)

            state = await self._read(payment_id)
            polls += 1
            self._set_state(payment_id, ReconciliationState.POLLING)

            if state is not None and state.status == "pending" and self._gateway is not None:
                if await self._query_gateway(payment_id, correlation_id):
                    state = await self._read(payment_id)

            if state is not None:
                if state.booking_id is not None or state.status == "completed":
                    return await self._complete(payment_id, state, polls, correlation_id)
                if state.status == "failed":
                    return ReconciliationOutcome(
                        payment_id,
                        ReconciliationState.DECLINED,
                        result_code=state.result_code,
                        reason=decline_reason(state.result_code),
                        polls=polls,
                    )

            elapsed = self._clock() - started
            if elapsed >= self._timeout:
                return ReconciliationOutcome(payment_id, ReconciliationState.TIMED_OUT, polls=polls)

            await self._sleep(min(self._poll_interval, self._timeout - elapsed))

    async def _read(self, payment_id: str) -> PaymentState | None:
        try:
            return await asyncio.to_thread(self._read_state, payment_id)
        except StoreUnavailable:
            # Transient store outage: nothing is decided on it, keep polling.
            logger.warning(
                "payment state read failed",
                extra={"extra_fields": {"payment_id": payment_id}},
            )
            return None

    async def _query_gateway(self, payment_id: str, correlation_id: str | None) -> bool:
        """Ask the gateway directly. Returns True if the record changed."""
        try:
            result = await asyncio.to_thread(
                refresh_from_gateway,
                payment_id,
                gateway=self._gateway,
                correlation_id=correlation_id,
            )
        except (MpesaError, StoreUnavailable) as exc:
            logger.warning(
                "gateway status query failed",
                extra={
                    "extra_fields": {
                        "payment_id": payment_id,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            return False
        return result.get("status") in ("completed", "failed")

    async def _complete(
        self,
        payment_id: str,
        state: PaymentState,
        polls: int,
        correlation_id: str | None,
    ) -> ReconciliationOutcome:
        try:
            booking = await asyncio.to_thread(
                self._finalize, payment_id, correlation_id=correlation_id
            )
        except PaidBookingRejected as exc:
            return ReconciliationOutcome(
                payment_id,
                ReconciliationState.COMPLETED,
                result_code=state.result_code,
                error=exc,
                polls=polls,
            )
        return ReconciliationOutcome(
            payment_id,
            ReconciliationState.COMPLETED,
            booking=booking,
            result_code=state.result_code,
            polls=polls,
        )

    # ── Background tasks ───────────────────────────────────────────────

    def start(self, payment_id: str, *, correlation_id: str | None = None) -> asyncio.Task:
        """Run the loop as a background task (must be called inside a running loop).

        Raises:
            ReconciliationInProgress: If a loop is already running for it.
        """
        if payment_id in self._active or payment_id in self._tasks:
            raise ReconciliationInProgress(payment_id)
        task = asyncio.get_running_loop().create_task(
            self.run(payment_id, correlation_id=correlation_id)
        )
        self._tasks[payment_id] = task
        task.add_done_callback(lambda t: self._on_task_done(payment_id, t))
        return task

    def _on_task_done(self, payment_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(payment_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "reconciliation task failed",
                extra={
                    "extra_fields": {
                        "payment_id": payment_id,
                        "error_type": type(exc).__name__,
                    }
                },
                exc_info=exc,
            )

    async def wait(self, payment_id: str, *, correlation_id: str | None = None) -> ReconciliationOutcome:
        """Await the running loop for a payment, or run a new one."""
        task = self._tasks.get(payment_id)
        if task is not None:
            return await asyncio.shield(task)
        return await self.run(payment_id, correlation_id=correlation_id)

    def cancel(self, payment_id: str) -> bool:
        """Stop the loop for a payment. Returns False if none was running."""
        event = self._active.get(payment_id)
        if event is None:
            return False
        event.set()
        return True

    async def retry(self, payment_id: str, *, correlation_id: str | None = None) -> ReconciliationOutcome:
        """Re-issue the STK prompt and poll again.

        Never creates a second booking: a payment already materialized
        returns its existing booking.

        Raises:
            ReconciliationInProgress: If a loop is still running for it.
            PaymentInitiationFailed: If the gateway refused the new push.
        """
        if payment_id in self._active:
            raise ReconciliationInProgress(payment_id)
        if self._gateway is None:
            raise PaymentInitiationFailed("Payment gateway is not configured")

        retried = await asyncio.to_thread(
            retry_payment,
            payment_id,
            gateway=self._gateway,
            correlation_id=correlation_id,
        )
        if retried.get("booking_id"):
            booking = await asyncio.to_thread(
                self._finalize, payment_id, correlation_id=correlation_id
            )
            self._set_state(payment_id, ReconciliationState.COMPLETED)
            return ReconciliationOutcome(payment_id, ReconciliationState.COMPLETED, booking=booking)

        return await self.run(payment_id, correlation_id=correlation_id)
