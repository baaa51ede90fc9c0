"""M-Pesa Express (STK push) result codes.

Daraja reports the outcome of an STK push as a ResultCode string. Only "0"
means the payer approved the charge; everything else is mapped onto a small
fixed vocabulary of decline reasons shown to the payer.
"""

from __future__ import annotations

from enum import Enum

RESULT_SUCCESS = "0"


class DeclineReason(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WRONG_PIN = "wrong_pin"
    USER_CANCELLED = "user_cancelled"
    DEVICE_TIMEOUT = "device_timeout"
    SUBSCRIBER_BUSY = "subscriber_busy"
    INVALID_REQUEST = "invalid_request"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    DeclineReason.INSUFFICIENT_FUNDS: "insufficient funds",
    DeclineReason.WRONG_PIN: "wrong PIN",
    DeclineReason.USER_CANCELLED: "cancelled by user",
    DeclineReason.DEVICE_TIMEOUT: "timed out on the payer's phone",
    DeclineReason.SUBSCRIBER_BUSY: "subscriber busy",
    DeclineReason.INVALID_REQUEST: "invalid request",
}

_CODES = {
    "1": DeclineReason.INSUFFICIENT_FUNDS,
    "1025": DeclineReason.WRONG_PIN,
    "1032": DeclineReason.USER_CANCELLED,
    "1037": DeclineReason.DEVICE_TIMEOUT,
    "1001": DeclineReason.SUBSCRIBER_BUSY,
    "2001": DeclineReason.INVALID_REQUEST,
}


def is_success(result_code: str | int | None) -> bool:
    return result_code is not None and str(result_code) == RESULT_SUCCESS


def decline_reason(result_code: str | int | None) -> DeclineReason:
    """Map a non-success result code to a decline reason.

    Unknown codes are reported as an invalid request.
    """
    if result_code is None:
        return DeclineReason.INVALID_REQUEST
    return _CODES.get(str(result_code), DeclineReason.INVALID_REQUEST)
