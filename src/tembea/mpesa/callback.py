"""STK callback payload parsing.

Daraja posts the outcome of an STK session to the callback URL:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...", "CheckoutRequestID": "...",
        "ResultCode": 0, "ResultDesc": "...",
        "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "..."}, ...]}
    }}}

CallbackMetadata is only present on success.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tembea.mpesa.result_codes import is_success


class InvalidCallbackError(Exception):
    """Callback body does not have the STK callback shape."""


@dataclass(frozen=True)
class StkCallback:
    checkout_request_id: str
    merchant_request_id: str | None
    result_code: str
    result_desc: str | None
    metadata: dict[str, Any]

    @property
    def succeeded(self) -> bool:
        return is_success(self.result_code)

    @property
    def receipt_number(self) -> str | None:
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None


def parse_stk_callback(body: Any) -> StkCallback:
    """Parse a Daraja STK callback body.

    Raises:
        InvalidCallbackError: If required fields are missing.
    """
    if not isinstance(body, dict):
        raise InvalidCallbackError("callback body must be an object")
    stk = (body.get("Body") or {}).get("stkCallback")
    if not isinstance(stk, dict):
        raise InvalidCallbackError("missing Body.stkCallback")

    checkout_request_id = stk.get("CheckoutRequestID")
    result_code = stk.get("ResultCode")
    if not checkout_request_id or result_code is None:
        raise InvalidCallbackError("missing CheckoutRequestID or ResultCode")

    items = (stk.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {
        item["Name"]: item.get("Value")
        for item in items
        if isinstance(item, dict) and "Name" in item
    }

    return StkCallback(
        checkout_request_id=str(checkout_request_id),
        merchant_request_id=stk.get("MerchantRequestID"),
        result_code=str(result_code),
        result_desc=stk.get("ResultDesc"),
        metadata=metadata,
    )
