"""Thin wrapper around the Safaricom Daraja M-Pesa Express API.

Purpose:
- Encapsulate HTTP calls so domain code never builds Daraja payloads.
- Cache the OAuth access token until shortly before it expires.
- Never log phone numbers, passwords or full gateway payloads (only IDs and codes).
"""

from __future__ import annotations

import base64
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import requests

from tembea.infra.time import local_tz

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja tokens live for 3599 s; refresh a little early.
TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3599
REQUEST_TIMEOUT_SECONDS = 30

# Returned by the query endpoint while the payer has not answered yet.
QUERY_IN_PROGRESS_ERROR_CODE = "500.001.1001"

ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13

_KENYAN_MOBILE = re.compile(r"^254[17]\d{8}$")


class MpesaError(Exception):
    """Gateway call failed (transport error, HTTP error or rejected request)."""

    def __init__(self, message: str, *, status_code: int | None = None, response_code: str | None = None):
        self.status_code = status_code
        self.response_code = response_code
        super().__init__(message)


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str | None
    response_description: str | None = None


@dataclass(frozen=True)
class StkQueryResult:
    """Outcome of an STK status query.

    result_code is None while the transaction is still being processed.
    """

    result_code: str | None
    result_desc: str | None

    @property
    def in_progress(self) -> bool:
        return self.result_code is None


def normalize_phone(phone: str) -> str:
    """Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.

    Accepts 07.., 01.., 2547.., +2547.., +25407.. and bare 7.. forms.

    Raises:
        ValueError: If the number is not a Kenyan mobile number.
    """
    digits = re.sub(r"[\s\-()]", "", phone or "")
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("2540"):
        digits = "254" + digits[4:]
    elif digits.startswith("0"):
        digits = "254" + digits[1:]
    elif not digits.startswith("254"):
        digits = "254" + digits
    if not _KENYAN_MOBILE.match(digits):
        raise ValueError("Invalid Kenyan phone number format")
    return digits


def stk_timestamp(now: datetime | None = None) -> str:
    """Daraja timestamp (YYYYMMDDHHMMSS, East Africa Time)."""
    now = now or datetime.now(local_tz())
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaClient:
    """Client for STK push (M-Pesa Express) and STK status queries.

    Usage:
        client = MpesaClient()  # reads MPESA_* from env
        push = client.stk_push(
            phone_number="254712345678",
            amount=1500,
            account_reference="TEMBEA",
            transaction_desc="Booking",
        )
        status = client.stk_query(push.checkout_request_id)
    """

    def __init__(
        self,
        *,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        passkey: str | None = None,
        shortcode: str | None = None,
        callback_url: str | None = None,
        environment: str | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Raises:
            RuntimeError: If any credential is missing from both arguments
                and environment.
        """
        self._consumer_key = consumer_key or os.environ.get("MPESA_CONSUMER_KEY")
        self._consumer_secret = consumer_secret or os.environ.get("MPESA_CONSUMER_SECRET")
        self._passkey = passkey or os.environ.get("MPESA_PASSKEY")
        self._shortcode = shortcode or os.environ.get("MPESA_SHORTCODE")
        self._callback_url = callback_url or os.environ.get("MPESA_CALLBACK_URL")

        missing = [
            name
            for name, value in (
                ("MPESA_CONSUMER_KEY", self._consumer_key),
                ("MPESA_CONSUMER_SECRET", self._consumer_secret),
                ("MPESA_PASSKEY", self._passkey),
                ("MPESA_SHORTCODE", self._shortcode),
                ("MPESA_CALLBACK_URL", self._callback_url),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"M-Pesa credentials not configured: {', '.join(missing)}")

        env = (environment or os.environ.get("MPESA_ENV") or "sandbox").lower()
        self.base_url = PRODUCTION_BASE_URL if env == "production" else SANDBOX_BASE_URL

        self._session = session or requests.Session()
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ── OAuth ──────────────────────────────────────────────────────────

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            try:
                resp = self._session.get(
                    self.base_url + TOKEN_PATH,
                    auth=(self._consumer_key, self._consumer_secret),
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
            except requests.RequestException as exc:
                raise MpesaError(f"OAuth token request failed: {type(exc).__name__}") from exc

            if resp.status_code != 200:
                raise MpesaError("OAuth token request rejected", status_code=resp.status_code)

            body = _json_or_empty(resp)
            token = body.get("access_token")
            if not token:
                raise MpesaError("OAuth token response missing access_token")

            ttl = int(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
            self._token = token
            self._token_expires_at = self._clock() + max(ttl - TOKEN_REFRESH_MARGIN_SECONDS, 0)
            return token

    def _post(self, path: str, payload: dict[str, Any]) -> requests.Response:
        try:
            return self._session.post(
                self.base_url + path,
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token()}"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise MpesaError(f"M-Pesa request failed: {type(exc).__name__}") from exc

    # ── STK ────────────────────────────────────────────────────────────

    def stk_push(
        self,
        *,
        phone_number: str,
        amount: int,
        account_reference: str,
        transaction_desc: str,
        correlation_id: str | None = None,
    ) -> StkPushResult:
        """Ask the payer's handset to authorize a charge.

        Args:
            phone_number: Payer phone, normalized to 2547XXXXXXXX.
            amount: Whole shillings (Daraja does not accept fractions).
            account_reference: Shown on the payer's prompt (max 12 chars).
            transaction_desc: Shown on the payer's prompt (max 13 chars).
            correlation_id: Optional correlation ID for logging.

        Returns:
            StkPushResult with the session reference (CheckoutRequestID).

        Raises:
            MpesaError: If the gateway did not accept the request.
        """
        timestamp = stk_timestamp()
        phone = normalize_phone(phone_number)
        payload = {
            "BusinessShortCode": self._shortcode,
            "Password": stk_password(self._shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": self._shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self._callback_url,
            "AccountReference": account_reference[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": transaction_desc[:TRANSACTION_DESC_MAX_LENGTH],
        }

        resp = self._post(STK_PUSH_PATH, payload)
        body = _json_or_empty(resp)
        response_code = _as_code(body.get("ResponseCode"))
        checkout_request_id = body.get("CheckoutRequestID")

        if resp.status_code != 200 or response_code != "0" or not checkout_request_id:
            error_code = response_code or body.get("errorCode")
            logger.warning(
                "mpesa_stk_push_rejected",
                extra={
                    "extra_fields": {
                        "http_status": resp.status_code,
                        "response_code": error_code,
                        "correlation_id": correlation_id,
                    }
                },
            )
            raise MpesaError(
                body.get("ResponseDescription") or body.get("errorMessage") or "STK push failed",
                status_code=resp.status_code,
                response_code=response_code,
            )

        logger.info(
            "mpesa_stk_push_accepted",
            extra={
                "extra_fields": {
                    "checkout_request_id": checkout_request_id,
                    "correlation_id": correlation_id,
                }
            },
        )
        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=body.get("MerchantRequestID"),
            response_description=body.get("ResponseDescription"),
        )

    def stk_query(self, checkout_request_id: str) -> StkQueryResult:
        """Query the status of an STK session.

        Raises:
            MpesaError: If the query itself failed.
        """
        timestamp = stk_timestamp()
        payload = {
            "BusinessShortCode": self._shortcode,
            "Password": stk_password(self._shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        resp = self._post(STK_QUERY_PATH, payload)
        body = _json_or_empty(resp)

        if body.get("errorCode") == QUERY_IN_PROGRESS_ERROR_CODE:
            return StkQueryResult(result_code=None, result_desc=body.get("errorMessage"))

        result_code = _as_code(body.get("ResultCode"))
        if resp.status_code != 200 or result_code is None:
            raise MpesaError(
                body.get("errorMessage") or "STK query failed",
                status_code=resp.status_code,
            )
        return StkQueryResult(result_code=result_code, result_desc=body.get("ResultDesc"))


def _json_or_empty(resp: requests.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _as_code(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


_client: MpesaClient | None = None


def get_mpesa_client() -> MpesaClient:
    """Get the process-wide client, built from environment on first use."""
    global _client
    if _client is None:
        _client = MpesaClient()
    return _client
