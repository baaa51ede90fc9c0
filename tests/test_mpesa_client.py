"""Tests for the Daraja M-Pesa Express client."""

import base64
from unittest.mock import MagicMock

import pytest
import requests

from tembea.mpesa.client import (
    SANDBOX_BASE_URL,
    MpesaClient,
    MpesaError,
    normalize_phone,
    stk_password,
)

CREDENTIALS = dict(
    consumer_key="key",
    consumer_secret="secret",
    passkey="passkey",
    shortcode="174379",
    callback_url="https://tembea.example.com/webhooks/mpesa",
)


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    return resp


def _client(session, now=None):
    clock = MagicMock(return_value=0.0) if now is None else now
    return MpesaClient(session=session, clock=clock, **CREDENTIALS)


def _session(*posts, token_ttl=3599):
    session = MagicMock()
    session.get.return_value = _response(body={"access_token": "tok", "expires_in": str(token_ttl)})
    session.post.side_effect = list(posts)
    return session


ACCEPTED_PUSH = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
}


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "712345678", "254712345678", "+254712345678", "+2540712345678", "0712 345-678"],
    )
    def test_safaricom_forms(self, raw):
        assert normalize_phone(raw) == "254712345678"

    def test_airtel_prefix(self):
        assert normalize_phone("0110123456") == "254110123456"

    @pytest.mark.parametrize("raw", ["", "12345", "0812345678", "2557123456789"])
    def test_rejected(self, raw):
        with pytest.raises(ValueError):
            normalize_phone(raw)


class TestStkPush:
    def test_payload(self):
        session = _session(_response(body=ACCEPTED_PUSH))
        result = _client(session).stk_push(
            phone_number="0712345678",
            amount=5000,
            account_reference="Hell's Gate day trip",
            transaction_desc="Booking for Hell's Gate",
        )

        assert result.checkout_request_id == "ws_CO_191220191020363925"
        assert result.merchant_request_id == "29115-34620561-1"

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == SANDBOX_BASE_URL + "/mpesa/stkpush/v1/processrequest"
        assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
        assert payload["Amount"] == 5000
        assert payload["AccountReference"] == "Hell's Gate "
        assert len(payload["TransactionDesc"]) == 13
        assert payload["Password"] == stk_password("174379", "passkey", payload["Timestamp"])
        assert base64.b64decode(payload["Password"]).decode() == "174379passkey" + payload["Timestamp"]

    def test_token_is_cached(self):
        session = _session(_response(body=ACCEPTED_PUSH), _response(body=ACCEPTED_PUSH))
        client = _client(session)
        for _ in range(2):
            client.stk_push(phone_number="0712345678", amount=1, account_reference="T", transaction_desc="B")

        assert session.get.call_count == 1

    def test_token_refreshed_after_expiry(self):
        clock = MagicMock(side_effect=[0.0, 4000.0, 4000.0])
        session = _session(_response(body=ACCEPTED_PUSH), _response(body=ACCEPTED_PUSH))
        client = _client(session, now=clock)
        for _ in range(2):
            client.stk_push(phone_number="0712345678", amount=1, account_reference="T", transaction_desc="B")

        assert session.get.call_count == 2

    def test_rejected_push(self):
        session = _session(
            _response(status_code=400, body={"errorCode": "400.002.02", "errorMessage": "Bad Request"})
        )
        with pytest.raises(MpesaError, match="Bad Request") as exc_info:
            _client(session).stk_push(
                phone_number="0712345678", amount=1, account_reference="T", transaction_desc="B"
            )
        assert exc_info.value.status_code == 400

    def test_transport_error(self):
        session = _session(requests.ConnectionError("down"))
        with pytest.raises(MpesaError, match="ConnectionError"):
            _client(session).stk_push(
                phone_number="0712345678", amount=1, account_reference="T", transaction_desc="B"
            )

    def test_oauth_rejected(self):
        session = MagicMock()
        session.get.return_value = _response(status_code=401)
        with pytest.raises(MpesaError, match="OAuth"):
            _client(session).stk_push(
                phone_number="0712345678", amount=1, account_reference="T", transaction_desc="B"
            )
        session.post.assert_not_called()


class TestStkQuery:
    def test_in_progress(self):
        session = _session(
            _response(
                status_code=500,
                body={"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
            )
        )
        result = _client(session).stk_query("ws_CO_1")
        assert result.in_progress
        assert result.result_code is None

    def test_final_result(self):
        session = _session(
            _response(body={"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"})
        )
        result = _client(session).stk_query("ws_CO_1")
        assert not result.in_progress
        assert result.result_code == "1032"
        assert session.post.call_args.kwargs["json"]["CheckoutRequestID"] == "ws_CO_1"

    def test_integer_result_code(self):
        session = _session(_response(body={"ResultCode": 0, "ResultDesc": "ok"}))
        assert _client(session).stk_query("ws_CO_1").result_code == "0"

    def test_query_failure(self):
        session = _session(_response(status_code=404, body={"errorMessage": "Not found"}))
        with pytest.raises(MpesaError):
            _client(session).stk_query("ws_CO_1")


def test_missing_credentials(monkeypatch):
    for name in (
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_PASSKEY",
        "MPESA_SHORTCODE",
        "MPESA_CALLBACK_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError, match="MPESA_PASSKEY"):
        MpesaClient(consumer_key="key", consumer_secret="secret")


def test_production_environment(monkeypatch):
    monkeypatch.setenv("MPESA_ENV", "production")
    client = MpesaClient(session=MagicMock(), **CREDENTIALS)
    assert client.base_url == "https://api.safaricom.co.ke"
