"""Tests for the Fapshi client, against an httpx.MockTransport."""
from __future__ import annotations

import json

import httpx
import pytest

from kontrivibe.errors import PaymentProviderError
from kontrivibe.services.fapshi import FapshiClient, PaymentReport, is_valid_phone


def _client(handler) -> FapshiClient:
    return FapshiClient(
        base_url="https://sandbox.fapshi.test/",
        api_user="user-1",
        api_key="key-1",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_direct_pay_sends_credentials_and_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"transId": "abc12345", "dateInitiated": "2026-03-01"})

    result = await _client(handler).direct_pay(
        amount=2500, phone="670000000", user_id="u1", external_id="log-1",
        message="KontriVibe monthly subscription", name="Ama",
    )

    assert result.transaction_id == "abc12345"
    assert result.payment_link is None
    assert seen["url"] == "https://sandbox.fapshi.test/direct-pay"
    assert seen["headers"]["apiuser"] == "user-1"
    assert seen["headers"]["apikey"] == "key-1"
    assert seen["body"] == {
        "amount": 2500, "phone": "670000000", "userId": "u1", "externalId": "log-1",
        "message": "KontriVibe monthly subscription", "name": "Ama",
    }


@pytest.mark.asyncio
async def test_initiate_pay_returns_link():
    def handler(request):
        assert request.url.path == "/initiate-pay"
        return httpx.Response(200, json={"transId": "lnk98765", "link": "https://pay/lnk98765"})

    result = await _client(handler).initiate_pay(
        amount=6500, user_id="u1", external_id="log-1",
        redirect_url="https://app/return", message="m",
    )
    assert result.transaction_id == "lnk98765"
    assert result.payment_link == "https://pay/lnk98765"


@pytest.mark.asyncio
async def test_provider_rejection_is_not_retryable():
    def handler(request):
        return httpx.Response(400, json={"message": "Insufficient balance"})

    with pytest.raises(PaymentProviderError) as exc:
        await _client(handler).direct_pay(2500, "670000000", "u1", "log-1", "m")
    assert exc.value.message == "Insufficient balance"
    assert exc.value.provider_status == 400
    assert exc.value.retryable is False
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(PaymentProviderError) as exc:
        await _client(handler).payment_status("abc12345")
    assert exc.value.retryable is True
    assert exc.value.status_code == 504


@pytest.mark.asyncio
async def test_missing_transaction_id_in_response():
    with pytest.raises(PaymentProviderError):
        await _client(lambda r: httpx.Response(200, json={})).direct_pay(2500, "670000000", "u1", "l", "m")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [99, 0, 2500.0, None])
async def test_amount_validated_before_any_call(amount):
    def handler(request):
        raise AssertionError("should not reach the provider")

    with pytest.raises(PaymentProviderError):
        await _client(handler).direct_pay(amount, "670000000", "u1", "l", "m")


@pytest.mark.asyncio
@pytest.mark.parametrize("trans_id", ["short", "abc-12345", "abcdefghijk", ""])
async def test_transaction_id_format_validated(trans_id):
    def handler(request):
        raise AssertionError("should not reach the provider")

    with pytest.raises(PaymentProviderError):
        await _client(handler).payment_status(trans_id)


@pytest.mark.asyncio
async def test_payment_status_parses_report():
    def handler(request):
        assert request.url.path == "/payment-status/abc12345"
        return httpx.Response(200, json={
            "transId": "abc12345", "status": "SUCCESSFUL", "medium": "orange money",
            "amount": 2500, "financialTransId": "FT-1", "payerName": "Ama",
            "dateConfirmed": "2026-03-01T10:00:00Z",
        })

    report = await _client(handler).payment_status("abc12345")
    assert report.status == "SUCCESSFUL"
    assert report.medium == "orange money"
    assert report.amount == 2500
    assert report.financial_transaction_id == "FT-1"


@pytest.mark.asyncio
async def test_expire_pay():
    def handler(request):
        assert request.url.path == "/expire-pay"
        assert json.loads(request.content) == {"transId": "abc12345"}
        return httpx.Response(200, json={"status": "EXPIRED"})

    data = await _client(handler).expire_pay("abc12345")
    assert data["status"] == "EXPIRED"


def test_report_from_partial_payload():
    report = PaymentReport.from_payload({"transId": "abc12345", "amount": "oops"})
    assert report.transaction_id == "abc12345"
    assert report.status == ""
    assert report.amount is None


@pytest.mark.parametrize("phone,ok", [
    ("670000000", True), ("699999999", True), ("770000000", False),
    ("67000000", False), ("6700000000", False), ("+237670000000", False), (670000000, False),
])
def test_phone_format(phone, ok):
    assert is_valid_phone(phone) is ok
