"""
Fapshi Payment Provider Client
---
Thin async wrapper over the Fapshi mobile-money API.

Operations:
- POST /initiate-pay       — hosted payment link (redirect flow)
- POST /direct-pay         — charge a mobile-money phone number directly
- GET  /payment-status/:id — poll a transaction's status
- POST /expire-pay         — expire a pending transaction

Every failure raises PaymentProviderError. Timeouts are flagged retryable:
the provider may still have accepted the request, so callers must not treat
them as a definitive failure. No retries happen here.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from config.settings import settings
from kontrivibe.errors import PaymentProviderError

logger = logging.getLogger(__name__)

MIN_AMOUNT = 100  # XAF
_PHONE_RE = re.compile(r"^6\d{8}$")
_TRANS_ID_RE = re.compile(r"^[a-zA-Z0-9]{8,10}$")


@dataclass(frozen=True)
class PaymentInitiation:
    transaction_id: str
    payment_link: Optional[str] = None
    date_initiated: Optional[str] = None


@dataclass(frozen=True)
class PaymentReport:
    """A transaction status as reported by Fapshi (webhook body or status poll)."""
    transaction_id: str
    status: str
    financial_transaction_id: Optional[str] = None
    medium: Optional[str] = None
    date_confirmed: Optional[str] = None
    amount: Optional[int] = None
    payer_name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PaymentReport":
        amount = payload.get("amount")
        try:
            amount = int(amount) if amount is not None else None
        except (TypeError, ValueError):
            amount = None
        return cls(
            transaction_id=str(payload.get("transId") or ""),
            status=str(payload.get("status") or ""),
            financial_transaction_id=payload.get("financialTransId"),
            medium=payload.get("medium"),
            date_confirmed=payload.get("dateConfirmed"),
            amount=amount,
            payer_name=payload.get("payerName"),
            email=payload.get("email"),
        )


def _validate_amount(amount: Any) -> None:
    if amount is None:
        raise PaymentProviderError("Amount required", 400)
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise PaymentProviderError("Amount must be integer", 400)
    if amount < MIN_AMOUNT:
        raise PaymentProviderError(f"Amount cannot be less than {MIN_AMOUNT} XAF", 400)


def _validate_trans_id(trans_id: Any) -> None:
    if not trans_id or not isinstance(trans_id, str):
        raise PaymentProviderError("Invalid transaction ID format", 400)
    if not _TRANS_ID_RE.match(trans_id):
        raise PaymentProviderError("Invalid transaction ID", 400)


def is_valid_phone(phone: Any) -> bool:
    return isinstance(phone, str) and bool(_PHONE_RE.match(phone))


class FapshiClient:
    """Async Fapshi API client. One short-lived httpx client per call."""

    def __init__(
        self,
        base_url: str,
        api_user: str,
        api_key: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"apiuser": api_user, "apikey": api_key}
        self._transport = transport

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=self._headers, json=json)
        except httpx.TimeoutException:
            logger.warning("Fapshi %s %s timed out after %.1fs", method, path, self.timeout)
            raise PaymentProviderError("Payment provider timed out", retryable=True)
        except httpx.HTTPError as exc:
            logger.error("Fapshi %s %s transport error: %s", method, path, exc)
            raise PaymentProviderError(f"Payment provider unreachable: {exc}", retryable=True)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if resp.status_code >= 400:
            message = data.get("message") or f"Payment provider error ({resp.status_code})"
            logger.warning("Fapshi %s %s failed: %s %s", method, path, resp.status_code, message)
            raise PaymentProviderError(message, resp.status_code)

        data["statusCode"] = resp.status_code
        return data

    async def initiate_pay(
        self,
        amount: int,
        user_id: str,
        external_id: str,
        redirect_url: str,
        message: str,
        email: str | None = None,
    ) -> PaymentInitiation:
        """Create a hosted payment link."""
        _validate_amount(amount)
        body = {
            "amount": amount,
            "userId": user_id,
            "externalId": external_id,
            "redirectUrl": redirect_url,
            "message": message,
        }
        if email:
            body["email"] = email
        data = await self._request("POST", "/initiate-pay", json=body)
        trans_id = data.get("transId")
        if not trans_id:
            raise PaymentProviderError("Payment provider returned no transaction id", data.get("statusCode"))
        return PaymentInitiation(
            transaction_id=trans_id,
            payment_link=data.get("link"),
            date_initiated=data.get("dateInitiated"),
        )

    async def direct_pay(
        self,
        amount: int,
        phone: str,
        user_id: str,
        external_id: str,
        message: str,
        name: str | None = None,
        email: str | None = None,
    ) -> PaymentInitiation:
        """Push a charge request straight to the payer's phone."""
        _validate_amount(amount)
        if not phone:
            raise PaymentProviderError("Phone number required", 400)
        if not isinstance(phone, str):
            raise PaymentProviderError("Phone must be string", 400)
        if not is_valid_phone(phone):
            raise PaymentProviderError("Invalid phone number format", 400)
        body = {
            "amount": amount,
            "phone": phone,
            "userId": user_id,
            "externalId": external_id,
            "message": message,
        }
        if name:
            body["name"] = name
        if email:
            body["email"] = email
        data = await self._request("POST", "/direct-pay", json=body)
        trans_id = data.get("transId")
        if not trans_id:
            raise PaymentProviderError("Payment provider returned no transaction id", data.get("statusCode"))
        return PaymentInitiation(transaction_id=trans_id, date_initiated=data.get("dateInitiated"))

    async def payment_status(self, trans_id: str) -> PaymentReport:
        _validate_trans_id(trans_id)
        data = await self._request("GET", f"/payment-status/{trans_id}")
        data.setdefault("transId", trans_id)
        return PaymentReport.from_payload(data)

    async def expire_pay(self, trans_id: str) -> dict:
        _validate_trans_id(trans_id)
        return await self._request("POST", "/expire-pay", json={"transId": trans_id})


def get_payment_provider() -> FapshiClient:
    """FastAPI dependency — provider client built from settings."""
    return FapshiClient(
        base_url=settings.FAPSHI_BASE_URL,
        api_user=settings.FAPSHI_API_USER,
        api_key=settings.FAPSHI_API_KEY,
        timeout=settings.FAPSHI_TIMEOUT_SECONDS,
    )
