"""Tests for the subscriptions API: create, verify, status, cancel."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from conftest import get_test_session
from kontrivibe.db.notification_tables import NotificationRow
from kontrivibe.db.subscription_tables import PaymentLogRow
from kontrivibe.db.tables import utcnow
from kontrivibe.db.user_tables import UserRow
from kontrivibe.errors import PaymentProviderError
from kontrivibe.services.fapshi import PaymentReport

_DIRECT = {"subscriptionType": "monthly", "paymentMethod": "direct", "phone": "670000000"}


def _report(status: str, trans_id: str = "abc12345") -> PaymentReport:
    return PaymentReport(transaction_id=trans_id, status=status, medium="mobile money", amount=2500)


async def _notifications(user_id):
    async with get_test_session() as session:
        rows = await session.execute(
            select(NotificationRow).where(NotificationRow.user_id == user_id).order_by(NotificationRow.created_at)
        )
        return rows.scalars().all()


@pytest.mark.asyncio
async def test_list_plans(client):
    resp = await client.get("/api/subscriptions/plans")
    assert resp.status_code == 200
    body = resp.json()
    assert body["currency"] == "XAF"
    assert [(p["type"], p["price"], p["durationDays"]) for p in body["plans"]] == [
        ("monthly", 2500, 30), ("quarterly", 6500, 90), ("yearly", 20000, 365),
    ]


@pytest.mark.asyncio
async def test_create_requires_auth(client, provider):
    resp = await client.post("/api/subscriptions/create", json=_DIRECT)
    assert resp.status_code == 401
    assert resp.json()["error"] == "Authentication required"


@pytest.mark.asyncio
async def test_create_direct(client, auth_headers, provider):
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["subscription"]["type"] == "monthly"
    assert body["subscription"]["amount"] == 2500
    assert body["subscription"]["currency"] == "XAF"
    assert body["subscription"]["duration"] == "30 days"
    assert body["subscription"]["status"] == "pending"
    assert body["payment"]["transactionId"] == "abc12345"
    assert body["payment"]["paymentLink"] is None
    assert body["payment"]["expiresIn"] == "15 minutes"


@pytest.mark.asyncio
async def test_create_redirect_returns_link(client, auth_headers, provider):
    resp = await client.post("/api/subscriptions/create", json={
        "subscriptionType": "quarterly", "paymentMethod": "redirect",
        "redirectUrl": "https://kontrivibe.cm/payment/return",
    }, headers=auth_headers)
    assert resp.status_code == 201
    assert resp.json()["payment"]["paymentLink"] == "https://checkout.fapshi.com/link/lnk98765"


@pytest.mark.asyncio
async def test_create_records_request_context(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT,
                      headers={**auth_headers, "User-Agent": "KontriVibe-Android/2.1"})
    async with get_test_session() as session:
        log = (await session.execute(select(PaymentLogRow))).scalar_one()
    assert log.user_agent == "KontriVibe-Android/2.1"
    assert log.ip_address


@pytest.mark.asyncio
async def test_create_invalid_type(client, auth_headers, provider):
    resp = await client.post("/api/subscriptions/create", json={**_DIRECT, "subscriptionType": "weekly"},
                             headers=auth_headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "validation_error"
    assert body["field"] == "subscriptionType"
    assert body["validTypes"] == ["monthly", "quarterly", "yearly"]


@pytest.mark.asyncio
async def test_create_missing_phone(client, auth_headers, provider):
    resp = await client.post("/api/subscriptions/create",
                             json={"subscriptionType": "monthly", "paymentMethod": "direct"},
                             headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["field"] == "phone"


@pytest.mark.asyncio
async def test_create_conflict_while_pending(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_create_provider_rejection(client, auth_headers, provider):
    provider.direct_pay.side_effect = PaymentProviderError("Insufficient balance", 400)
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "payment_initiation_failed"
    assert body["retryable"] is False


@pytest.mark.asyncio
async def test_create_provider_timeout_is_retryable(client, auth_headers, provider):
    provider.direct_pay.side_effect = PaymentProviderError("Payment provider timed out", retryable=True)
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 502
    assert resp.json()["retryable"] is True


@pytest.mark.asyncio
async def test_verify_successful_activates(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["activated"] is True
    assert body["subscription"]["status"] == "active"
    assert body["message"] == "Subscription activated successfully!"
    provider.payment_status.assert_awaited_once_with("abc12345")

    # Second verify is a no-op: no second activation, no second notification
    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["activated"] is False
    assert resp.json()["message"] == "Payment already confirmed"

    notes = await _notifications(user.id)
    assert [n.type for n in notes] == ["payment_success"]
    assert notes[0].message == "Your subscription to Monthly has been activated"


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [("PENDING", "pending"), ("FAILED", "failed"), ("EXPIRED", "expired")])
async def test_verify_not_successful(client, auth_headers, provider, status, expected):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report(status)

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "payment_not_successful"
    assert body["status"] == expected


@pytest.mark.asyncio
async def test_verify_failed_notifies_once(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("FAILED")
    for _ in range(2):
        await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)

    notes = await _notifications(user.id)
    assert [n.type for n in notes] == ["payment_failed"]


@pytest.mark.asyncio
async def test_verify_requires_transaction_id(client, auth_headers, provider):
    resp = await client.post("/api/subscriptions/verify", json={}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["field"] == "transactionId"


@pytest.mark.asyncio
async def test_verify_other_users_transaction(client, auth_headers, provider):
    from conftest import make_user
    from kontrivibe.auth import create_tokens

    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    intruder = await make_user("intruder@kontrivibe.cm", "Intruder")
    headers = {"Authorization": f"Bearer {create_tokens(intruder.id)['access_token']}"}

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=headers)
    assert resp.status_code == 404
    provider.payment_status.assert_not_awaited()


@pytest.mark.asyncio
async def test_verify_provider_timeout(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.side_effect = PaymentProviderError("Payment provider timed out", retryable=True)

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 504
    assert resp.json()["error"] == "payment_provider_error"


@pytest.mark.asyncio
async def test_status_free_user(client, auth_headers):
    resp = await client.get("/api/subscriptions/status", headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["isPremium"] is False
    assert body["daysRemaining"] == 0
    assert body["subscription"] is None


@pytest.mark.asyncio
async def test_status_after_activation(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")
    await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)

    body = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
    assert body["isPremium"] is True
    assert body["daysRemaining"] == 30
    assert body["subscription"]["type"] == "monthly"
    assert body["subscription"]["status"] == "active"
    assert body["subscription"]["autoRenew"] is True


@pytest.mark.asyncio
async def test_status_ignores_stale_flag(client, user, auth_headers):
    async with get_test_session() as session:
        await session.execute(update(UserRow).values(
            is_premium=True, premium_expires_at=utcnow() - timedelta(minutes=5),
        ))
        await session.commit()

    body = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
    assert body["isPremium"] is False
    assert body["premiumExpiresAt"] is None


@pytest.mark.asyncio
async def test_status_sends_single_expiry_reminder(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")
    await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)
    async with get_test_session() as session:
        await session.execute(update(UserRow).values(premium_expires_at=utcnow() + timedelta(days=2)))
        await session.commit()

    for _ in range(3):
        body = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
        assert body["daysRemaining"] == 2

    reminders = [n for n in await _notifications(user.id) if n.type == "subscription_expiring"]
    assert len(reminders) == 1
    assert reminders[0].data["metadata"]["days_remaining"] == 2


@pytest.mark.asyncio
async def test_cancel_flow(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")
    await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)

    resp = await client.post("/api/subscriptions/cancel", json={"reason": "Moving abroad"}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["cancelledAt"]

    body = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
    assert body["isPremium"] is False

    notes = await _notifications(user.id)
    assert notes[-1].type == "subscription_cancelled"

    resp = await client.post("/api/subscriptions/cancel", headers=auth_headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_cancel_without_subscription(client, auth_headers):
    resp = await client.post("/api/subscriptions/cancel", headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["message"] == "No active subscription to cancel"


@pytest.mark.asyncio
async def test_create_after_cancel(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")
    await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)
    await client.post("/api/subscriptions/cancel", headers=auth_headers)

    from kontrivibe.services.fapshi import PaymentInitiation
    provider.direct_pay.return_value = PaymentInitiation(transaction_id="xyz98765")
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 201
    assert resp.json()["payment"]["transactionId"] == "xyz98765"


async def _backdate_payment_window():
    async with get_test_session() as session:
        await session.execute(update(PaymentLogRow).values(expires_at=utcnow() - timedelta(minutes=1)))
        await session.commit()


@pytest.mark.asyncio
async def test_lost_webhook_payment_is_kept_when_retrying(client, user, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    await _backdate_payment_window()

    # User paid, the webhook never arrived, and the app offers a new attempt
    provider.payment_status.return_value = _report("SUCCESSFUL")
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 409
    body = resp.json()
    assert body["transactionId"] == "abc12345"
    assert body["activated"] is True
    provider.expire_pay.assert_not_awaited()
    assert provider.direct_pay.await_count == 1

    status = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
    assert status["isPremium"] is True
    assert status["daysRemaining"] == 30

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["subscription"]["status"] == "active"
    assert resp.json()["message"] == "Payment already confirmed"

    notes = await _notifications(user.id)
    assert [n.type for n in notes] == ["payment_success"]


@pytest.mark.asyncio
async def test_refused_expiry_keeps_attempt_verifiable(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    await _backdate_payment_window()

    # Still pending when checked, paid by the time the expiry reaches the provider
    provider.payment_status.side_effect = [_report("PENDING"), _report("SUCCESSFUL")]
    provider.expire_pay.side_effect = PaymentProviderError("Payment already successful", 400)
    resp = await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["transactionId"] == "abc12345"
    assert provider.direct_pay.await_count == 1

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["activated"] is True
    assert body["subscription"]["status"] == "active"

    status = (await client.get("/api/subscriptions/status", headers=auth_headers)).json()
    assert status["isPremium"] is True


@pytest.mark.asyncio
async def test_verify_paid_transaction_no_longer_linked(client, auth_headers, provider):
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)
    provider.payment_status.return_value = _report("SUCCESSFUL")
    await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"}, headers=auth_headers)
    await client.post("/api/subscriptions/cancel", headers=auth_headers)

    from kontrivibe.services.fapshi import PaymentInitiation
    provider.direct_pay.return_value = PaymentInitiation(transaction_id="xyz98765")
    await client.post("/api/subscriptions/create", json=_DIRECT, headers=auth_headers)

    resp = await client.post("/api/subscriptions/verify", json={"transactionId": "abc12345"},
                             headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["activated"] is False
    assert body["status"] == "successful"
    assert body["subscription"] is None
