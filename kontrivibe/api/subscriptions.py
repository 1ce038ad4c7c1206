"""
KontriVibe Subscriptions API
---
Endpoints:
- GET  /api/subscriptions/plans  — purchasable plans
- POST /api/subscriptions/create — start a payment attempt for a plan
- POST /api/subscriptions/verify — poll the provider and reconcile (client pull)
- GET  /api/subscriptions/status — current entitlement
- GET  /api/subscriptions/premium — 403 unless premium is active
- POST /api/subscriptions/cancel — cancel, premium ends immediately

The provider webhook (push) lives in kontrivibe.api.webhooks and shares
`reconcile` with the verify endpoint.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from kontrivibe.auth import SubscriptionInfo, get_subscription_info, require_premium, require_user
from kontrivibe.db.engine import get_session
from kontrivibe.db.user_tables import UserRow
from kontrivibe.errors import NotFoundError, PaymentInitiationError, ValidationError
from kontrivibe.middleware.metrics import metrics
from kontrivibe.services.fapshi import FapshiClient, get_payment_provider
from kontrivibe.services.notifications import (
    dispatch_reconcile_result,
    notify_subscription_cancelled,
    remind_if_expiring,
)
from kontrivibe.services.plans import PLANS
from kontrivibe.services.reconciliation import (
    ReconcileResult,
    cancel_subscription,
    create_subscription_attempt,
    get_entitlement,
    get_payment_log,
    get_subscription_by_transaction,
    reconcile,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])

_NOT_SUCCESSFUL_MESSAGES = {
    "pending": "Payment is still pending. Approve it on your phone, then verify again.",
    "created": "Payment is still pending. Approve it on your phone, then verify again.",
    "failed": "Payment failed. You can start a new payment.",
    "expired": "Payment link has expired",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def reconcile_outcome(result: ReconcileResult) -> str:
    if result.activated:
        return "activated"
    return "changed" if result.changed else "skipped"


# ── Schemas ──────────────────────────────────────────────────────────────

class CreateSubscriptionRequest(BaseModel):
    # Optional so missing fields get actionable 400s from the engine
    subscription_type: Optional[str] = Field(None, alias="subscriptionType")
    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    phone: Optional[str] = Field(None, max_length=32)
    redirect_url: Optional[str] = Field(None, alias="redirectUrl", max_length=2000)

    model_config = {"populate_by_name": True}


class VerifyPaymentRequest(BaseModel):
    transaction_id: Optional[str] = Field(None, alias="transactionId")

    model_config = {"populate_by_name": True}


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ── Routes ───────────────────────────────────────────────────────────────

@router.get("/plans")
async def list_plans(info: Optional[SubscriptionInfo] = Depends(get_subscription_info)):
    """Purchasable plans; signed-in callers also get their current premium state."""
    return {
        "currency": settings.DEFAULT_CURRENCY,
        "plans": [
            {
                "type": plan.subscription_type.value,
                "name": plan.name,
                "price": plan.price,
                "durationDays": plan.duration_days,
            }
            for plan in PLANS.values()
        ],
        "subscription": info.model_dump(mode="json", by_alias=True) if info else None,
    }


@router.post("/create", status_code=201)
async def create_subscription(
    req: CreateSubscriptionRequest,
    request: Request,
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    provider: FapshiClient = Depends(get_payment_provider),
):
    """Create a pending subscription and initiate payment with the provider."""
    try:
        attempt = await create_subscription_attempt(
            session,
            provider,
            user.id,
            req.subscription_type,
            req.payment_method,
            phone=req.phone,
            redirect_url=req.redirect_url,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except PaymentInitiationError:
        metrics.record_payment_attempt(req.payment_method, "failed")
        raise
    metrics.record_payment_attempt(req.payment_method, "initiated")

    return {
        "success": True,
        "subscription": {
            "id": attempt.subscription.id,
            "type": attempt.plan.subscription_type.value,
            "amount": attempt.plan.price,
            "currency": attempt.subscription.currency,
            "duration": f"{attempt.plan.duration_days} days",
            "status": attempt.subscription.status,
        },
        "payment": {
            "transactionId": attempt.transaction_id,
            "paymentLink": attempt.payment_link,
            "expiresIn": f"{settings.PAYMENT_LINK_TTL_MINUTES} minutes",
            "expiresAt": _iso(attempt.payment_log.expires_at),
        },
    }


@router.post("/verify")
async def verify_payment(
    req: VerifyPaymentRequest,
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
    provider: FapshiClient = Depends(get_payment_provider),
):
    """Ask the provider for the transaction's status and reconcile it."""
    if not req.transaction_id:
        raise ValidationError("Transaction ID required", field="transactionId")

    log = await get_payment_log(session, req.transaction_id, user_id=user.id)
    if log is None:
        metrics.record_reconcile("verify", "not_found")
        raise NotFoundError("Payment not found: transaction not associated with your account")

    report = await provider.payment_status(req.transaction_id)
    result = await reconcile(session, req.transaction_id, report.status, report)
    metrics.record_reconcile("verify", reconcile_outcome(result))
    await dispatch_reconcile_result(session, result)

    if result.status != "successful":
        return JSONResponse(status_code=400, content={
            "error": "payment_not_successful",
            "status": result.status,
            "message": _NOT_SUCCESSFUL_MESSAGES.get(result.status, "Payment not successful"),
        })

    sub = await get_subscription_by_transaction(session, req.transaction_id)
    if sub is None:
        # Paid, but the subscription has since moved on to another attempt
        logger.warning("Verified payment %s is not linked to a subscription", req.transaction_id)
        return {
            "success": True,
            "activated": False,
            "status": result.status,
            "subscription": None,
            "message": "Payment confirmed, but it is not linked to a subscription. Contact support.",
        }

    return {
        "success": True,
        "activated": result.activated,
        "subscription": {
            "id": sub.id,
            "type": sub.subscription_type,
            "status": sub.status,
            "startDate": _iso(sub.start_date),
            "expiryDate": _iso(sub.expiry_date),
        },
        "message": (
            "Subscription activated successfully!" if result.activated
            else "Payment already confirmed"
        ),
    }


@router.get("/status")
async def subscription_status(
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Current premium status, recomputed from the stored expiry."""
    entitlement = await get_entitlement(session, user.id)
    await remind_if_expiring(session, entitlement)

    response = {
        "success": True,
        "isPremium": entitlement.is_premium_active,
        "premiumExpiresAt": _iso(entitlement.premium_expires_at) if entitlement.is_premium_active else None,
        "daysRemaining": entitlement.days_remaining,
        "subscription": None,
    }
    sub = entitlement.subscription
    if sub is not None and entitlement.is_premium_active:
        response["subscription"] = {
            "id": sub.id,
            "type": sub.subscription_type,
            "status": sub.status,
            "startDate": _iso(sub.start_date),
            "expiryDate": _iso(sub.expiry_date),
            "renewalDate": _iso(sub.renewal_date),
            "daysRemaining": entitlement.days_remaining,
            "autoRenew": sub.auto_renew,
        }
    return response


@router.get("/premium")
async def premium_access(info: SubscriptionInfo = Depends(require_premium)):
    """403 premium_required unless the caller holds an unexpired premium entitlement."""
    return {"success": True, **info.model_dump(mode="json", by_alias=True)}


@router.post("/cancel")
async def cancel(
    req: Optional[CancelSubscriptionRequest] = None,
    user: UserRow = Depends(require_user),
    session: AsyncSession = Depends(get_session),
):
    """Cancel the active subscription. Takes effect immediately, no proration."""
    sub = await cancel_subscription(session, user.id, req.reason if req else None)
    await notify_subscription_cancelled(session, user.id, sub.id)
    await session.commit()
    return {
        "success": True,
        "message": "Subscription cancelled successfully",
        "cancelledAt": _iso(sub.cancelled_at),
    }
