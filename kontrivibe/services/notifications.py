"""Notification dispatcher — persists inbox notifications for payment events.

Push delivery is not handled here; rows are written with push_sent=False
for a delivery worker to pick up.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kontrivibe.db.notification_tables import NotificationRow
from kontrivibe.services.plans import SubscriptionType, PLANS

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {
    "payment_success",
    "payment_failed",
    "subscription_expiring",
    "subscription_renewed",
    "subscription_cancelled",
    "system_alert",
}


async def create_notification(
    session: AsyncSession,
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[dict[str, Any]] = None,
) -> NotificationRow:
    """Add a notification to the user's inbox. Caller commits."""
    if type not in NOTIFICATION_TYPES:
        logger.warning("Unknown notification type %r, storing as system_alert", type)
        type = "system_alert"
    notification = NotificationRow(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
    )
    session.add(notification)
    logger.info("Notification queued: user=%s type=%s", user_id, type)
    return notification


def _plan_name(subscription_type: str | None) -> str:
    try:
        return PLANS[SubscriptionType(subscription_type)].name
    except (ValueError, KeyError):
        return "premium"


async def notify_payment_success(
    session: AsyncSession, user_id: str, subscription_id: str | None,
    subscription_type: str | None, expiry_date=None,
) -> NotificationRow:
    plan_name = _plan_name(subscription_type)
    return await create_notification(
        session, user_id, "payment_success", "Payment Successful",
        f"Your subscription to {plan_name} has been activated",
        {
            "related_content_id": subscription_id,
            "metadata": {
                "plan_name": plan_name,
                "subscription_type": subscription_type,
                "expiry_date": expiry_date.isoformat() if expiry_date else None,
            },
        },
    )


async def notify_payment_failed(
    session: AsyncSession, user_id: str, transaction_id: str, status: str,
) -> NotificationRow:
    reason = "expired before it was completed" if status == "expired" else "could not be completed"
    return await create_notification(
        session, user_id, "payment_failed", "Payment Failed",
        f"Your subscription payment {reason}. You can try again anytime.",
        {"metadata": {"transaction_id": transaction_id, "status": status}},
    )


async def notify_subscription_cancelled(
    session: AsyncSession, user_id: str, subscription_id: str,
) -> NotificationRow:
    return await create_notification(
        session, user_id, "subscription_cancelled", "Subscription Cancelled",
        "Your premium subscription has been cancelled. Premium features are no longer available.",
        {"related_content_id": subscription_id},
    )


async def notify_subscription_expiring(
    session: AsyncSession, user_id: str, days_remaining: int,
) -> NotificationRow:
    return await create_notification(
        session, user_id, "subscription_expiring", "Subscription Expiring Soon",
        f"Your premium subscription expires in {days_remaining} days. "
        "Renew now to continue enjoying unlimited features.",
        {"metadata": {"days_remaining": days_remaining}},
    )


async def dispatch_reconcile_result(session: AsyncSession, result) -> None:
    """Fire notifications for a reconciliation, on true transitions only."""
    if result.activated:
        await notify_payment_success(
            session, result.user_id, result.subscription_id, result.subscription_type, result.expiry_date,
        )
    elif result.changed and result.status in ("failed", "expired"):
        await notify_payment_failed(session, result.user_id, result.transaction_id, result.status)
    else:
        return
    await session.commit()


EXPIRY_REMINDER_DAYS = 3


async def remind_if_expiring(session: AsyncSession, entitlement) -> Optional[NotificationRow]:
    """Send one expiry reminder per subscription period once few days remain."""
    sub = entitlement.subscription
    if not entitlement.is_premium_active or sub is None:
        return None
    if entitlement.days_remaining > EXPIRY_REMINDER_DAYS:
        return None

    query = select(NotificationRow.id).where(
        NotificationRow.user_id == entitlement.user_id,
        NotificationRow.type == "subscription_expiring",
    )
    if sub.start_date is not None:
        query = query.where(NotificationRow.created_at >= sub.start_date)
    if (await session.execute(query.limit(1))).first() is not None:
        return None

    notification = await notify_subscription_expiring(
        session, entitlement.user_id, entitlement.days_remaining,
    )
    await session.commit()
    return notification
