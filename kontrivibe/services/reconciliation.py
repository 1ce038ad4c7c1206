"""
KontriVibe Subscription Reconciliation Engine
---
Owns the lifecycle of a subscription / payment-attempt pair and the premium
entitlement projected onto the user.

Two independent triggers report payment status: the Fapshi webhook (push)
and the client verify call (pull). Both go through `reconcile`, which is
idempotent: a status equal to the stored one is a no-op, and every state
transition is a conditional UPDATE that only matches rows not yet in the
target state, so a concurrent caller that loses the race affects zero rows
and backs off. A successful payment is terminal.

Expiry is lazy: nothing sweeps expired subscriptions, `get_entitlement`
recomputes premium access from `premium_expires_at` on every read.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from kontrivibe.db.subscription_tables import PaymentLogRow, SubscriptionRow
from kontrivibe.db.tables import to_naive_utc, utcnow
from kontrivibe.db.user_tables import UserRow
from kontrivibe.errors import (
    ConflictError,
    NotFoundError,
    PaymentInitiationError,
    PaymentProviderError,
    ValidationError,
)
from kontrivibe.services.audit import payment_checksum, verify_payment_checksum
from kontrivibe.services.fapshi import FapshiClient, PaymentReport, is_valid_phone
from kontrivibe.services.notifications import dispatch_reconcile_result
from kontrivibe.services.plans import DAY_MS, PLANS, PlanConfig, SubscriptionType, get_plan

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {"redirect": "redirect_pay", "direct": "direct_pay"}

# Provider status → internal PaymentLog status; anything else is "pending"
PROVIDER_STATUS_MAP = {
    "SUCCESSFUL": "successful",
    "FAILED": "failed",
    "EXPIRED": "expired",
}

# Provider "medium" → stored payment method
MEDIUM_MAP = {
    "mobile money": "mobile_money",
    "orange money": "orange_money",
}

_OPEN_PAYMENT_STATUSES = ("created", "pending")
_DEFAULT_DURATION_DAYS = 30


# ── Results ───────────────────────────────────────────────────────────────────

@dataclass
class AttemptResult:
    subscription: SubscriptionRow
    payment_log: PaymentLogRow
    plan: PlanConfig
    transaction_id: str
    payment_link: Optional[str] = None


@dataclass
class ReconcileResult:
    transaction_id: str
    status: str
    previous_status: str
    changed: bool
    activated: bool = False
    user_id: Optional[str] = None
    payment_log_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_type: Optional[str] = None
    expiry_date: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        """True when this call was an idempotent no-op."""
        return not self.changed


@dataclass
class Entitlement:
    user_id: str
    is_premium_active: bool
    premium_expires_at: Optional[datetime]
    days_remaining: int
    subscription: Optional[SubscriptionRow] = None


# ── Helpers ───────────────────────────────────────────────────────────────────

def map_provider_status(provider_status: str | None) -> str:
    return PROVIDER_STATUS_MAP.get((provider_status or "").strip().upper(), "pending")


def normalize_payment_method(medium: str | None) -> Optional[str]:
    if not medium:
        return None
    return MEDIUM_MAP.get(medium.strip().lower())


def _parse_provider_datetime(value: str | None, default: datetime) -> datetime:
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable provider timestamp %r, using now", value)
        return default
    return to_naive_utc(parsed)


def _duration_days(subscription_type: str) -> int:
    try:
        return PLANS[SubscriptionType(subscription_type)].duration_days
    except (ValueError, KeyError):
        logger.warning("No plan for subscription type %r, defaulting to %d days",
                       subscription_type, _DEFAULT_DURATION_DAYS)
        return _DEFAULT_DURATION_DAYS


async def get_payment_log(
    session: AsyncSession, transaction_id: str, user_id: str | None = None
) -> Optional[PaymentLogRow]:
    query = select(PaymentLogRow).where(PaymentLogRow.external_transaction_id == transaction_id)
    if user_id is not None:
        query = query.where(PaymentLogRow.user_id == user_id)
    result = await session.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_subscription(session: AsyncSession, user_id: str) -> Optional[SubscriptionRow]:
    result = await session.execute(
        select(SubscriptionRow)
        .where(SubscriptionRow.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_transaction(
    session: AsyncSession, transaction_id: str
) -> Optional[SubscriptionRow]:
    result = await session.execute(
        select(SubscriptionRow)
        .where(SubscriptionRow.external_transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _validate_attempt(
    subscription_type: str, payment_method: str, phone: str | None, redirect_url: str | None
) -> PlanConfig:
    plan = get_plan(subscription_type)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            'Invalid payment method. Use "redirect" or "direct"',
            field="paymentMethod",
        )
    if payment_method == "redirect" and not redirect_url:
        raise ValidationError("redirectUrl required for redirect payment", field="redirectUrl")
    if payment_method == "direct":
        if not phone:
            raise ValidationError("Phone number required for direct payment", field="phone")
        if not is_valid_phone(phone):
            raise ValidationError(
                "Invalid phone number format: expected 9 digits starting with 6",
                field="phone",
            )
    return plan


async def _live_attempt(
    session: AsyncSession, sub: SubscriptionRow, now: datetime
) -> Optional[PaymentLogRow]:
    """The payment attempt a pending subscription is still waiting on, if any.

    A pending subscription whose attempt never got a transaction id, ended
    failed/expired, or outlived its payment window does not block a retry.
    """
    if not sub.external_transaction_id:
        return None
    log = await get_payment_log(session, sub.external_transaction_id)
    if log is None or log.status not in _OPEN_PAYMENT_STATUSES:
        return None
    if log.expires_at is not None and to_naive_utc(log.expires_at) <= now:
        return None
    return log


async def _supersede_attempt(
    session: AsyncSession, provider: FapshiClient, transaction_id: str, subscription_type: str
) -> None:
    """Close out a stale open attempt before a new one replaces it.

    The provider is asked first: a payment that went through (webhook lost)
    is reconciled and activates the subscription, and the new attempt is
    refused. The local log is only expired once the provider has confirmed
    the payment can no longer complete. Raises ConflictError whenever the
    old payment may still be, or already is, paid.
    """
    log = await get_payment_log(session, transaction_id)
    if log is None or log.status not in _OPEN_PAYMENT_STATUSES:
        return

    in_doubt = ConflictError(
        "Your previous payment could not be confirmed yet. Verify it before starting a new one.",
        details={"currentSubscription": subscription_type, "transactionId": transaction_id},
    )

    try:
        report = await provider.payment_status(transaction_id)
    except PaymentProviderError as exc:
        logger.warning("Status check for stale transaction %s failed: %s", transaction_id, exc.message)
        raise in_doubt from exc

    result = await reconcile(session, transaction_id, report.status, report)
    await dispatch_reconcile_result(session, result)
    if result.status == "successful":
        logger.info("Stale transaction %s turned out paid (activated=%s)", transaction_id, result.activated)
        raise ConflictError(
            "Your previous payment went through. Your subscription is active.",
            details={
                "currentSubscription": subscription_type,
                "transactionId": transaction_id,
                "activated": result.activated,
            },
        )
    if result.status not in _OPEN_PAYMENT_STATUSES:
        return

    try:
        await provider.expire_pay(transaction_id)
    except PaymentProviderError as exc:
        # The provider refused to expire it; it may have been paid meanwhile
        logger.warning("Could not expire stale transaction %s: %s", transaction_id, exc.message)
        raise in_doubt from exc

    # Expired by us on the user's behalf, so no payment_failed notification
    result = await reconcile(session, transaction_id, "EXPIRED")
    if result.status == "successful":
        raise ConflictError(
            "Your previous payment went through. Your subscription is active.",
            details={"currentSubscription": subscription_type, "transactionId": transaction_id},
        )


# ── Create ────────────────────────────────────────────────────────────────────

async def create_subscription_attempt(
    session: AsyncSession,
    provider: FapshiClient,
    user_id: str,
    subscription_type: str,
    payment_method: str,
    phone: str | None = None,
    redirect_url: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AttemptResult:
    """Put the user's subscription in `pending`, log the attempt, start the payment.

    Raises ValidationError / NotFoundError / ConflictError before any write,
    PaymentInitiationError when the provider rejects or times out.
    """
    plan = _validate_attempt(subscription_type, payment_method, phone, redirect_url)

    user = await session.get(UserRow, user_id)
    if user is None:
        raise NotFoundError("User not found")

    now = utcnow()
    sub = await get_subscription(session, user_id)

    if sub is not None:
        if sub.status == "active" and (sub.expiry_date is None or to_naive_utc(sub.expiry_date) > now):
            raise ConflictError(
                "You already have an active subscription. Cancel it to create a new one.",
                details={"currentSubscription": sub.subscription_type},
            )
        if sub.status == "pending":
            if await _live_attempt(session, sub, now) is not None:
                raise ConflictError(
                    "A payment for your subscription is already in progress. "
                    "Complete or verify it before starting a new one.",
                    details={
                        "currentSubscription": sub.subscription_type,
                        "transactionId": sub.external_transaction_id,
                    },
                )
            if sub.external_transaction_id:
                await _supersede_attempt(
                    session, provider, sub.external_transaction_id, sub.subscription_type
                )
                # Reconciliation may have committed or rolled back; reload what we observed
                await session.refresh(sub)
                await session.refresh(user)
                if sub.status != "pending":
                    raise ConflictError(
                        "Subscription was modified concurrently, please retry",
                        details={"currentSubscription": sub.subscription_type},
                    )

        # Reuse the per-user row; guard on what we observed so a concurrent
        # attempt for the same user loses cleanly
        result = await session.execute(
            update(SubscriptionRow)
            .execution_options(synchronize_session=False)
            .where(
                SubscriptionRow.id == sub.id,
                SubscriptionRow.status == sub.status,
                SubscriptionRow.external_transaction_id == sub.external_transaction_id,
            )
            .values(
                subscription_type=plan.subscription_type.value,
                status="pending",
                price=plan.price,
                currency=settings.DEFAULT_CURRENCY,
                start_date=None,
                expiry_date=None,
                renewal_date=None,
                external_transaction_id=None,
                auto_renew=True,
                cancellation_reason=None,
                cancelled_at=None,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            await session.rollback()
            raise ConflictError("Subscription was modified concurrently, please retry")
        await session.refresh(sub)
    else:
        sub = SubscriptionRow(
            user_id=user_id,
            subscription_type=plan.subscription_type.value,
            status="pending",
            price=plan.price,
            currency=settings.DEFAULT_CURRENCY,
            auto_renew=True,
        )
        session.add(sub)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            raise ConflictError("A subscription for this user is already being created")

    previous_attempts = await session.scalar(
        select(func.count()).select_from(PaymentLogRow).where(PaymentLogRow.subscription_id == sub.id)
    )

    log = PaymentLogRow(
        user_id=user_id,
        subscription_id=sub.id,
        amount=plan.price,
        currency=settings.DEFAULT_CURRENCY,
        payment_method=PAYMENT_METHODS[payment_method],
        subscription_type=plan.subscription_type.value,
        status="created",
        payer_name=user.full_name,
        payer_phone=phone,
        payer_email=user.email,
        initiated_at=now,
        security_checksum=payment_checksum(user_id, plan.price, plan.subscription_type.value, now),
        retry_count=previous_attempts or 0,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(log)
    await session.commit()

    message = f"{settings.BRAND_NAME} {plan.subscription_type.value} subscription"
    try:
        if payment_method == "redirect":
            initiation = await provider.initiate_pay(
                amount=plan.price,
                user_id=user_id,
                external_id=log.id,
                redirect_url=redirect_url,
                message=message,
                email=user.email,
            )
        else:
            initiation = await provider.direct_pay(
                amount=plan.price,
                phone=phone,
                user_id=user_id,
                external_id=log.id,
                message=message,
                name=user.full_name,
                email=user.email,
            )
    except PaymentProviderError as exc:
        if exc.retryable:
            # Outcome unknown: the attempt stays open
            log.error_message = f"Provider timeout: {exc.message}"
        else:
            log.status = "failed"
            log.error_message = exc.message
        log.updated_at = utcnow()
        await session.commit()
        logger.warning(
            "Payment initiation failed: user=%s plan=%s retryable=%s (%s)",
            user_id, plan.subscription_type.value, exc.retryable, exc.message,
        )
        raise PaymentInitiationError(exc.message, retryable=exc.retryable) from exc

    ttl = timedelta(minutes=settings.PAYMENT_LINK_TTL_MINUTES)
    log.external_transaction_id = initiation.transaction_id
    log.expires_at = now + ttl
    log.updated_at = utcnow()
    sub.external_transaction_id = initiation.transaction_id
    sub.updated_at = utcnow()
    await session.commit()

    logger.info(
        "Payment initiated: user=%s plan=%s method=%s trans=%s",
        user_id, plan.subscription_type.value, payment_method, initiation.transaction_id,
    )
    return AttemptResult(
        subscription=sub,
        payment_log=log,
        plan=plan,
        transaction_id=initiation.transaction_id,
        payment_link=initiation.payment_link,
    )


# ── Reconcile ─────────────────────────────────────────────────────────────────

async def reconcile(
    session: AsyncSession,
    transaction_id: str,
    provider_status: str | None,
    report: PaymentReport | None = None,
) -> ReconcileResult:
    """Apply a provider-reported status to PaymentLog, Subscription and User.

    Shared by the webhook and verify paths. Raises NotFoundError for an
    unknown transaction id; everything else is signalled on the result.
    """
    log = await get_payment_log(session, transaction_id)
    if log is None:
        raise NotFoundError("Payment not found", details={"transactionId": transaction_id})

    new_status = map_provider_status(provider_status)
    previous = log.status
    base = dict(
        transaction_id=transaction_id,
        previous_status=previous,
        user_id=log.user_id,
        payment_log_id=log.id,
        subscription_id=log.subscription_id,
        subscription_type=log.subscription_type,
    )

    if previous == new_status:
        logger.debug("Reconcile no-op: trans=%s already %s", transaction_id, previous)
        return ReconcileResult(status=previous, changed=False, **base)

    if previous == "successful":
        logger.warning(
            "Ignoring %s for trans=%s: payment already successful", new_status, transaction_id
        )
        return ReconcileResult(status=previous, changed=False, **base)

    now = utcnow()
    values: dict = {"status": new_status, "updated_at": now, "confirmed_at": None}
    if new_status == "successful":
        values["confirmed_at"] = _parse_provider_datetime(report.date_confirmed if report else None, now)
    if report is not None:
        method = normalize_payment_method(report.medium)
        if method:
            values["payment_method"] = method
        if report.financial_transaction_id:
            values["financial_transaction_id"] = report.financial_transaction_id
        if report.payer_name:
            values["payer_name"] = report.payer_name
        if report.email:
            values["payer_email"] = report.email
        if report.amount is not None and report.amount != log.amount:
            logger.warning(
                "Amount mismatch on trans=%s: logged %s, provider reported %s",
                transaction_id, log.amount, report.amount,
            )

    result = await session.execute(
        update(PaymentLogRow)
        .execution_options(synchronize_session=False)
        .where(
            PaymentLogRow.id == log.id,
            PaymentLogRow.status != new_status,
            PaymentLogRow.status != "successful",
        )
        .values(**values)
    )
    if result.rowcount == 0:
        # Another caller moved this payment first; whatever it applied stands
        await session.rollback()
        current = await session.scalar(
            select(PaymentLogRow.status).where(PaymentLogRow.id == base["payment_log_id"])
        )
        logger.info("Reconcile lost race: trans=%s now %s", transaction_id, current)
        return ReconcileResult(status=current or new_status, changed=False, **base)

    if new_status == "successful":
        # Audit only: a mismatch is logged, never blocks activation
        verify_payment_checksum(log)

    activated = False
    expiry_date = None
    if new_status == "successful":
        expiry_date = await _activate(session, transaction_id, now)
        activated = expiry_date is not None

    await session.commit()
    logger.info(
        "Payment %s: %s → %s%s", transaction_id, previous, new_status,
        " (subscription activated)" if activated else "",
    )
    return ReconcileResult(
        status=new_status, changed=True, activated=activated, expiry_date=expiry_date, **base
    )


async def _activate(session: AsyncSession, transaction_id: str, now: datetime) -> Optional[datetime]:
    """Pending → active for the subscription waiting on this transaction.

    Returns the new expiry date, or None when nothing was activated.
    """
    sub = await get_subscription_by_transaction(session, transaction_id)
    if sub is None:
        logger.warning("Successful payment %s has no subscription, activation skipped", transaction_id)
        return None
    if sub.status != "pending":
        logger.info("Subscription %s already %s, activation skipped", sub.id, sub.status)
        return None

    expiry = now + timedelta(days=_duration_days(sub.subscription_type))
    result = await session.execute(
        update(SubscriptionRow)
        .execution_options(synchronize_session=False)
        .where(SubscriptionRow.id == sub.id, SubscriptionRow.status == "pending")
        .values(
            status="active",
            start_date=now,
            expiry_date=expiry,
            renewal_date=expiry,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        return None
    await session.refresh(sub)

    # Never shorten a longer entitlement the user already holds
    await session.execute(
        update(UserRow)
        .execution_options(synchronize_session=False)
        .where(
            UserRow.id == sub.user_id,
            or_(
                UserRow.is_premium.is_(False),
                UserRow.premium_expires_at.is_(None),
                UserRow.premium_expires_at < expiry,
            ),
        )
        .values(is_premium=True, premium_expires_at=expiry)
    )
    logger.info("Subscription %s activated for user %s until %s", sub.id, sub.user_id, expiry.isoformat())
    return expiry


# ── Cancel ────────────────────────────────────────────────────────────────────

async def cancel_subscription(
    session: AsyncSession, user_id: str, reason: str | None = None
) -> SubscriptionRow:
    """Cancel the active subscription; premium access ends immediately."""
    sub = await get_subscription(session, user_id)
    if sub is None or sub.status != "active":
        raise ConflictError("No active subscription to cancel")

    now = utcnow()
    result = await session.execute(
        update(SubscriptionRow)
        .execution_options(synchronize_session=False)
        .where(SubscriptionRow.id == sub.id, SubscriptionRow.status == "active")
        .values(
            status="cancelled",
            cancellation_reason=reason or "User requested cancellation",
            cancelled_at=now,
            auto_renew=False,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        raise ConflictError("No active subscription to cancel")

    # Only revoke the entitlement this subscription granted
    conditions = [UserRow.id == user_id]
    if sub.expiry_date is not None:
        conditions.append(
            or_(UserRow.premium_expires_at.is_(None), UserRow.premium_expires_at <= sub.expiry_date)
        )
    await session.execute(
        update(UserRow)
        .execution_options(synchronize_session=False)
        .where(*conditions)
        .values(is_premium=False)
    )
    await session.commit()
    await session.refresh(sub)

    logger.info("Subscription %s cancelled for user %s", sub.id, user_id)
    return sub


# ── Entitlement ───────────────────────────────────────────────────────────────

def is_premium_active(user: UserRow, now: datetime | None = None) -> bool:
    now = now or utcnow()
    expires = to_naive_utc(user.premium_expires_at)
    return bool(user.is_premium and expires is not None and expires > now)


def days_until(expires: datetime, now: datetime) -> int:
    """Whole days left, rounded up, so any remaining time counts as a day."""
    diff_ms = (to_naive_utc(expires) - now) / timedelta(milliseconds=1)
    return math.ceil(diff_ms / DAY_MS)


async def get_entitlement(
    session: AsyncSession, user_id: str, now: datetime | None = None
) -> Entitlement:
    """Recompute premium access from the stored expiry, not the flag alone."""
    user = await session.get(UserRow, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User not found")

    now = now or utcnow()
    expires = to_naive_utc(user.premium_expires_at)
    active = is_premium_active(user, now)
    days_remaining = 0
    subscription = None
    if active:
        days_remaining = days_until(expires, now)
        subscription = await get_subscription(session, user_id)

    return Entitlement(
        user_id=user_id,
        is_premium_active=active,
        premium_expires_at=expires,
        days_remaining=days_remaining,
        subscription=subscription,
    )
