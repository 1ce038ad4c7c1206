"""Subscription tables — one subscription per user, one payment log per attempt."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Text,
    ForeignKey, Index,
)

from kontrivibe.db.tables import Base, utcnow


class SubscriptionRow(Base):
    """The user's subscription — unique per user, reused across attempts."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True, unique=True)

    # Type: free | monthly | quarterly | yearly
    subscription_type = Column(String(20), nullable=False, default="free")

    # Status: active | pending | expired | cancelled
    status = Column(String(20), nullable=False, default="pending", index=True)

    price = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="XAF")

    start_date = Column(DateTime, nullable=True)
    expiry_date = Column(DateTime, nullable=True)
    renewal_date = Column(DateTime, nullable=True)

    # Provider transaction id of the attempt this subscription is waiting on
    external_transaction_id = Column(String(64), nullable=True, unique=True, index=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PaymentLogRow(Base):
    """One row per payment attempt — audit trail for provider transactions."""
    __tablename__ = "payment_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)

    # Null only when the provider never issued a transaction id (initiation failed)
    external_transaction_id = Column(String(64), nullable=True, unique=True, index=True)
    financial_transaction_id = Column(String(128), nullable=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="XAF")

    # Method: direct_pay | redirect_pay | mobile_money | orange_money
    payment_method = Column(String(20), nullable=True)
    subscription_type = Column(String(20), nullable=False)

    # Status: created | pending | successful | failed | expired
    status = Column(String(20), nullable=False, default="created", index=True)

    payer_name = Column(String(200), nullable=True)
    payer_phone = Column(String(32), nullable=True)
    payer_email = Column(String(320), nullable=True)

    initiated_at = Column(DateTime, nullable=False, default=utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    security_checksum = Column(String(64), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_logs_user_status", "user_id", "status"),
    )
