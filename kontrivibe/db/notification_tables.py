"""Notification inbox — one row per notification sent to a user."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, Boolean, ForeignKey, Index

from kontrivibe.db.tables import Base, utcnow


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # payment_success | payment_failed | subscription_expiring | subscription_renewed
    # subscription_cancelled | system_alert
    type = Column(String(40), nullable=False, default="system_alert")
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict)  # {"related_content_id": ..., "metadata": {...}}

    is_read = Column(Boolean, nullable=False, default=False, index=True)
    read_at = Column(DateTime, nullable=True)
    push_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "is_read"),
    )
