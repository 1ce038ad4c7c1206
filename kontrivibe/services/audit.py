"""Tamper-evident checksums for payment attempts.

The checksum is stored on every PaymentLog at creation time and can be
recomputed later for audit; it never gates the payment flow.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


def generate_checksum(data: dict[str, Any]) -> str:
    """SHA-256 over compact, key-sorted JSON."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def payment_checksum_payload(
    user_id: str, amount: int, subscription_type: str, timestamp: datetime
) -> dict[str, Any]:
    return {
        "userId": str(user_id),
        "amount": int(amount),
        "subscriptionType": subscription_type,
        "timestamp": timestamp.isoformat(),
    }


def payment_checksum(user_id: str, amount: int, subscription_type: str, timestamp: datetime) -> str:
    return generate_checksum(payment_checksum_payload(user_id, amount, subscription_type, timestamp))


def verify_payment_checksum(log) -> bool:
    """Recompute a PaymentLog's checksum from its stored fields and compare."""
    if not log.security_checksum or log.initiated_at is None:
        logger.warning("Payment log %s has no checksum to verify", log.id)
        return False
    expected = payment_checksum(log.user_id, log.amount, log.subscription_type, log.initiated_at)
    ok = hmac.compare_digest(expected, log.security_checksum)
    if not ok:
        logger.warning("Checksum mismatch on payment log %s", log.id)
    return ok
