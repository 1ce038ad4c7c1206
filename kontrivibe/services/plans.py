"""
KontriVibe Subscription Plans
---
Static plan table: each purchasable subscription type maps to a fixed price
(in XAF) and a duration in days. `free` is a storable subscription type but
never purchasable.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kontrivibe.errors import ValidationError

DAY_MS = 1000 * 60 * 60 * 24


class SubscriptionType(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class PlanConfig:
    subscription_type: SubscriptionType
    name: str
    price: int          # XAF, integer amounts only
    duration_days: int


PLANS: dict[SubscriptionType, PlanConfig] = {
    SubscriptionType.MONTHLY: PlanConfig(
        subscription_type=SubscriptionType.MONTHLY,
        name="Monthly",
        price=2500,
        duration_days=30,
    ),
    SubscriptionType.QUARTERLY: PlanConfig(
        subscription_type=SubscriptionType.QUARTERLY,
        name="Quarterly",
        price=6500,
        duration_days=90,
    ),
    SubscriptionType.YEARLY: PlanConfig(
        subscription_type=SubscriptionType.YEARLY,
        name="Yearly",
        price=20000,
        duration_days=365,
    ),
}


def valid_plan_types() -> list[str]:
    return [t.value for t in PLANS]


def get_plan(subscription_type: str | SubscriptionType | None) -> PlanConfig:
    """Look up a purchasable plan; unknown or free types are rejected."""
    try:
        key = SubscriptionType(subscription_type)
    except ValueError:
        key = None
    if key is None or key not in PLANS:
        raise ValidationError(
            "Invalid subscription type",
            field="subscriptionType",
            details={"validTypes": valid_plan_types()},
        )
    return PLANS[key]
