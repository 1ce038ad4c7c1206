"""Tests for the static plan table."""
from __future__ import annotations

import pytest

from kontrivibe.errors import ValidationError
from kontrivibe.services.plans import PLANS, SubscriptionType, get_plan, valid_plan_types


def test_plan_prices_and_durations():
    assert (PLANS[SubscriptionType.MONTHLY].price, PLANS[SubscriptionType.MONTHLY].duration_days) == (2500, 30)
    assert (PLANS[SubscriptionType.QUARTERLY].price, PLANS[SubscriptionType.QUARTERLY].duration_days) == (6500, 90)
    assert (PLANS[SubscriptionType.YEARLY].price, PLANS[SubscriptionType.YEARLY].duration_days) == (20000, 365)


def test_prices_are_integers():
    assert all(isinstance(p.price, int) for p in PLANS.values())


def test_get_plan_accepts_string_and_enum():
    assert get_plan("quarterly") is PLANS[SubscriptionType.QUARTERLY]
    assert get_plan(SubscriptionType.YEARLY).name == "Yearly"


@pytest.mark.parametrize("bad", ["free", "weekly", "", None, "MONTHLY"])
def test_get_plan_rejects_non_purchasable(bad):
    with pytest.raises(ValidationError) as exc:
        get_plan(bad)
    assert exc.value.details["field"] == "subscriptionType"
    assert exc.value.details["validTypes"] == ["monthly", "quarterly", "yearly"]


def test_free_is_not_purchasable():
    assert "free" not in valid_plan_types()
