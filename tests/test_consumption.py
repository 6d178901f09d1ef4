from decimal import Decimal

import pytest

from transcription_service.models.job import TranscriptionMode
from transcription_service.models.pricing import PricingSettings
from transcription_service.models.subscription import SubscriptionStatus
from transcription_service.models.usage import UsageSource
from transcription_service.models.user import UserAccount
from transcription_service.services.consumption import (
    ConsumptionSource,
    plan_consumption,
    subscription_covers,
)


PRICING = PricingSettings()


def _account(**fields) -> UserAccount:
    base = {
        "id": "u1",
        "subscription_plan": "ai-professional",
        "subscription_status": SubscriptionStatus.ACTIVE,
        "included_minutes_per_month": 750,
    }
    base.update(fields)
    return UserAccount(**base)


def test_subscription_minutes_cover_job():
    plan = plan_consumption(_account(minutes_used_this_month=95), 100, TranscriptionMode.AI, PRICING)
    assert plan.source == ConsumptionSource.SUBSCRIPTION
    assert plan.usage_source == UsageSource.SUBSCRIPTION
    assert plan.minutes_from_subscription == 100
    assert plan.overage_minutes == 0
    assert plan.wallet_amount == Decimal("0.00")


def test_reserved_minutes_reduce_availability():
    account = _account(minutes_used_this_month=600, minutes_reserved=100)
    plan = plan_consumption(account, 100, TranscriptionMode.AI, PRICING)
    assert plan.minutes_from_subscription == 50
    assert plan.overage_minutes == 50


def test_overage_goes_to_wallet_at_mode_rate():
    account = _account(minutes_used_this_month=95, wallet_balance=Decimal("50.00"))
    plan = plan_consumption(account, 700, TranscriptionMode.AI, PRICING)
    assert plan.source == ConsumptionSource.WALLET
    assert plan.usage_source == UsageSource.OVERAGE
    assert plan.minutes_from_subscription == 655
    assert plan.wallet_minutes == 45
    assert plan.wallet_amount == Decimal("18.00")
    assert plan.sufficient


def test_credits_are_spent_before_wallet():
    account = _account(
        minutes_used_this_month=750, credits=21, wallet_balance=Decimal("10.00")
    )
    plan = plan_consumption(account, 15, TranscriptionMode.AI, PRICING)
    assert plan.credit_minutes == 15
    assert plan.credits_used == 15
    assert plan.wallet_amount == Decimal("0.00")
    assert plan.source == ConsumptionSource.CREDITS


def test_partial_credits_use_whole_minutes_only():
    # Hybrid costs 2 credits a minute: 5 credits buy 2 minutes, 1 is left.
    account = _account(
        subscription_plan="hybrid-starter", minutes_used_this_month=300,
        included_minutes_per_month=300, credits=5, wallet_balance=Decimal("20.00"),
    )
    plan = plan_consumption(account, 4, TranscriptionMode.HYBRID, PRICING)
    assert plan.credit_minutes == 2
    assert plan.credits_used == 4
    assert plan.wallet_minutes == 2
    assert plan.wallet_amount == Decimal("3.00")


def test_insufficient_reports_shortfall():
    account = _account(minutes_used_this_month=750, wallet_balance=Decimal("1.00"))
    plan = plan_consumption(account, 10, TranscriptionMode.AI, PRICING)
    assert plan.source == ConsumptionSource.INSUFFICIENT
    assert not plan.sufficient
    assert plan.shortfall == Decimal("3.00")


def test_overdraft_allows_negative_wallet_at_settlement():
    account = _account(minutes_used_this_month=750, wallet_balance=Decimal("1.00"))
    plan = plan_consumption(account, 10, TranscriptionMode.AI, PRICING, allow_overdraft=True)
    assert plan.source == ConsumptionSource.WALLET
    assert plan.wallet_amount == Decimal("4.00")
    assert plan.shortfall == Decimal("0.00")


def test_held_credits_and_wallet_are_not_available():
    account = _account(
        minutes_used_this_month=750,
        credits=10,
        credits_reserved=8,
        wallet_balance=Decimal("5.00"),
        wallet_reserved=Decimal("4.00"),
    )
    plan = plan_consumption(account, 5, TranscriptionMode.AI, PRICING)
    assert plan.credit_minutes == 2
    assert plan.wallet_amount == Decimal("1.20")
    assert plan.source == ConsumptionSource.INSUFFICIENT
    assert plan.shortfall == Decimal("0.20")


def test_free_trial_goes_first():
    account = _account(free_trial_minutes=40, free_trial_reserved=10)
    plan = plan_consumption(account, 50, TranscriptionMode.AI, PRICING)
    assert plan.minutes_from_free_trial == 30
    assert plan.minutes_from_subscription == 20
    assert plan.source == ConsumptionSource.SUBSCRIPTION


def test_free_trial_alone_covers_uncovered_mode():
    account = _account(free_trial_minutes=40)
    plan = plan_consumption(account, 25, TranscriptionMode.HYBRID, PRICING)
    assert plan.source == ConsumptionSource.FREE_TRIAL
    assert plan.usage_source == UsageSource.FREE_TRIAL
    assert plan.minutes_from_free_trial == 25
    assert plan.wallet_amount == Decimal("0.00")

def test_ai_plan_does_not_cover_hybrid_jobs():
    account = _account(wallet_balance=Decimal("100.00"))
    assert not subscription_covers(account, TranscriptionMode.HYBRID)
    plan = plan_consumption(account, 10, TranscriptionMode.HYBRID, PRICING)
    assert plan.minutes_from_subscription == 0
    assert plan.usage_source == UsageSource.CREDITS
    assert plan.wallet_amount == Decimal("15.00")


@pytest.mark.parametrize(
    "status", [SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED, SubscriptionStatus.NONE]
)
def test_inactive_subscription_is_not_used(status):
    account = _account(subscription_status=status, wallet_balance=Decimal("100.00"))
    plan = plan_consumption(account, 10, TranscriptionMode.AI, PRICING)
    assert plan.minutes_from_subscription == 0
    assert plan.wallet_amount == Decimal("4.00")


def test_trialing_subscription_is_used():
    account = _account(subscription_status=SubscriptionStatus.TRIALING)
    plan = plan_consumption(account, 10, TranscriptionMode.AI, PRICING)
    assert plan.minutes_from_subscription == 10


def test_zero_minutes_costs_nothing():
    plan = plan_consumption(_account(), 0, TranscriptionMode.AI, PRICING)
    assert plan.sufficient
    assert plan.minutes_from_subscription == 0
    assert plan.wallet_amount == Decimal("0.00")


def test_negative_minutes_rejected():
    with pytest.raises(ValueError, match="must not be negative"):
        plan_consumption(_account(), -1, TranscriptionMode.AI, PRICING)
