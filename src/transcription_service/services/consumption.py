from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict

from ..models.job import TranscriptionMode
from ..models.pricing import PricingSettings
from ..models.subscription import ACTIVE_STATUSES, get_plan
from ..models.usage import UsageSource
from ..models.user import UserAccount


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class ConsumptionSource(str, Enum):
    FREE_TRIAL = "free_trial"
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"
    WALLET = "wallet"
    INSUFFICIENT = "insufficient"


class ConsumptionPlan(BaseModel):
    """How a number of minutes will be paid for, split by funding source."""

    model_config = ConfigDict(frozen=True)

    source: ConsumptionSource
    usage_source: UsageSource
    minutes: int
    minutes_from_free_trial: int = 0
    minutes_from_subscription: int = 0
    overage_minutes: int = 0
    credit_minutes: int = 0
    credits_used: int = 0
    wallet_minutes: int = 0
    wallet_amount: Decimal = ZERO
    shortfall: Decimal = ZERO

    @property
    def sufficient(self) -> bool:
        return self.source != ConsumptionSource.INSUFFICIENT


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def subscription_covers(account: UserAccount, mode: TranscriptionMode) -> bool:
    """An active (or trialing) plan whose tier includes `mode`."""
    if account.subscription_status not in ACTIVE_STATUSES:
        return False
    plan = get_plan(account.subscription_plan)
    return plan is not None and plan.allows_mode(mode)


def plan_consumption(
    account: UserAccount,
    minutes: int,
    mode: TranscriptionMode,
    pricing: PricingSettings,
    allow_overdraft: bool = False,
) -> ConsumptionPlan:
    """
    Decide how `minutes` of `mode` transcription are funded.

    Admin-granted free-trial minutes go first (any mode), then included
    subscription minutes, then legacy credits in whole minutes, then the
    wallet at the per-minute rate. Every source is measured net of what
    in-flight jobs already hold. Without `allow_overdraft` a wallet that
    cannot cover its share makes the plan insufficient; with it the wallet
    is simply charged, which is what settlement of a job that already ran
    needs.
    """
    if minutes < 0:
        raise ValueError("minutes must not be negative")

    from_free_trial = min(minutes, account.available_free_trial_minutes)
    remaining = minutes - from_free_trial

    covered = subscription_covers(account, mode)
    from_subscription = min(remaining, account.available_minutes) if covered else 0
    overage = remaining - from_subscription

    credit_rate = pricing.credits_per_minute.for_mode(mode)
    credit_minutes = min(overage, account.available_credits // credit_rate)
    credits_used = credit_minutes * credit_rate

    wallet_minutes = overage - credit_minutes
    wallet_amount = to_cents(Decimal(wallet_minutes) * pricing.pay_as_you_go.for_mode(mode))
    shortfall = ZERO
    if wallet_minutes and wallet_amount > account.available_wallet:
        shortfall = to_cents(wallet_amount - account.available_wallet)

    if from_free_trial and not from_subscription and not overage:
        usage_source = UsageSource.FREE_TRIAL
    elif covered:
        usage_source = UsageSource.OVERAGE if overage else UsageSource.SUBSCRIPTION
    else:
        usage_source = UsageSource.CREDITS

    if shortfall > 0 and not allow_overdraft:
        source = ConsumptionSource.INSUFFICIENT
    elif wallet_minutes:
        source = ConsumptionSource.WALLET
    elif credit_minutes:
        source = ConsumptionSource.CREDITS
    elif from_subscription or (covered and not from_free_trial):
        source = ConsumptionSource.SUBSCRIPTION
    elif from_free_trial:
        source = ConsumptionSource.FREE_TRIAL
    else:
        source = ConsumptionSource.CREDITS

    return ConsumptionPlan(
        source=source,
        usage_source=usage_source,
        minutes=minutes,
        minutes_from_free_trial=from_free_trial,
        minutes_from_subscription=from_subscription,
        overage_minutes=overage,
        credit_minutes=credit_minutes,
        credits_used=credits_used,
        wallet_minutes=wallet_minutes,
        wallet_amount=wallet_amount,
        shortfall=shortfall if not allow_overdraft else ZERO,
    )
