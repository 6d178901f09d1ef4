from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import Field

from ..db.base import BaseDBManager
from ..errors import (
    ConflictError,
    DuplicateDocumentError,
    InsufficientFundsError,
    NotFoundError,
    ValidationFailed,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import ApiModel
from ..models.base import utcnow
from ..models.job import TranscriptionMode
from ..models.subscription import get_plan
from ..models.transaction import Transaction, TransactionType
from ..models.usage import MinuteReservation, UsageRecord, UsageSource
from ..models.user import UserAccount
from .accounts import AccountChange, get_account, mutate_account
from .consumption import ZERO, ConsumptionPlan, ConsumptionSource, plan_consumption, to_cents
from .notification_service import NotificationService
from .pricing_service import PricingService


logger = logging.getLogger(__name__)

USAGE_ALERT_THRESHOLDS = (50, 75, 90, 100)


def minutes_for_duration(seconds: float) -> int:
    """Billable minutes for an audio duration: whole minutes, rounded up."""
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


class UsageSummary(ApiModel):
    plan_id: str
    plan_name: Optional[str] = None
    status: str
    included_minutes: int
    minutes_used: int
    minutes_reserved: int
    minutes_remaining: int
    percentage_used: float
    billing_cycle_start: Optional[datetime] = None
    billing_cycle_end: Optional[datetime] = None
    days_remaining: Optional[int] = None
    overage_minutes: int = 0
    overage_credits_used: int = 0
    overage_charges: Decimal = ZERO
    wallet_balance: Decimal = ZERO
    credits: int = 0
    free_trial_minutes: int = 0


class ModeUsage(ApiModel):
    jobs: int = 0
    minutes: int = 0
    credits_used: int = 0
    wallet_charged: Decimal = ZERO


class UsageStats(ApiModel):
    total_jobs: int = 0
    total_minutes: int = 0
    total_credits_used: int = 0
    total_wallet_charged: Decimal = ZERO
    by_mode: Dict[str, ModeUsage] = Field(default_factory=dict)
    by_source: Dict[str, int] = Field(default_factory=dict)


class AccessCheck(ApiModel):
    allowed: bool
    source: ConsumptionSource
    minutes: int
    minutes_from_free_trial: int
    minutes_from_subscription: int
    overage_minutes: int
    credits_needed: int
    wallet_amount: Decimal
    shortfall: Decimal

    @classmethod
    def from_plan(cls, plan: ConsumptionPlan) -> "AccessCheck":
        return cls(
            allowed=plan.sufficient,
            source=plan.source,
            minutes=plan.minutes,
            minutes_from_free_trial=plan.minutes_from_free_trial,
            minutes_from_subscription=plan.minutes_from_subscription,
            overage_minutes=plan.overage_minutes,
            credits_needed=plan.credits_used,
            wallet_amount=plan.wallet_amount,
            shortfall=plan.shortfall,
        )


class UsageService:
    """
    Minute accounting for transcription jobs: reserve on start, settle
    actual usage on completion, release on failure.

    Account writes go through `mutate_account`, so the read-compare-write
    for a reservation is atomic against concurrent jobs of the same user.
    Reservations are closed with a conditional update, so a job is
    settled or released exactly once.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        pricing: PricingService,
        notifications: Optional[NotificationService] = None,
        low_wallet_threshold: Decimal = Decimal("5.00"),
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._pricing = pricing
        self._notifications = notifications
        self._low_wallet_threshold = low_wallet_threshold

    async def check_access(
        self, user_id: str, mode: TranscriptionMode, minutes: int
    ) -> AccessCheck:
        if minutes < 0:
            raise ValidationFailed("minutes must not be negative", {"minutes": minutes})
        account = await get_account(self._db, user_id)
        pricing = await self._pricing.get_pricing()
        return AccessCheck.from_plan(plan_consumption(account, minutes, mode, pricing))

    async def reserve_minutes(
        self,
        user_id: str,
        job_id: str,
        mode: TranscriptionMode,
        estimated_minutes: int,
    ) -> MinuteReservation:
        """
        Hold funds for `estimated_minutes` of a job: the free-trial and
        subscription minutes, the credits and the wallet money the estimate
        would draw.

        Raises InsufficientFundsError (and writes nothing) when what is
        left after other in-flight holds cannot cover the estimate.
        """
        if estimated_minutes < 0:
            raise ValidationFailed(
                "estimated minutes must not be negative",
                {"estimated_minutes": estimated_minutes},
            )
        pricing = await self._pricing.get_pricing()

        def hold(account: UserAccount) -> ConsumptionPlan:
            plan = plan_consumption(account, estimated_minutes, mode, pricing)
            if not plan.sufficient:
                raise InsufficientFundsError(
                    plan.shortfall,
                    {
                        "minutes": estimated_minutes,
                        "mode": mode.value,
                        "wallet_needed": str(plan.wallet_amount),
                    },
                )
            account.minutes_reserved += plan.minutes_from_subscription
            account.free_trial_reserved += plan.minutes_from_free_trial
            account.credits_reserved += plan.credits_used
            account.wallet_reserved = to_cents(account.wallet_reserved + plan.wallet_amount)
            return plan

        async def reserve() -> Tuple[AccountChange, MinuteReservation]:
            existing = await self._db.get_reservation(job_id)
            if existing is not None and not existing.released:
                raise ConflictError("job already has a minute reservation", {"job_id": job_id})

            change = await mutate_account(self._db, user_id, hold)
            plan: ConsumptionPlan = change.result
            reservation = MinuteReservation(
                user_id=user_id,
                job_id=job_id,
                mode=mode,
                estimated_minutes=estimated_minutes,
                reserved_minutes=plan.minutes_from_subscription,
                free_trial_reserved=plan.minutes_from_free_trial,
                credits_reserved=plan.credits_used,
                wallet_reserved=plan.wallet_amount,
            )
            try:
                reservation = await self._db.add_reservation(reservation)
            except DuplicateDocumentError as exc:
                await self._return_hold(reservation)
                raise ConflictError(
                    "job already has a minute reservation", {"job_id": job_id}
                ) from exc
            return change, reservation

        try:
            change, reservation = await self._db.run_in_transaction(reserve)
        except InsufficientFundsError as exc:
            await self._ledger.log_error(
                message="Insufficient funds to start job",
                details={"estimated_minutes": estimated_minutes, **exc.details},
                user_id=user_id,
                correlation_id=job_id,
            )
            raise

        await self._ledger.log_usage(
            user_id=user_id,
            message="Minutes reserved",
            details={
                "estimated_minutes": estimated_minutes,
                "reserved_minutes": reservation.reserved_minutes,
                "free_trial_reserved": reservation.free_trial_reserved,
                "credits_reserved": reservation.credits_reserved,
                "wallet_reserved": reservation.wallet_reserved,
                "source": change.result.source.value,
                "minutes_reserved_total": change.after.minutes_reserved,
            },
            correlation_id=job_id,
        )
        return reservation

    async def commit_reservation(self, job_id: str, actual_minutes: int) -> UsageRecord:
        """
        Convert a job's reservation into actual usage, in one logical step:
        release the hold, charge `actual_minutes` (free trial, subscription,
        credits, then wallet) and write the job's single UsageRecord.

        The job already ran, so the wallet is charged even if that takes it
        below zero. Settling a job twice returns the original record.
        """
        if actual_minutes < 0:
            raise ValidationFailed(
                "actual minutes must not be negative", {"actual_minutes": actual_minutes}
            )
        record_id = UsageRecord.id_for_job(job_id)
        existing = await self._db.get_usage_record(record_id)
        if existing is not None:
            return existing
        pricing = await self._pricing.get_pricing()

        async def settle_job() -> Optional[Tuple[MinuteReservation, AccountChange, UsageRecord]]:
            reservation = await self._db.close_reservation(job_id, committed=True)
            if reservation is None:
                return None

            def settle(account: UserAccount) -> ConsumptionPlan:
                account.release_hold(reservation)
                plan = plan_consumption(
                    account, actual_minutes, reservation.mode, pricing, allow_overdraft=True
                )
                account.free_trial_minutes -= plan.minutes_from_free_trial
                account.minutes_used_this_month += plan.minutes_from_subscription
                account.credits -= plan.credits_used
                account.wallet_balance = to_cents(account.wallet_balance - plan.wallet_amount)
                return plan

            change = await mutate_account(self._db, reservation.user_id, settle)
            plan: ConsumptionPlan = change.result
            account = change.after

            record = await self._db.add_usage_record(
                UsageRecord(
                    id=record_id,
                    user_id=reservation.user_id,
                    job_id=job_id,
                    mode=reservation.mode,
                    source=plan.usage_source,
                    minutes_used=actual_minutes,
                    minutes_from_free_trial=plan.minutes_from_free_trial,
                    minutes_from_subscription=plan.minutes_from_subscription,
                    overage_minutes=plan.overage_minutes,
                    credits_used=plan.credits_used,
                    wallet_charged=plan.wallet_amount,
                    billing_cycle_start=account.billing_cycle_start,
                    billing_cycle_end=account.billing_cycle_end,
                )
            )
            if plan.credits_used or plan.wallet_amount:
                await self._db.add_transaction(
                    Transaction(
                        user_id=reservation.user_id,
                        transaction_type=TransactionType.TRANSCRIPTION,
                        amount=-plan.wallet_amount,
                        credits=-plan.credits_used,
                        balance_after=account.wallet_balance,
                        credits_after=account.credits,
                        source=plan.usage_source.value,
                        reference=job_id,
                        description=f"{actual_minutes} min {reservation.mode.value} transcription",
                    )
                )
            return reservation, change, record

        settled = await self._db.run_in_transaction(settle_job)
        if settled is None:
            return await self._already_closed(job_id, record_id)
        reservation, change, record = settled
        plan = change.result
        account = change.after

        await self._ledger.log_usage(
            user_id=reservation.user_id,
            message="Reserved minutes settled",
            details={
                "estimated_minutes": reservation.estimated_minutes,
                "released_minutes": reservation.reserved_minutes,
                "actual_minutes": actual_minutes,
                "source": plan.usage_source.value,
                "minutes_from_free_trial": plan.minutes_from_free_trial,
                "minutes_from_subscription": plan.minutes_from_subscription,
                "overage_minutes": plan.overage_minutes,
                "credits_used": plan.credits_used,
                "wallet_charged": plan.wallet_amount,
                "wallet_balance": account.wallet_balance,
            },
            correlation_id=job_id,
        )
        try:
            await self._notify_after_usage(change.before, account)
        except Exception:
            # Usage is already settled.
            logger.exception("Could not queue usage alerts for job %s", job_id)
        return record

    async def release_reservation(self, job_id: str) -> Optional[MinuteReservation]:
        """
        Failure path: give back exactly what was held for the job.
        No usage record and no charge. Returns None if there was nothing
        open to release.
        """

        async def release() -> Optional[Tuple[MinuteReservation, AccountChange]]:
            reservation = await self._db.close_reservation(job_id, committed=False)
            if reservation is None:
                return None
            return reservation, await self._return_hold(reservation)

        released = await self._db.run_in_transaction(release)
        if released is None:
            logger.info("No open reservation to release for job %s", job_id)
            return None
        reservation, change = released
        await self._ledger.log_usage(
            user_id=reservation.user_id,
            message="Reserved minutes released",
            details={
                "released_minutes": reservation.reserved_minutes,
                "free_trial_released": reservation.free_trial_reserved,
                "credits_released": reservation.credits_reserved,
                "wallet_released": reservation.wallet_reserved,
                "minutes_reserved_total": change.after.minutes_reserved,
            },
            correlation_id=job_id,
        )
        return reservation

    async def reset_monthly_usage(
        self,
        user_id: str,
        cycle_start: Optional[datetime] = None,
        cycle_end: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> UserAccount:
        """Start a new billing cycle. Safe to apply repeatedly."""

        def reset(account: UserAccount) -> None:
            account.minutes_used_this_month = 0
            account.minutes_reserved = 0
            if cycle_start is not None:
                account.billing_cycle_start = cycle_start
            if cycle_end is not None:
                account.billing_cycle_end = cycle_end

        change = await mutate_account(self._db, user_id, reset)
        await self._ledger.log_usage(
            user_id=user_id,
            message="Monthly usage reset",
            details={
                "previous_minutes_used": change.before.minutes_used_this_month,
                "previous_minutes_reserved": change.before.minutes_reserved,
                "cycle_start": cycle_start,
                "cycle_end": cycle_end,
            },
            correlation_id=correlation_id,
        )
        return change.after

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        account = await get_account(self._db, user_id)
        plan = get_plan(account.subscription_plan)
        included = account.included_minutes_per_month

        records = await self._db.get_usage_records(
            user_id=user_id, since=account.billing_cycle_start
        )
        overage = [r for r in records if r.source == UsageSource.OVERAGE]

        days_remaining: Optional[int] = None
        if account.billing_cycle_end is not None:
            seconds_left = (account.billing_cycle_end - utcnow()).total_seconds()
            days_remaining = max(0, math.ceil(seconds_left / 86400))

        percentage = 0.0
        if included:
            percentage = round(account.minutes_used_this_month / included * 100, 1)

        return UsageSummary(
            plan_id=account.subscription_plan,
            plan_name=plan.name if plan else None,
            status=account.subscription_status.value,
            included_minutes=included,
            minutes_used=account.minutes_used_this_month,
            minutes_reserved=account.minutes_reserved,
            minutes_remaining=account.available_minutes,
            percentage_used=percentage,
            billing_cycle_start=account.billing_cycle_start,
            billing_cycle_end=account.billing_cycle_end,
            days_remaining=days_remaining,
            overage_minutes=sum(r.overage_minutes for r in overage),
            overage_credits_used=sum(r.credits_used for r in overage),
            overage_charges=sum((r.wallet_charged for r in overage), ZERO),
            wallet_balance=account.wallet_balance,
            credits=account.credits,
            free_trial_minutes=account.available_free_trial_minutes,
        )

    async def get_usage_history(self, user_id: str, limit: int = 50) -> List[UsageRecord]:
        return await self._db.get_usage_records(user_id=user_id, limit=limit)

    @staticmethod
    def calculate_usage_stats(records: Iterable[UsageRecord]) -> UsageStats:
        stats = UsageStats()
        for record in records:
            stats.total_jobs += 1
            stats.total_minutes += record.minutes_used
            stats.total_credits_used += record.credits_used
            stats.total_wallet_charged += record.wallet_charged

            mode = stats.by_mode.setdefault(record.mode.value, ModeUsage())
            mode.jobs += 1
            mode.minutes += record.minutes_used
            mode.credits_used += record.credits_used
            mode.wallet_charged += record.wallet_charged

            source = record.source.value
            stats.by_source[source] = stats.by_source.get(source, 0) + record.minutes_used
        return stats

    async def _already_closed(self, job_id: str, record_id: str) -> UsageRecord:
        current = await self._db.get_reservation(job_id)
        if current is None:
            raise NotFoundError(f"no minute reservation for job {job_id}")
        if current.released:
            raise ConflictError(
                "reservation was released; the job cannot be billed", {"job_id": job_id}
            )
        existing = await self._db.get_usage_record(record_id)
        if existing is None:
            raise ConflictError("job is already being settled", {"job_id": job_id})
        return existing

    async def _return_hold(self, reservation: MinuteReservation) -> AccountChange:
        def give_back(account: UserAccount) -> None:
            account.release_hold(reservation)

        return await mutate_account(self._db, reservation.user_id, give_back)

    async def _notify_after_usage(self, before: UserAccount, after: UserAccount) -> None:
        if self._notifications is None or after.id is None:
            return
        included = after.included_minutes_per_month
        if included:
            pct_before = before.minutes_used_this_month / included * 100
            pct_after = after.minutes_used_this_month / included * 100
            for threshold in USAGE_ALERT_THRESHOLDS:
                if pct_before < threshold <= pct_after:
                    await self._notifications.notify_usage_threshold(
                        after.id, threshold, after.minutes_used_this_month, included
                    )
        if before.wallet_balance > self._low_wallet_threshold >= after.wallet_balance:
            await self._notifications.notify_low_wallet(after.id, after.wallet_balance)
