import asyncio
from decimal import Decimal

import pytest

from transcription_service.db.memory import InMemoryDBManager
from transcription_service.errors import ConflictError, InsufficientFundsError, ValidationFailed
from transcription_service.models.job import TranscriptionMode
from transcription_service.models.notification import NotificationType
from transcription_service.models.transaction import TransactionType
from transcription_service.models.usage import UsageSource
from transcription_service.services.pricing_service import PricingService
from transcription_service.services.usage_service import UsageService, minutes_for_duration


@pytest.mark.asyncio
async def test_reserve_then_commit_within_subscription(db, usage, make_user):
    await make_user("u1", plan="ai-professional")

    reservation = await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 100)
    assert reservation.reserved_minutes == 100
    assert (await db.get_user("u1")).minutes_reserved == 100

    record = await usage.commit_reservation("job-1", 95)
    user = await db.get_user("u1")
    assert user.minutes_used_this_month == 95
    assert user.minutes_reserved == 0
    assert record.id == "usage-job-1"
    assert record.source == UsageSource.SUBSCRIPTION
    assert record.credits_used == 0
    assert record.wallet_charged == Decimal("0.00")
    assert list(await db.get_transactions("u1")) == []


@pytest.mark.asyncio
async def test_overage_is_charged_to_wallet(db, usage, make_user):
    await make_user("u1", plan="ai-professional", minutes_used=95, wallet="50")

    reservation = await usage.reserve_minutes("u1", "job-2", TranscriptionMode.AI, 700)
    assert reservation.reserved_minutes == 655

    record = await usage.commit_reservation("job-2", 700)
    user = await db.get_user("u1")
    assert record.source == UsageSource.OVERAGE
    assert record.minutes_from_subscription == 655
    assert record.overage_minutes == 45
    assert record.wallet_charged == Decimal("18.00")
    assert user.wallet_balance == Decimal("32.00")
    assert user.minutes_used_this_month == 750
    assert user.minutes_reserved == 0

    [tx] = list(await db.get_transactions("u1"))
    assert tx.transaction_type == TransactionType.TRANSCRIPTION
    assert tx.amount == Decimal("-18.00")
    assert tx.reference == "job-2"


@pytest.mark.asyncio
async def test_reserve_insufficient_writes_nothing(db, usage, make_user):
    await make_user("u1", plan="ai-starter", minutes_used=300, wallet="1")

    with pytest.raises(InsufficientFundsError) as excinfo:
        await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 10)

    assert excinfo.value.shortfall == Decimal("3.00")
    assert excinfo.value.details["shortfall"] == "3.00"
    user = await db.get_user("u1")
    assert user.minutes_reserved == 0
    assert user.version == 0
    assert await db.get_reservation("job-1") is None


@pytest.mark.asyncio
async def test_release_returns_exactly_reserved_minutes(db, usage, make_user):
    await make_user("u1", plan="ai-professional", minutes_used=10)
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 40)
    await usage.reserve_minutes("u1", "job-2", TranscriptionMode.AI, 25)

    released = await usage.release_reservation("job-1")

    assert released.reserved_minutes == 40
    user = await db.get_user("u1")
    assert user.minutes_reserved == 25
    assert user.minutes_used_this_month == 10
    assert await db.get_usage_record("usage-job-1") is None
    # Second release is a no-op.
    assert await usage.release_reservation("job-1") is None
    assert (await db.get_user("u1")).minutes_reserved == 25


@pytest.mark.asyncio
async def test_commit_is_idempotent(db, usage, make_user):
    await make_user("u1", plan="ai-professional", wallet="5")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)

    first = await usage.commit_reservation("job-1", 30)
    second = await usage.commit_reservation("job-1", 30)

    assert first == second
    user = await db.get_user("u1")
    assert user.minutes_used_this_month == 30
    assert len(await db.get_usage_records(user_id="u1")) == 1


@pytest.mark.asyncio
async def test_commit_after_release_is_rejected(usage, make_user):
    await make_user("u1", plan="ai-professional")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)
    await usage.release_reservation("job-1")

    with pytest.raises(ConflictError, match="released"):
        await usage.commit_reservation("job-1", 30)


@pytest.mark.asyncio
async def test_duplicate_reservation_is_rejected(db, usage, make_user):
    await make_user("u1", plan="ai-professional")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)

    with pytest.raises(ConflictError):
        await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)
    assert (await db.get_user("u1")).minutes_reserved == 30


@pytest.mark.asyncio
async def test_released_reservation_can_be_reserved_again(db, usage, make_user):
    await make_user("u1", plan="ai-professional")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)
    await usage.release_reservation("job-1")

    again = await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 30)

    assert again.is_open
    assert (await db.get_user("u1")).minutes_reserved == 30


class InterleavingDB(InMemoryDBManager):
    """Yields to the loop after each read so concurrent writers collide."""

    async def get_user(self, user_id):
        user = await super().get_user(user_id)
        await asyncio.sleep(0)
        return user


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overcommit(tmp_path):
    from transcription_service.logging.ledger_logger import LedgerLogger
    from transcription_service.models.subscription import SubscriptionStatus
    from transcription_service.models.user import UserAccount

    db = InterleavingDB()
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    usage = UsageService(db=db, ledger=ledger, pricing=PricingService(db=db, ledger=ledger))
    await db.add_user(
        UserAccount(
            id="u1",
            subscription_plan="ai-starter",
            subscription_status=SubscriptionStatus.ACTIVE,
            included_minutes_per_month=300,
        )
    )

    results = await asyncio.gather(
        usage.reserve_minutes("u1", "job-a", TranscriptionMode.AI, 200),
        usage.reserve_minutes("u1", "job-b", TranscriptionMode.AI, 200),
        return_exceptions=True,
    )

    # Both jobs read 300 available minutes, but only one hold may win on
    # that state; the loser is re-decided and runs out of funds.
    reserved = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, InsufficientFundsError)]
    assert len(reserved) == 1
    assert len(failed) == 1
    user = await db.get_user("u1")
    assert user.minutes_reserved == 200
    assert user.minutes_reserved <= user.included_minutes_per_month


@pytest.mark.asyncio
async def test_reset_monthly_usage_is_repeatable(db, usage, make_user):
    await make_user("u1", plan="ai-professional", minutes_used=120, minutes_reserved=30)

    await usage.reset_monthly_usage("u1")
    user = await usage.reset_monthly_usage("u1")

    assert user.minutes_used_this_month == 0
    assert user.minutes_reserved == 0


@pytest.mark.asyncio
async def test_usage_threshold_notifications(db, usage, make_user):
    await make_user("u1", plan="ai-starter", minutes_used=140)
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 90)
    await usage.commit_reservation("job-1", 90)

    events = await db.get_notification_events("u1")
    thresholds = [
        e.payload["threshold"] for e in events if e.notification_type == NotificationType.USAGE_THRESHOLD
    ]
    assert thresholds == [50, 75]


@pytest.mark.asyncio
async def test_usage_summary_and_stats(usage, make_user):
    await make_user("u1", plan="ai-professional", minutes_used=700, wallet="20")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 60)
    await usage.commit_reservation("job-1", 60)

    summary = await usage.get_usage_summary("u1")
    assert summary.plan_name == "AI Professional"
    assert summary.minutes_used == 750
    assert summary.minutes_remaining == 0
    assert summary.percentage_used == 100.0
    assert summary.overage_minutes == 10
    assert summary.overage_charges == Decimal("4.00")

    stats = UsageService.calculate_usage_stats(await usage.get_usage_history("u1"))
    assert stats.total_jobs == 1
    assert stats.total_minutes == 60
    assert stats.by_mode["ai"].wallet_charged == Decimal("4.00")
    assert stats.by_source == {"overage": 60}


@pytest.mark.asyncio
async def test_check_access(usage, make_user):
    await make_user("u1", plan="ai-starter", minutes_used=300, wallet="2")

    check = await usage.check_access("u1", TranscriptionMode.AI, 10)
    assert not check.allowed
    assert check.shortfall == Decimal("2.00")

    with pytest.raises(ValidationFailed):
        await usage.check_access("u1", TranscriptionMode.AI, -5)


@pytest.mark.asyncio
async def test_wallet_holds_stop_sequential_reservations(db, usage, make_user):
    await make_user("u1", wallet="1.00")

    first = await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 2)
    assert first.wallet_reserved == Decimal("0.80")

    rejected = 0
    for n in range(2, 6):
        with pytest.raises(InsufficientFundsError) as excinfo:
            await usage.reserve_minutes("u1", f"job-{n}", TranscriptionMode.AI, 2)
        assert excinfo.value.shortfall == Decimal("0.60")
        rejected += 1

    assert rejected == 4
    user = await db.get_user("u1")
    assert user.wallet_balance == Decimal("1.00")
    assert user.wallet_reserved == Decimal("0.80")
    assert user.available_wallet == Decimal("0.20")

    await usage.commit_reservation("job-1", 2)
    user = await db.get_user("u1")
    assert user.wallet_balance == Decimal("0.20")
    assert user.wallet_reserved == Decimal("0.00")


@pytest.mark.asyncio
async def test_check_access_counts_held_wallet(usage, make_user):
    await make_user("u1", wallet="1.00")
    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 2)

    check = await usage.check_access("u1", TranscriptionMode.AI, 2)

    assert not check.allowed
    assert check.shortfall == Decimal("0.60")


@pytest.mark.asyncio
async def test_credit_holds_are_returned_on_release(db, usage, make_user):
    await make_user("u1", credits=10, wallet="2.00")

    reservation = await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 12)
    assert reservation.credits_reserved == 10
    assert reservation.wallet_reserved == Decimal("0.80")
    user = await db.get_user("u1")
    assert user.available_credits == 0

    # Nothing left in credits, so the next job goes straight to the wallet.
    other = await usage.reserve_minutes("u1", "job-2", TranscriptionMode.AI, 1)
    assert other.credits_reserved == 0
    assert other.wallet_reserved == Decimal("0.40")

    await usage.release_reservation("job-1")

    user = await db.get_user("u1")
    assert user.credits == 10
    assert user.credits_reserved == 0
    assert user.wallet_balance == Decimal("2.00")
    assert user.wallet_reserved == Decimal("0.40")


@pytest.mark.asyncio
async def test_free_trial_is_used_before_subscription(db, usage, make_user):
    await make_user("u1", plan="ai-professional", free_trial=30)

    reservation = await usage.reserve_minutes("u1", "job-1", TranscriptionMode.AI, 50)
    assert reservation.free_trial_reserved == 30
    assert reservation.reserved_minutes == 20

    record = await usage.commit_reservation("job-1", 40)

    user = await db.get_user("u1")
    assert record.minutes_from_free_trial == 30
    assert record.minutes_from_subscription == 10
    assert user.free_trial_minutes == 0
    assert user.free_trial_reserved == 0
    assert user.minutes_used_this_month == 10
    assert user.minutes_reserved == 0


@pytest.mark.asyncio
async def test_free_trial_covers_modes_outside_the_plan(db, usage, make_user):
    await make_user("u1", plan="ai-starter", free_trial=60)

    await usage.reserve_minutes("u1", "job-1", TranscriptionMode.HYBRID, 45)
    record = await usage.commit_reservation("job-1", 45)

    assert record.source == UsageSource.FREE_TRIAL
    assert record.wallet_charged == Decimal("0.00")
    user = await db.get_user("u1")
    assert user.free_trial_minutes == 15
    assert user.minutes_used_this_month == 0
    assert list(await db.get_transactions("u1")) == []

def test_minutes_for_duration_rounds_up():
    assert minutes_for_duration(0) == 0
    assert minutes_for_duration(1) == 1
    assert minutes_for_duration(60) == 1
    assert minutes_for_duration(61) == 2
