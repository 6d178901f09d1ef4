from decimal import Decimal

import pytest

from transcription_service.errors import NotFoundError, ValidationFailed
from transcription_service.models.transaction import TransactionType
from transcription_service.models.user import UserRole


@pytest.mark.asyncio
async def test_admin_set_wallet_records_signed_adjustment(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", wallet="30")

    tx = await wallet.admin_set_wallet(admin, "u1", Decimal("50"))

    assert (await db.get_user("u1")).wallet_balance == Decimal("50.00")
    assert tx.transaction_type == TransactionType.ADJUSTMENT
    assert tx.amount == Decimal("20.00")
    assert tx.balance_after == Decimal("50.00")
    assert tx.admin_id == "admin-1"
    assert tx.admin_email == "admin-1@example.com"
    assert len(list(await db.get_transactions("u1"))) == 1


@pytest.mark.asyncio
async def test_admin_set_wallet_decrease(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", wallet="30")

    tx = await wallet.admin_set_wallet(admin, "u1", Decimal("12.5"))

    assert tx.amount == Decimal("-17.50")
    assert (await db.get_user("u1")).wallet_balance == Decimal("12.50")


@pytest.mark.asyncio
async def test_admin_set_wallet_rejects_negative(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", wallet="30")

    with pytest.raises(ValidationFailed, match="non-negative"):
        await wallet.admin_set_wallet(admin, "u1", Decimal("-1"))
    assert (await db.get_user("u1")).wallet_balance == Decimal("30.00")
    assert list(await db.get_transactions("u1")) == []


@pytest.mark.asyncio
async def test_admin_set_wallet_unchanged_is_noop(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", wallet="30")

    assert await wallet.admin_set_wallet(admin, "u1", Decimal("30.00")) is None
    assert list(await db.get_transactions("u1")) == []


@pytest.mark.asyncio
async def test_admin_set_wallet_unknown_user(wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    with pytest.raises(NotFoundError):
        await wallet.admin_set_wallet(admin, "missing", Decimal("10"))


@pytest.mark.asyncio
async def test_admin_set_credits(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", credits=10)

    tx = await wallet.admin_set_credits(admin, "u1", 4)

    assert tx.transaction_type == TransactionType.ADMIN_DEDUCT
    assert tx.credits == -6
    assert (await db.get_user("u1")).credits == 4
    with pytest.raises(ValidationFailed):
        await wallet.admin_set_credits(admin, "u1", -1)


@pytest.mark.asyncio
async def test_admin_set_free_trial(db, wallet, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await make_user("u1", free_trial=10)

    tx = await wallet.admin_set_free_trial(admin, "u1", 60, reason="Onboarding call")

    assert (await db.get_user("u1")).free_trial_minutes == 60
    assert tx.transaction_type == TransactionType.FREE_TRIAL_ADJUSTMENT
    assert tx.description == "Onboarding call"
    assert tx.amount == Decimal("0.00")
    assert tx.metadata == {"previous_minutes": 10, "new_minutes": 60, "minutes_change": 50}
    assert tx.admin_id == "admin-1"

    assert await wallet.admin_set_free_trial(admin, "u1", 60) is None
    with pytest.raises(ValidationFailed, match="freeTrialMinutes"):
        await wallet.admin_set_free_trial(admin, "u1", -5)
    assert len(list(await db.get_transactions("u1"))) == 1

    snapshot = await wallet.get_wallet("u1")
    assert snapshot.free_trial_minutes == 60

@pytest.mark.asyncio
async def test_top_up_with_reference_is_idempotent(db, wallet, make_user):
    await make_user("u1", wallet="5")

    first = await wallet.top_up("u1", Decimal("20"), reference="pi_1")
    second = await wallet.top_up("u1", Decimal("20"), reference="pi_1")

    assert first.id == second.id
    assert (await db.get_user("u1")).wallet_balance == Decimal("25.00")

    snapshot = await wallet.get_wallet("u1")
    assert snapshot.wallet_balance == Decimal("25.00")
    assert [t.transaction_type for t in snapshot.transactions] == [TransactionType.WALLET_TOPUP]


@pytest.mark.asyncio
async def test_top_up_rejects_non_positive(wallet, make_user):
    await make_user("u1")
    with pytest.raises(ValidationFailed, match="positive"):
        await wallet.top_up("u1", Decimal("0"))
