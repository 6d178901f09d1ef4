from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import ValidationFailed
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import ApiModel
from ..models.transaction import Transaction, TransactionType
from ..models.user import UserAccount
from .accounts import AccountChange, get_account, mutate_account
from .consumption import to_cents


logger = logging.getLogger(__name__)

ADMIN_ADJUSTMENT_SOURCE = "admin_adjustment"


class WalletSnapshot(ApiModel):
    user_id: str
    wallet_balance: Decimal
    credits: int
    free_trial_minutes: int = 0
    transactions: List[Transaction]


class WalletService:
    """
    Wallet, legacy-credit and free-trial balance changes outside of job
    settlement: top-ups, refunds and admin adjustments. Each change writes
    exactly one Transaction.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def get_wallet(self, user_id: str, limit: int = 20) -> WalletSnapshot:
        account = await get_account(self._db, user_id)
        transactions = await self._db.get_transactions(user_id, limit=limit)
        return WalletSnapshot(
            user_id=user_id,
            wallet_balance=account.wallet_balance,
            credits=account.credits,
            free_trial_minutes=account.free_trial_minutes,
            transactions=list(transactions),
        )

    async def top_up(
        self,
        user_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
        source: str = "stripe",
    ) -> Transaction:
        """
        Credit the wallet. With a gateway `reference` (payment intent id)
        a repeated call returns the original transaction instead of paying
        out twice.
        """
        return await self._credit_wallet(
            user_id, amount, TransactionType.WALLET_TOPUP, reference, source, "Wallet top-up"
        )

    async def refund(
        self,
        user_id: str,
        amount: Decimal,
        job_id: str,
        reason: Optional[str] = None,
    ) -> Transaction:
        return await self._credit_wallet(
            user_id, amount, TransactionType.REFUND, job_id, "refund", reason or "Refund"
        )

    async def admin_set_wallet(
        self, admin: UserAccount, user_id: str, new_balance: Decimal
    ) -> Optional[Transaction]:
        """
        Set a user's wallet to an absolute amount. Records one `adjustment`
        transaction carrying the signed difference; no-op when unchanged.
        """
        if new_balance < 0:
            raise ValidationFailed(
                "walletBalance must be a non-negative number",
                {"walletBalance": str(new_balance)},
            )
        target = to_cents(new_balance)
        current = await get_account(self._db, user_id)
        if current.wallet_balance == target:
            return None

        def assign(account: UserAccount) -> None:
            account.wallet_balance = target

        async def adjust() -> Tuple[AccountChange, Transaction]:
            change = await mutate_account(self._db, user_id, assign)
            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    transaction_type=TransactionType.ADJUSTMENT,
                    amount=target - change.before.wallet_balance,
                    balance_after=target,
                    source=ADMIN_ADJUSTMENT_SOURCE,
                    description="Admin wallet adjustment",
                    admin_id=admin.id,
                    admin_email=admin.email,
                    metadata={"previous_balance": str(change.before.wallet_balance)},
                )
            )
            return change, tx

        change, tx = await self._db.run_in_transaction(adjust)
        await self._ledger.log_balance(
            user_id=user_id,
            message="Wallet adjusted by admin",
            details={
                "previous_balance": change.before.wallet_balance,
                "new_balance": target,
                "amount": tx.amount,
                "admin_id": admin.id,
            },
        )
        return tx

    async def admin_set_credits(
        self, admin: UserAccount, user_id: str, credits: int
    ) -> Optional[Transaction]:
        if credits < 0:
            raise ValidationFailed("credits must be a non-negative integer", {"credits": credits})
        current = await get_account(self._db, user_id)
        if current.credits == credits:
            return None

        def assign(account: UserAccount) -> None:
            account.credits = credits

        async def adjust() -> Tuple[AccountChange, Transaction]:
            change = await mutate_account(self._db, user_id, assign)
            delta = credits - change.before.credits
            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    transaction_type=(
                        TransactionType.ADMIN_ADD if delta > 0 else TransactionType.ADMIN_DEDUCT
                    ),
                    credits=delta,
                    credits_after=credits,
                    source=ADMIN_ADJUSTMENT_SOURCE,
                    description="Admin credit adjustment",
                    admin_id=admin.id,
                    admin_email=admin.email,
                )
            )
            return change, tx

        change, tx = await self._db.run_in_transaction(adjust)
        await self._ledger.log_balance(
            user_id=user_id,
            message="Credits adjusted by admin",
            details={
                "previous_credits": change.before.credits,
                "new_credits": credits,
                "admin_id": admin.id,
            },
        )
        return tx

    async def admin_set_free_trial(
        self,
        admin: UserAccount,
        user_id: str,
        minutes: int,
        reason: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Set the admin-granted free-trial allowance to an absolute number of
        minutes. Minutes already held by running jobs stay held.
        """
        if minutes < 0:
            raise ValidationFailed(
                "freeTrialMinutes must be a non-negative integer", {"freeTrialMinutes": minutes}
            )
        current = await get_account(self._db, user_id)
        if current.free_trial_minutes == minutes:
            return None

        def assign(account: UserAccount) -> None:
            account.free_trial_minutes = minutes

        async def adjust() -> Tuple[AccountChange, Transaction]:
            change = await mutate_account(self._db, user_id, assign)
            previous = change.before.free_trial_minutes
            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    transaction_type=TransactionType.FREE_TRIAL_ADJUSTMENT,
                    source=ADMIN_ADJUSTMENT_SOURCE,
                    description=reason or f"Admin adjusted free trial minutes to {minutes}",
                    admin_id=admin.id,
                    admin_email=admin.email,
                    metadata={
                        "previous_minutes": previous,
                        "new_minutes": minutes,
                        "minutes_change": minutes - previous,
                    },
                )
            )
            return change, tx

        change, tx = await self._db.run_in_transaction(adjust)
        await self._ledger.log_balance(
            user_id=user_id,
            message="Free trial adjusted by admin",
            details={**tx.metadata, "admin_id": admin.id},
        )
        return tx

    async def _credit_wallet(
        self,
        user_id: str,
        amount: Decimal,
        transaction_type: TransactionType,
        reference: Optional[str],
        source: str,
        description: str,
    ) -> Transaction:
        if amount <= 0:
            raise ValidationFailed("amount must be positive", {"amount": str(amount)})
        amount = to_cents(amount)

        if reference:
            existing = await self._db.find_transaction_by_reference(reference, transaction_type)
            if existing is not None:
                logger.info(
                    "Ignoring repeated %s for reference %s", transaction_type.value, reference
                )
                return existing

        def credit(account: UserAccount) -> None:
            account.wallet_balance = to_cents(account.wallet_balance + amount)

        async def pay_in() -> Transaction:
            change = await mutate_account(self._db, user_id, credit)
            return await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    transaction_type=transaction_type,
                    amount=amount,
                    balance_after=change.after.wallet_balance,
                    source=source,
                    reference=reference,
                    description=description,
                )
            )

        tx = await self._db.run_in_transaction(pay_in)
        await self._ledger.log_balance(
            user_id=user_id,
            message=description,
            details={
                "amount": amount,
                "new_balance": tx.balance_after,
                "reference": reference,
            },
        )
        return tx
