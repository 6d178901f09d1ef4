from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import ConfigDict, Field

from .base import DBSerializableModel, utcnow


class TransactionType(str, Enum):
    WALLET_TOPUP = "wallet_topup"
    TRANSCRIPTION = "transcription"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    ADMIN_ADD = "admin_add"
    ADMIN_DEDUCT = "admin_deduct"
    CREDIT_PURCHASE = "credit_purchase"
    FREE_TRIAL_ADJUSTMENT = "free_trial_adjustment"


class Transaction(DBSerializableModel):
    """
    Append-only audit entry for any wallet or credit balance change.

    `amount` is the signed currency delta, `credits` the signed legacy
    credit delta.
    """

    model_config = ConfigDict(frozen=True)

    collection_name: ClassVar[str] = "transactions"

    id: Optional[str] = Field(default=None)
    user_id: str
    transaction_type: TransactionType
    amount: Decimal = Decimal("0.00")
    credits: int = 0
    balance_after: Optional[Decimal] = None
    credits_after: Optional[int] = None
    source: Optional[str] = None
    reference: Optional[str] = Field(
        default=None,
        description="External reference: payment intent id, job id...",
    )
    description: Optional[str] = None
    admin_id: Optional[str] = None
    admin_email: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
