from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .subscription import NO_PLAN, SubscriptionStatus

if TYPE_CHECKING:
    from .usage import MinuteReservation


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserAccount(DBSerializableModel):
    """
    A customer account and its billing state.

    `minutes_used_this_month + minutes_reserved <= included_minutes_per_month`
    is a soft limit: usage past it is billed to credits or the wallet.
    Every write goes through the store's compare-and-set on `version`.
    """

    collection_name: ClassVar[str] = "users"

    id: Optional[str] = Field(default=None)
    email: Optional[str] = None
    display_name: Optional[str] = None
    role: UserRole = UserRole.USER

    wallet_balance: Decimal = Field(default=Decimal("0.00"), decimal_places=2)
    credits: int = Field(default=0, description="Legacy prepaid credit units.")
    free_trial_minutes: int = Field(
        default=0, ge=0, description="Admin-granted minutes, usable in any mode."
    )

    # Held by in-flight jobs until they are settled or released.
    free_trial_reserved: int = Field(default=0, ge=0)
    credits_reserved: int = Field(default=0, ge=0)
    wallet_reserved: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)

    subscription_plan: str = NO_PLAN
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    cancel_at_period_end: bool = False

    included_minutes_per_month: int = Field(default=0, ge=0)
    minutes_used_this_month: int = Field(default=0, ge=0)
    minutes_reserved: int = Field(default=0, ge=0)
    billing_cycle_start: Optional[datetime] = None
    billing_cycle_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def available_minutes(self) -> int:
        return max(
            0,
            self.included_minutes_per_month
            - self.minutes_used_this_month
            - self.minutes_reserved,
        )

    @property
    def available_free_trial_minutes(self) -> int:
        return max(0, self.free_trial_minutes - self.free_trial_reserved)

    @property
    def available_credits(self) -> int:
        return max(0, self.credits - self.credits_reserved)

    @property
    def available_wallet(self) -> Decimal:
        return self.wallet_balance - self.wallet_reserved

    def release_hold(self, reservation: MinuteReservation) -> None:
        """Give back what `reservation` held, floored at zero."""
        self.minutes_reserved = max(0, self.minutes_reserved - reservation.reserved_minutes)
        self.free_trial_reserved = max(
            0, self.free_trial_reserved - reservation.free_trial_reserved
        )
        self.credits_reserved = max(0, self.credits_reserved - reservation.credits_reserved)
        self.wallet_reserved = max(
            Decimal("0.00"), self.wallet_reserved - reservation.wallet_reserved
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
