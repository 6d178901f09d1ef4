from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, utcnow
from .job import TranscriptionMode


NO_PLAN = "none"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NONE = "none"

    @classmethod
    def from_gateway(cls, raw: Optional[str]) -> "SubscriptionStatus":
        """Collapse the payment gateway's status vocabulary onto ours."""
        if not raw:
            return cls.NONE
        aliases = {
            "unpaid": cls.PAST_DUE,
            "paused": cls.PAST_DUE,
            "incomplete_expired": cls.CANCELED,
            "cancelled": cls.CANCELED,
        }
        if raw in aliases:
            return aliases[raw]
        return cls(raw)


ACTIVE_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)

# Gateway-driven state machine. Anything else is applied but logged.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.NONE: frozenset(
        {
            SubscriptionStatus.INCOMPLETE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
        }
    ),
    SubscriptionStatus.INCOMPLETE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.TRIALING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.CANCELED: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.INCOMPLETE}
    ),
}


def is_allowed_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    if old == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


class PlanDefinition(BaseModel):
    """
    A sellable subscription plan. The catalog is static; only the gateway
    price ids come from configuration.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    included_minutes: int = Field(ge=0)
    price: Decimal
    currency: str = "CAD"
    allowed_modes: FrozenSet[TranscriptionMode]

    def allows_mode(self, mode: TranscriptionMode) -> bool:
        return mode in self.allowed_modes


_AI = frozenset({TranscriptionMode.AI})
_HYBRID = frozenset({TranscriptionMode.AI, TranscriptionMode.HYBRID})

PLAN_CATALOG: Dict[str, PlanDefinition] = {
    plan.id: plan
    for plan in (
        PlanDefinition(id="ai-starter", name="AI Starter", included_minutes=300, price=Decimal("210"), allowed_modes=_AI),
        PlanDefinition(id="ai-professional", name="AI Professional", included_minutes=750, price=Decimal("488"), allowed_modes=_AI),
        PlanDefinition(id="ai-enterprise", name="AI Enterprise", included_minutes=1500, price=Decimal("900"), allowed_modes=_AI),
        PlanDefinition(id="hybrid-starter", name="Hybrid Starter", included_minutes=300, price=Decimal("325"), allowed_modes=_HYBRID),
        PlanDefinition(id="hybrid-professional", name="Hybrid Professional", included_minutes=750, price=Decimal("1050"), allowed_modes=_HYBRID),
        PlanDefinition(id="hybrid-enterprise", name="Hybrid Enterprise", included_minutes=1500, price=Decimal("1950"), allowed_modes=_HYBRID),
    )
}


def get_plan(plan_id: Optional[str]) -> Optional[PlanDefinition]:
    if not plan_id or plan_id == NO_PLAN:
        return None
    return PLAN_CATALOG.get(plan_id)


class Subscription(DBSerializableModel):
    """
    Local mirror of the payment gateway's subscription object.

    Only ever overwritten from a fresh gateway fetch; never merged.
    """

    collection_name: ClassVar[str] = "subscriptions"

    id: Optional[str] = Field(
        default=None, description="Gateway subscription id."
    )
    user_id: str
    customer_id: Optional[str] = None
    plan_id: str = NO_PLAN
    price_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
