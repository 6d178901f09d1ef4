from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, utcnow
from .job import TranscriptionMode


PRICING_DOCUMENT_ID = "pricing"


class ModeRates(BaseModel):
    """Pay-as-you-go price per minute, in the pricing currency."""

    ai: Decimal = Field(default=Decimal("0.40"), gt=0)
    hybrid: Decimal = Field(default=Decimal("1.50"), gt=0)
    human: Decimal = Field(default=Decimal("2.50"), gt=0)

    def for_mode(self, mode: TranscriptionMode) -> Decimal:
        return getattr(self, mode.value)


class CreditRates(BaseModel):
    """Legacy credits charged per minute."""

    ai: int = Field(default=1, gt=0)
    hybrid: int = Field(default=2, gt=0)
    human: int = Field(default=3, gt=0)

    def for_mode(self, mode: TranscriptionMode) -> int:
        return getattr(self, mode.value)


class PricingSettings(DBSerializableModel):
    """
    The `settings/pricing` document.
    """

    model_config = ConfigDict(validate_default=True)

    collection_name: ClassVar[str] = "settings"

    id: str = PRICING_DOCUMENT_ID
    pay_as_you_go: ModeRates = Field(default_factory=ModeRates)
    credits_per_minute: CreditRates = Field(default_factory=CreditRates)
    currency: str = "CAD"
    updated_at: datetime = Field(default_factory=utcnow)
    updated_by: Optional[str] = None
