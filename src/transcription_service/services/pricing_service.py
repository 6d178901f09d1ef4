from __future__ import annotations

import logging
from typing import Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.pricing import CreditRates, ModeRates, PricingSettings
from ..models.user import UserAccount


logger = logging.getLogger(__name__)


class PricingService:
    """
    Reads and maintains the `settings/pricing` document.

    Rates are read on every job start and settlement, so the document is
    cached; admin updates invalidate the cache.
    """

    CACHE_KEY = "settings:pricing"

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    async def get_pricing(self) -> PricingSettings:
        if self._cache:
            cached = await self._cache.get(self.CACHE_KEY)
            if isinstance(cached, PricingSettings):
                return cached

        pricing = await self._db.get_pricing_settings()
        if pricing is None:
            logger.info("No pricing document stored; using default rates")
            pricing = PricingSettings()

        if self._cache:
            await self._cache.set(self.CACHE_KEY, pricing, ttl_seconds=self._cache_ttl_seconds)
        return pricing

    async def update_pricing(
        self,
        admin: UserAccount,
        pay_as_you_go: ModeRates,
        credits_per_minute: Optional[CreditRates] = None,
        currency: Optional[str] = None,
    ) -> PricingSettings:
        current = await self.get_pricing()
        pricing = PricingSettings(
            pay_as_you_go=pay_as_you_go,
            credits_per_minute=credits_per_minute or current.credits_per_minute,
            currency=currency or current.currency,
            updated_at=utcnow(),
            updated_by=admin.id,
        )
        pricing = await self._db.save_pricing_settings(pricing)
        await self._invalidate()

        await self._ledger.log_balance(
            user_id=admin.id or "",
            message="Pricing updated",
            details={
                "previous": current.pay_as_you_go.model_dump(),
                "pay_as_you_go": pricing.pay_as_you_go.model_dump(),
                "credits_per_minute": pricing.credits_per_minute.model_dump(),
            },
        )
        return pricing

    async def initialize_pricing(self, admin: Optional[UserAccount] = None) -> PricingSettings:
        """Store the default rates unless a pricing document already exists."""
        existing = await self._db.get_pricing_settings()
        if existing is not None:
            return existing
        pricing = PricingSettings(updated_by=admin.id if admin else None)
        pricing = await self._db.save_pricing_settings(pricing)
        await self._invalidate()
        logger.info("Initialized pricing document with default rates")
        return pricing

    async def _invalidate(self) -> None:
        if self._cache:
            await self._cache.delete(self.CACHE_KEY)
