from decimal import Decimal

import pytest
from pydantic import ValidationError

from transcription_service.models.pricing import CreditRates, ModeRates, PricingSettings
from transcription_service.models.user import UserRole


@pytest.mark.asyncio
async def test_defaults_without_stored_document(pricing):
    settings = await pricing.get_pricing()
    assert settings.pay_as_you_go.ai == Decimal("0.40")
    assert settings.pay_as_you_go.hybrid == Decimal("1.50")
    assert settings.pay_as_you_go.human == Decimal("2.50")
    assert settings.credits_per_minute.hybrid == 2


@pytest.mark.asyncio
async def test_update_invalidates_cache(db, pricing, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await pricing.get_pricing()

    await pricing.update_pricing(
        admin, ModeRates(ai=Decimal("0.50"), hybrid=Decimal("1.75"), human=Decimal("3.00"))
    )

    settings = await pricing.get_pricing()
    assert settings.pay_as_you_go.ai == Decimal("0.50")
    assert settings.updated_by == "admin-1"
    assert settings.credits_per_minute == CreditRates()
    assert (await db.get_pricing_settings()).pay_as_you_go.human == Decimal("3.00")


@pytest.mark.asyncio
async def test_initialize_keeps_existing_document(db, pricing, make_user):
    admin = await make_user("admin-1", role=UserRole.ADMIN)
    await pricing.update_pricing(admin, ModeRates(ai=Decimal("0.45")), currency="USD")

    settings = await pricing.initialize_pricing(admin)

    assert settings.pay_as_you_go.ai == Decimal("0.45")
    assert settings.currency == "USD"


def test_rates_must_be_positive():
    with pytest.raises(ValidationError):
        ModeRates(ai=Decimal("0"))
    with pytest.raises(ValidationError):
        PricingSettings(credits_per_minute={"ai": -1})
