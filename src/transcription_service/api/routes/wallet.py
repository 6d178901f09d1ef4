from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ...container import ServiceContainer
from ...models.api_models import TopUpRequest, TopUpResponse
from ...models.user import UserAccount
from ...services.subscription_service import WALLET_TOPUP_PURPOSE
from ...services.wallet_service import WalletSnapshot
from ..deps import get_container, get_current_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletSnapshot)
async def get_wallet(
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> WalletSnapshot:
    return await container.wallet.get_wallet(user.id or "")


@router.post("/top-up", response_model=TopUpResponse)
async def create_top_up(
    payload: TopUpRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> TopUpResponse:
    """
    Start a wallet top-up. The wallet is credited when the gateway reports
    the payment intent as succeeded, not here.
    """
    pricing = await container.pricing.get_pricing()
    intent = await container.gateway.create_payment_intent(
        payload.amount,
        pricing.currency,
        {"userId": user.id or "", "purpose": WALLET_TOPUP_PURPOSE},
    )
    logger.info("Created top-up intent %s for user %s (%s)", intent.id, user.id, payload.amount)
    return TopUpResponse(
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        amount=intent.amount,
        currency=intent.currency,
    )
