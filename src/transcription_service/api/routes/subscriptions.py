from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ...container import ServiceContainer
from ...models.api_models import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
)
from ...models.subscription import PlanDefinition, Subscription
from ...models.user import UserAccount
from ..deps import get_container, get_current_user


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/plans", response_model=List[PlanDefinition])
async def list_plans(container: ServiceContainer = Depends(get_container)) -> List[PlanDefinition]:
    return container.subscriptions.list_plans()


@router.get("", response_model=Optional[Subscription])
async def get_subscription(
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Optional[Subscription]:
    return await container.subscriptions.get_subscription(user.id or "")


@router.post("", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    payload: CreateSubscriptionRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Subscription:
    return await container.subscriptions.create_subscription(
        user, payload.plan_id, trial_days=payload.trial_days
    )


@router.post("/cancel", response_model=Subscription)
async def cancel_subscription(
    payload: CancelSubscriptionRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Subscription:
    return await container.subscriptions.cancel_subscription(user, immediately=payload.immediately)


@router.post("/reactivate", response_model=Subscription)
async def reactivate_subscription(
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Subscription:
    return await container.subscriptions.reactivate_subscription(user)


@router.post("/change", response_model=Subscription)
async def change_plan(
    payload: ChangePlanRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> Subscription:
    return await container.subscriptions.change_plan(user, payload.plan_id)
