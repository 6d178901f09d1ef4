from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from ...container import ServiceContainer
from ...models.api_models import ApiModel
from ...models.job import TranscriptionMode
from ...models.usage import UsageRecord
from ...models.user import UserAccount
from ...services.usage_service import AccessCheck, UsageStats, UsageSummary
from ..deps import get_container, get_current_user


router = APIRouter(prefix="/usage", tags=["usage"])


class UsageHistoryResponse(ApiModel):
    records: List[UsageRecord]
    stats: UsageStats


@router.get("", response_model=UsageSummary)
async def get_usage(
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> UsageSummary:
    return await container.usage.get_usage_summary(user.id or "")


@router.get("/history", response_model=UsageHistoryResponse)
async def get_usage_history(
    limit: int = Query(default=50, ge=1, le=500),
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> UsageHistoryResponse:
    records = await container.usage.get_usage_history(user.id or "", limit=limit)
    return UsageHistoryResponse(
        records=records, stats=container.usage.calculate_usage_stats(records)
    )


@router.get("/check", response_model=AccessCheck)
async def check_usage(
    mode: TranscriptionMode,
    minutes: int = Query(ge=0, le=1440),
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> AccessCheck:
    return await container.usage.check_access(user.id or "", mode, minutes)
