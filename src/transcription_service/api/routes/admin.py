from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from ...container import ServiceContainer
from ...models.api_models import (
    AdminCompleteJobRequest,
    AdminCreditsUpdate,
    AdminFailJobRequest,
    AdminFreeTrialUpdate,
    AdminNotifyRequest,
    AdminWalletUpdate,
    ApiModel,
    JobListResponse,
    PricingUpdateRequest,
    UserActivityResponse,
    UserListResponse,
)
from ...models.job import JobStatus, TranscriptionJob
from ...models.notification import NotificationEvent
from ...models.pricing import PricingSettings
from ...models.transaction import Transaction
from ...models.user import UserAccount
from ...services.accounts import get_account
from ...services.usage_service import UsageStats
from ..deps import get_container, require_admin


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class BalanceChangeResponse(ApiModel):
    user: UserAccount
    transaction: Optional[Transaction] = None


# Transcriptions
@router.get("/transcriptions", response_model=JobListResponse)
async def list_transcriptions(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
) -> JobListResponse:
    jobs = await container.jobs.list_jobs(
        user_id=user_id, status=status_filter, limit=limit, offset=offset
    )
    return JobListResponse(jobs=jobs, limit=limit, offset=offset)


@router.get("/transcriptions/stuck", response_model=JobListResponse)
async def list_stuck_transcriptions(
    container: ServiceContainer = Depends(get_container),
) -> JobListResponse:
    jobs = await container.jobs.find_stuck_jobs()
    return JobListResponse(jobs=jobs, limit=len(jobs), offset=0)


@router.post("/transcriptions/{job_id}/complete", response_model=TranscriptionJob)
async def complete_transcription(
    job_id: str,
    payload: AdminCompleteJobRequest,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptionJob:
    return await container.jobs.admin_complete_job(
        job_id, admin, transcript=payload.transcript, duration_seconds=payload.duration
    )


@router.post("/transcriptions/{job_id}/fail", response_model=TranscriptionJob)
async def fail_transcription(
    job_id: str,
    payload: AdminFailJobRequest,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptionJob:
    return await container.jobs.admin_fail_job(job_id, admin, payload.reason)


@router.post("/transcriptions/{job_id}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_transcription(
    job_id: str,
    background_tasks: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    job = await container.jobs.get_job(job_id)
    container.jobs.check_processable(job)
    background_tasks.add_task(container.jobs.process_job, job_id)
    return {"jobId": job_id, "accepted": True}


# Users
@router.get("/users", response_model=UserListResponse)
async def list_users(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
) -> UserListResponse:
    users = await container.db.list_users(limit=limit, offset=offset)
    total = await container.db.count_users()
    return UserListResponse(users=users, total=total, limit=limit, offset=offset)


@router.get("/users/{user_id}/activity", response_model=UserActivityResponse)
async def user_activity(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    container: ServiceContainer = Depends(get_container),
) -> UserActivityResponse:
    user = await get_account(container.db, user_id)
    transactions = await container.db.get_transactions(user_id, limit=limit)
    usage = await container.db.get_usage_records(user_id=user_id, limit=limit)
    jobs = await container.jobs.list_jobs(user_id=user_id, limit=limit)
    return UserActivityResponse(
        user=user, transactions=list(transactions), usage=usage, jobs=jobs
    )


@router.patch("/users/{user_id}/wallet", response_model=BalanceChangeResponse)
async def set_wallet(
    user_id: str,
    payload: AdminWalletUpdate,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> BalanceChangeResponse:
    tx = await container.wallet.admin_set_wallet(admin, user_id, payload.wallet_balance)
    user = await get_account(container.db, user_id)
    return BalanceChangeResponse(user=user, transaction=tx)


@router.patch("/users/{user_id}/credits", response_model=BalanceChangeResponse)
async def set_credits(
    user_id: str,
    payload: AdminCreditsUpdate,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> BalanceChangeResponse:
    tx = await container.wallet.admin_set_credits(admin, user_id, payload.credits)
    user = await get_account(container.db, user_id)
    return BalanceChangeResponse(user=user, transaction=tx)


@router.patch("/users/{user_id}/free-trial", response_model=BalanceChangeResponse)
async def set_free_trial(
    user_id: str,
    payload: AdminFreeTrialUpdate,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> BalanceChangeResponse:
    tx = await container.wallet.admin_set_free_trial(
        admin, user_id, payload.free_trial_minutes, reason=payload.reason
    )
    user = await get_account(container.db, user_id)
    return BalanceChangeResponse(user=user, transaction=tx)


@router.post("/users/{user_id}/notify", response_model=NotificationEvent)
async def notify_user(
    user_id: str,
    payload: AdminNotifyRequest,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> NotificationEvent:
    await get_account(container.db, user_id)
    return await container.notifications.send_admin_message(
        user_id, payload.subject, payload.body, sent_by=admin.email or admin.id
    )


# Pricing and reporting
@router.get("/pricing", response_model=PricingSettings)
async def get_pricing(container: ServiceContainer = Depends(get_container)) -> PricingSettings:
    return await container.pricing.get_pricing()


@router.put("/pricing", response_model=PricingSettings)
async def update_pricing(
    payload: PricingUpdateRequest,
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> PricingSettings:
    return await container.pricing.update_pricing(
        admin,
        payload.pay_as_you_go,
        credits_per_minute=payload.credits_per_minute,
        currency=payload.currency,
    )


@router.post("/pricing/init", response_model=PricingSettings)
async def init_pricing(
    admin: UserAccount = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> PricingSettings:
    return await container.pricing.initialize_pricing(admin)


@router.get("/usage-stats", response_model=UsageStats)
async def usage_stats(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=1000, ge=1, le=10000),
    container: ServiceContainer = Depends(get_container),
) -> UsageStats:
    records = await container.db.get_usage_records(user_id=user_id, limit=limit)
    return container.usage.calculate_usage_stats(records)
