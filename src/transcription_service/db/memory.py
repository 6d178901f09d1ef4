from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, TypeVar

from .base import BaseDBManager
from ..errors import DuplicateDocumentError, StaleDocumentError
from ..models.base import DBSerializableModel, utcnow
from ..models.job import JobStatus, TranscriptionJob
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pricing import PricingSettings
from ..models.subscription import Subscription
from ..models.transaction import Transaction, TransactionType
from ..models.usage import MinuteReservation, UsageRecord
from ..models.user import UserAccount
from ..models.webhook import WebhookEvent


TModel = TypeVar("TModel", bound=DBSerializableModel)


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Models are copied on the way in and out, so a caller mutating its
    copy never changes stored state behind the compare-and-set checks.
    Each check-then-write below runs without awaiting, which makes it
    atomic on the event loop.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._jobs: Dict[str, TranscriptionJob] = {}
        self._reservations: Dict[str, MinuteReservation] = {}
        self._usage: Dict[str, UsageRecord] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._webhook_events: Dict[str, WebhookEvent] = {}
        self._pricing: Optional[PricingSettings] = None
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _with_id(self, model: TModel) -> TModel:
        if getattr(model, "id", None):
            return model.model_copy(deep=True)
        return model.model_copy(update={"id": self._next_id()}, deep=True)

    @staticmethod
    def _copy(model: Optional[TModel]) -> Optional[TModel]:
        return model.model_copy(deep=True) if model is not None else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        user = self._with_id(user)
        if user.id in self._users:
            raise DuplicateDocumentError(f"user {user.id} already exists")
        self._users[user.id] = user
        return self._copy(user)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._copy(self._users.get(user_id))

    async def update_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            raise ValueError("User must have id to be updated")
        stored = self._users.get(user.id)
        if stored is None or stored.version != user.version:
            raise StaleDocumentError(f"user {user.id} changed concurrently")
        updated = user.model_copy(
            update={"version": user.version + 1, "updated_at": utcnow()}, deep=True
        )
        self._users[user.id] = updated
        return self._copy(updated)

    async def list_users(self, limit: int = 50, offset: int = 0) -> List[UserAccount]:
        users = sorted(self._users.values(), key=lambda u: u.created_at)
        return [self._copy(u) for u in users[offset : offset + limit]]

    async def count_users(self) -> int:
        return len(self._users)

    async def find_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        for user in self._users.values():
            if user.stripe_customer_id == customer_id:
                return self._copy(user)
        return None

    # Transcription jobs
    async def add_job(self, job: TranscriptionJob) -> TranscriptionJob:
        job = self._with_id(job)
        self._jobs[job.id] = job
        return self._copy(job)

    async def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        return self._copy(self._jobs.get(job_id))

    async def update_job(self, job: TranscriptionJob) -> TranscriptionJob:
        if job.id is None or job.id not in self._jobs:
            raise ValueError("Job must exist to be updated")
        self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscriptionJob]:
        jobs = [
            j
            for j in self._jobs.values()
            if (user_id is None or j.user_id == user_id)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [self._copy(j) for j in jobs[offset : offset + limit]]

    async def find_stale_jobs(self, updated_before: datetime) -> List[TranscriptionJob]:
        return [
            self._copy(j)
            for j in self._jobs.values()
            if j.status == JobStatus.PROCESSING and j.updated_at < updated_before
        ]

    async def find_job_by_share_id(self, share_id: str) -> Optional[TranscriptionJob]:
        for job in self._jobs.values():
            if job.is_shared and job.share_id == share_id:
                return self._copy(job)
        return None

    # Minute reservations
    async def add_reservation(self, reservation: MinuteReservation) -> MinuteReservation:
        reservation = reservation.model_copy(update={"id": reservation.job_id}, deep=True)
        existing = self._reservations.get(reservation.id)
        if existing is not None and not existing.released:
            raise DuplicateDocumentError(f"job {reservation.job_id} already has a reservation")
        self._reservations[reservation.id] = reservation
        return self._copy(reservation)

    async def get_reservation(self, job_id: str) -> Optional[MinuteReservation]:
        return self._copy(self._reservations.get(job_id))

    async def close_reservation(
        self, job_id: str, committed: bool
    ) -> Optional[MinuteReservation]:
        stored = self._reservations.get(job_id)
        if stored is None or not stored.is_open:
            return None
        closed = stored.model_copy(
            update={"committed": committed, "released": not committed, "closed_at": utcnow()}
        )
        self._reservations[job_id] = closed
        return self._copy(closed)

    # Usage records
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord:
        if record.id in self._usage:
            raise DuplicateDocumentError(f"usage record {record.id} already exists")
        self._usage[record.id] = record
        return record

    async def get_usage_record(self, record_id: str) -> Optional[UsageRecord]:
        return self._usage.get(record_id)

    async def get_usage_records(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[UsageRecord]:
        records = [
            r
            for r in self._usage.values()
            if (user_id is None or r.user_id == user_id)
            and (since is None or r.timestamp >= since)
        ]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit] if limit is not None else records

    # Subscriptions
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        subscription = self._with_id(subscription)
        self._subscriptions[subscription.id] = subscription
        return self._copy(subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._copy(self._subscriptions.get(subscription_id))

    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        owned = [s for s in self._subscriptions.values() if s.user_id == user_id]
        if not owned:
            return None
        owned.sort(key=lambda s: s.updated_at, reverse=True)
        return self._copy(owned[0])

    # Transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        tx = self._with_id(tx)
        self._transactions[tx.id] = tx
        return tx

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        txs = [t for t in self._transactions.values() if t.user_id == user_id]
        txs.sort(key=lambda t: t.timestamp, reverse=True)
        return txs[:limit] if limit is not None else txs

    async def find_transaction_by_reference(
        self, reference: str, transaction_type: TransactionType
    ) -> Optional[Transaction]:
        for tx in self._transactions.values():
            if tx.reference == reference and tx.transaction_type == transaction_type:
                return tx
        return None

    # Webhook event log
    async def add_webhook_event(self, event: WebhookEvent) -> bool:
        if event.id in self._webhook_events:
            return False
        self._webhook_events[event.id] = event.model_copy(deep=True)
        return True

    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        self._webhook_events[event.id] = event.model_copy(deep=True)
        return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self._copy(self._webhook_events.get(event_id))

    # Pricing settings
    async def get_pricing_settings(self) -> Optional[PricingSettings]:
        return self._copy(self._pricing)

    async def save_pricing_settings(self, pricing: PricingSettings) -> PricingSettings:
        self._pricing = pricing.model_copy(deep=True)
        return pricing

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        notification = self._with_id(notification)
        self._notifications.append(notification)
        return notification

    async def get_notification_events(self, user_id: Optional[str] = None) -> List[NotificationEvent]:
        return [n for n in self._notifications if user_id is None or n.user_id == user_id]

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        entry = self._with_id(entry)
        self._ledger.append(entry)
        return entry
