from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, TypeVar

from ..models.job import JobStatus, TranscriptionJob
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pricing import PricingSettings
from ..models.subscription import Subscription
from ..models.transaction import Transaction, TransactionType
from ..models.usage import MinuteReservation, UsageRecord
from ..models.user import UserAccount
from ..models.webhook import WebhookEvent


T = TypeVar("T")


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Every document crosses this boundary as a validated model. Writes that
    race are resolved here rather than in the services:

    - `update_user` is a compare-and-set on `UserAccount.version` and raises
      `StaleDocumentError` when another writer got there first.
    - `close_reservation` flips a reservation to committed/released only if
      it is still open, so exactly one caller wins.
    - `add_usage_record` and `add_webhook_event` refuse duplicate ids.

    Multi-document work is grouped with `run_in_transaction()` where the
    backend supports it.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    async def run_in_transaction(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run `work` as one unit. Backends whose transactions can abort on a
        write conflict call `work` again from the start, so it must only
        touch the store.
        """
        async with self.transaction():
            return await work()

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def update_user(self, user: UserAccount) -> UserAccount:
        """
        Persist `user` if the stored version still equals `user.version`.
        Returns the stored copy with the version bumped.
        """
        ...

    @abstractmethod
    async def list_users(self, limit: int = 50, offset: int = 0) -> List[UserAccount]: ...

    @abstractmethod
    async def count_users(self) -> int: ...

    @abstractmethod
    async def find_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]: ...

    # Transcription jobs
    @abstractmethod
    async def add_job(self, job: TranscriptionJob) -> TranscriptionJob: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[TranscriptionJob]: ...

    @abstractmethod
    async def update_job(self, job: TranscriptionJob) -> TranscriptionJob: ...

    @abstractmethod
    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscriptionJob]: ...

    @abstractmethod
    async def find_stale_jobs(self, updated_before: datetime) -> List[TranscriptionJob]:
        """Jobs still `processing` whose record has not moved since `updated_before`."""
        ...

    @abstractmethod
    async def find_job_by_share_id(self, share_id: str) -> Optional[TranscriptionJob]:
        """The job currently shared under `share_id`, if sharing is still on."""
        ...

    # Minute reservations
    @abstractmethod
    async def add_reservation(self, reservation: MinuteReservation) -> MinuteReservation:
        """
        Keyed by job id. Raises `DuplicateDocumentError` if the job already
        holds an open or committed reservation; a released one is replaced.
        """
        ...

    @abstractmethod
    async def get_reservation(self, job_id: str) -> Optional[MinuteReservation]: ...

    @abstractmethod
    async def close_reservation(
        self, job_id: str, committed: bool
    ) -> Optional[MinuteReservation]:
        """
        Atomically mark an open reservation committed (or released).
        Returns the closed reservation, or None if it was already closed
        or never existed.
        """
        ...

    # Usage records
    @abstractmethod
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord: ...

    @abstractmethod
    async def get_usage_record(self, record_id: str) -> Optional[UsageRecord]: ...

    @abstractmethod
    async def get_usage_records(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[UsageRecord]:
        """Newest first."""
        ...

    # Subscriptions
    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]: ...

    # Transactions
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def find_transaction_by_reference(
        self, reference: str, transaction_type: TransactionType
    ) -> Optional[Transaction]: ...

    # Webhook event log
    @abstractmethod
    async def add_webhook_event(self, event: WebhookEvent) -> bool:
        """Returns False when the event id was already logged."""
        ...

    @abstractmethod
    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent: ...

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]: ...

    # Pricing settings
    @abstractmethod
    async def get_pricing_settings(self) -> Optional[PricingSettings]: ...

    @abstractmethod
    async def save_pricing_settings(self, pricing: PricingSettings) -> PricingSettings: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
