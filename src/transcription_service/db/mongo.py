from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
)
from uuid import uuid4

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BaseDBManager
from ..errors import DuplicateDocumentError, StaleDocumentError
from ..models.base import DBSerializableModel, utcnow
from ..models.job import JobStatus, TranscriptionJob
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pricing import PRICING_DOCUMENT_ID, PricingSettings
from ..models.subscription import Subscription
from ..models.transaction import Transaction, TransactionType
from ..models.usage import MinuteReservation, UsageRecord
from ..models.user import UserAccount
from ..models.webhook import WebhookEvent


TModel = TypeVar("TModel", bound=DBSerializableModel)
T = TypeVar("T")

_active_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "mongo_active_session", default=None
)


class DecimalCodec(TypeCodec):
    """Store money as Decimal128 so amounts round-trip exactly."""

    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value: Decimal) -> Decimal128:
        return Decimal128(value)

    def transform_bson(self, value: Decimal128) -> Decimal:
        return value.to_decimal()


CODEC_OPTIONS = CodecOptions(
    tz_aware=True,
    tzinfo=timezone.utc,
    type_registry=TypeRegistry([DecimalCodec()]),
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    With `use_transactions=True` (replica sets only) `run_in_transaction()`
    opens a session transaction and every call made inside it joins that
    session. Otherwise it runs the work directly and the guarantees come
    from the single-document conditional writes below.
    """

    def __init__(self, database: AsyncIOMotorDatabase, use_transactions: bool = False) -> None:
        self._db = database.with_options(codec_options=CODEC_OPTIONS)
        self._use_transactions = use_transactions

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, use_transactions: bool = False
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name], use_transactions=use_transactions)

    @property
    def database(self) -> AsyncIOMotorDatabase:
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """One attempt, no retry. Services go through `run_in_transaction()`."""
        if not self._use_transactions or _active_session.get() is not None:
            yield
            return
        async with await self._db.client.start_session() as session:
            async with session.start_transaction():
                token = _active_session.set(session)
                try:
                    yield
                finally:
                    _active_session.reset(token)

    async def run_in_transaction(self, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run `work` through `session.with_transaction`, which retries the
        whole callback on `TransientTransactionError` (write conflicts with
        a concurrent transaction) and on unknown commit results.
        """
        if not self._use_transactions or _active_session.get() is not None:
            return await work()

        async def callback(session: AsyncIOMotorClientSession) -> T:
            token = _active_session.set(session)
            try:
                return await work()
            finally:
                _active_session.reset(token)

        async with await self._db.client.start_session() as session:
            return await session.with_transaction(callback)

    async def ensure_indexes(self) -> None:
        await self._db[UserAccount.collection_name].create_index("stripeCustomerId", sparse=True)
        await self._db[TranscriptionJob.collection_name].create_index(
            [("userId", ASCENDING), ("createdAt", DESCENDING)]
        )
        await self._db[TranscriptionJob.collection_name].create_index(
            [("status", ASCENDING), ("updatedAt", ASCENDING)]
        )
        await self._db[UsageRecord.collection_name].create_index(
            [("userId", ASCENDING), ("timestamp", DESCENDING)]
        )
        await self._db[Transaction.collection_name].create_index(
            [("userId", ASCENDING), ("timestamp", DESCENDING)]
        )
        await self._db[Transaction.collection_name].create_index(
            [("reference", ASCENDING), ("transactionType", ASCENDING)], sparse=True
        )
        await self._db[TranscriptionJob.collection_name].create_index("shareId", sparse=True)
        await self._db[Subscription.collection_name].create_index("userId")

    # Helper utilities
    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _active_session.get()

    @staticmethod
    def _prepare_insert(model: TModel) -> tuple[TModel, Dict[str, Any]]:
        if not getattr(model, "id", None):
            model = model.model_copy(update={"id": uuid4().hex})
        data = model.serialize_for_db()
        data["_id"] = data["id"]
        return model, data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        if not data.get("id"):
            raise ValueError("Model must have id to be updated")
        data["_id"] = data["id"]
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        return model_cls.from_db(doc)

    async def _insert(self, model: TModel) -> TModel:
        model, data = self._prepare_insert(model)
        try:
            await self._db[model.collection_name].insert_one(data, session=self._session())
        except DuplicateKeyError as exc:
            raise DuplicateDocumentError(str(exc)) from exc
        return model

    async def _find_one(self, model_cls: Type[TModel], query: Mapping[str, Any]) -> Optional[TModel]:
        doc = await self._db[model_cls.collection_name].find_one(query, session=self._session())
        return self._decode(model_cls, doc)

    async def _find_many(
        self,
        model_cls: Type[TModel],
        query: Mapping[str, Any],
        sort: List[tuple[str, int]],
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[TModel]:
        cursor = self._db[model_cls.collection_name].find(query, session=self._session()).sort(sort)
        if offset:
            cursor = cursor.skip(offset)
        if limit:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        return await self._insert(user)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return await self._find_one(UserAccount, {"_id": user_id})

    async def update_user(self, user: UserAccount) -> UserAccount:
        updated = user.model_copy(update={"version": user.version + 1, "updated_at": utcnow()})
        data = self._prepare_update(updated)
        result = await self._db[UserAccount.collection_name].replace_one(
            {"_id": data["_id"], "version": user.version}, data, session=self._session()
        )
        if result.matched_count == 0:
            raise StaleDocumentError(f"user {user.id} changed concurrently")
        return updated

    async def list_users(self, limit: int = 50, offset: int = 0) -> List[UserAccount]:
        return await self._find_many(
            UserAccount, {}, [("createdAt", ASCENDING)], limit=limit, offset=offset
        )

    async def count_users(self) -> int:
        return await self._db[UserAccount.collection_name].count_documents({})

    async def find_user_by_customer_id(self, customer_id: str) -> Optional[UserAccount]:
        return await self._find_one(UserAccount, {"stripeCustomerId": customer_id})

    # Transcription jobs
    async def add_job(self, job: TranscriptionJob) -> TranscriptionJob:
        return await self._insert(job)

    async def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        return await self._find_one(TranscriptionJob, {"_id": job_id})

    async def update_job(self, job: TranscriptionJob) -> TranscriptionJob:
        data = self._prepare_update(job)
        await self._db[TranscriptionJob.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=False, session=self._session()
        )
        return job

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscriptionJob]:
        query: Dict[str, Any] = {}
        if user_id is not None:
            query["userId"] = user_id
        if status is not None:
            query["status"] = status.value
        return await self._find_many(
            TranscriptionJob, query, [("createdAt", DESCENDING)], limit=limit, offset=offset
        )

    async def find_stale_jobs(self, updated_before: datetime) -> List[TranscriptionJob]:
        return await self._find_many(
            TranscriptionJob,
            {"status": JobStatus.PROCESSING.value, "updatedAt": {"$lt": updated_before}},
            [("updatedAt", ASCENDING)],
        )

    async def find_job_by_share_id(self, share_id: str) -> Optional[TranscriptionJob]:
        return await self._find_one(TranscriptionJob, {"shareId": share_id, "isShared": True})

    # Minute reservations
    async def add_reservation(self, reservation: MinuteReservation) -> MinuteReservation:
        reservation = reservation.model_copy(update={"id": reservation.job_id})
        # A released hold may be replaced when a failed job is retried. The
        # replace goes first: a duplicate-key error would abort an open
        # transaction.
        data = self._prepare_update(reservation)
        result = await self._db[MinuteReservation.collection_name].replace_one(
            {"_id": data["_id"], "released": True}, data, session=self._session()
        )
        if result.matched_count:
            return reservation
        return await self._insert(reservation)

    async def get_reservation(self, job_id: str) -> Optional[MinuteReservation]:
        return await self._find_one(MinuteReservation, {"_id": job_id})

    async def close_reservation(
        self, job_id: str, committed: bool
    ) -> Optional[MinuteReservation]:
        doc = await self._db[MinuteReservation.collection_name].find_one_and_update(
            {"_id": job_id, "committed": False, "released": False},
            {"$set": {"committed": committed, "released": not committed, "closedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        return self._decode(MinuteReservation, doc)

    # Usage records
    async def add_usage_record(self, record: UsageRecord) -> UsageRecord:
        return await self._insert(record)

    async def get_usage_record(self, record_id: str) -> Optional[UsageRecord]:
        return await self._find_one(UsageRecord, {"_id": record_id})

    async def get_usage_records(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[UsageRecord]:
        query: Dict[str, Any] = {}
        if user_id is not None:
            query["userId"] = user_id
        if since is not None:
            query["timestamp"] = {"$gte": since}
        return await self._find_many(UsageRecord, query, [("timestamp", DESCENDING)], limit=limit)

    # Subscriptions
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        subscription, data = self._prepare_insert(subscription)
        await self._db[Subscription.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=True, session=self._session()
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self._find_one(Subscription, {"_id": subscription_id})

    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        found = await self._find_many(
            Subscription, {"userId": user_id}, [("updatedAt", DESCENDING)], limit=1
        )
        return found[0] if found else None

    # Transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        return await self._insert(tx)

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None
    ) -> Iterable[Transaction]:
        return await self._find_many(
            Transaction, {"userId": user_id}, [("timestamp", DESCENDING)], limit=limit
        )

    async def find_transaction_by_reference(
        self, reference: str, transaction_type: TransactionType
    ) -> Optional[Transaction]:
        return await self._find_one(
            Transaction, {"reference": reference, "transactionType": transaction_type.value}
        )

    # Webhook event log
    async def add_webhook_event(self, event: WebhookEvent) -> bool:
        try:
            await self._insert(event)
        except DuplicateDocumentError:
            return False
        return True

    async def update_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        data = self._prepare_update(event)
        await self._db[WebhookEvent.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=True, session=self._session()
        )
        return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return await self._find_one(WebhookEvent, {"_id": event_id})

    # Pricing settings
    async def get_pricing_settings(self) -> Optional[PricingSettings]:
        return await self._find_one(PricingSettings, {"_id": PRICING_DOCUMENT_ID})

    async def save_pricing_settings(self, pricing: PricingSettings) -> PricingSettings:
        data = self._prepare_update(pricing)
        await self._db[PricingSettings.collection_name].replace_one(
            {"_id": data["_id"]}, data, upsert=True, session=self._session()
        )
        return pricing

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        return await self._insert(notification)

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await self._insert(entry)
