from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

import pytest

from transcription_service.cache.memory import InMemoryAsyncCache
from transcription_service.db.memory import InMemoryDBManager
from transcription_service.errors import AuthenticationError, NotFoundError, UpstreamError
from transcription_service.integrations.auth import TokenVerifier, VerifiedToken
from transcription_service.integrations.payments import (
    GatewayEvent,
    GatewaySubscription,
    InvalidSignatureError,
    PaymentGateway,
    PaymentIntent,
)
from transcription_service.integrations.speechmatics import (
    TranscriptionVendor,
    VendorStatus,
    VendorTranscript,
)
from transcription_service.logging.ledger_logger import LedgerLogger
from transcription_service.models.base import utcnow
from transcription_service.models.job import TranscriptSegment
from transcription_service.models.subscription import SubscriptionStatus
from transcription_service.models.user import UserAccount
from transcription_service.notifications.queue import InMemoryNotificationQueue
from transcription_service.services.notification_service import NotificationService
from transcription_service.services.pricing_service import PricingService
from transcription_service.services.usage_service import UsageService
from transcription_service.services.wallet_service import WalletService


VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway(PaymentGateway):
    """Payment gateway double holding subscriptions in a dict."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, GatewaySubscription] = {}
        self.intents: List[PaymentIntent] = []
        self.customers: Dict[str, str] = {}
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if signature != VALID_SIGNATURE:
            raise InvalidSignatureError()
        body = json.loads(payload)
        return GatewayEvent(id=body["id"], type=body["type"], data=body["data"]["object"])

    def put_subscription(self, **fields) -> GatewaySubscription:
        start = utcnow()
        values = {
            "status": "active",
            "current_period_start": start,
            "current_period_end": start + timedelta(days=30),
        }
        values.update(fields)
        sub = GatewaySubscription(**values)
        self.subscriptions[sub.id] = sub
        return sub

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        if subscription_id not in self.subscriptions:
            raise NotFoundError(f"no such subscription {subscription_id}")
        return self.subscriptions[subscription_id].model_copy()

    async def create_customer(self, email: Optional[str], user_id: str) -> str:
        customer_id = self._next("cus")
        self.customers[customer_id] = user_id
        return customer_id

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_days: Optional[int] = None,
    ) -> GatewaySubscription:
        return self.put_subscription(
            id=self._next("sub"),
            customer_id=customer_id,
            price_id=price_id,
            metadata=dict(metadata),
            status="trialing" if trial_days else "active",
        )

    async def cancel_subscription(self, subscription_id: str, immediately: bool) -> GatewaySubscription:
        sub = await self.retrieve_subscription(subscription_id)
        if immediately:
            sub = sub.model_copy(update={"status": "canceled", "canceled_at": utcnow()})
        else:
            sub = sub.model_copy(update={"cancel_at_period_end": True})
        self.subscriptions[subscription_id] = sub
        return sub

    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self.retrieve_subscription(subscription_id)
        sub = sub.model_copy(update={"cancel_at_period_end": False})
        self.subscriptions[subscription_id] = sub
        return sub

    async def change_subscription_price(
        self, subscription_id: str, price_id: str, metadata: Mapping[str, str]
    ) -> GatewaySubscription:
        sub = await self.retrieve_subscription(subscription_id)
        sub = sub.model_copy(update={"price_id": price_id, "metadata": dict(metadata)})
        self.subscriptions[subscription_id] = sub
        return sub

    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Mapping[str, str]
    ) -> PaymentIntent:
        intent = PaymentIntent(
            id=self._next("pi"), client_secret="secret", amount=amount, currency=currency
        )
        self.intents.append(intent)
        return intent


class FakeVendor(TranscriptionVendor):
    """
    Scripted vendor: `statuses` are returned by successive polls (the last
    one repeats), `submit_failures` submissions fail before one succeeds.
    """

    def __init__(
        self,
        statuses: Optional[List[VendorStatus]] = None,
        duration_seconds: float = 95 * 60,
        segments: Optional[List[TranscriptSegment]] = None,
        submit_failures: int = 0,
    ) -> None:
        self.statuses = list(statuses or [VendorStatus.DONE])
        self.duration_seconds = duration_seconds
        self.segments = segments if segments is not None else [
            TranscriptSegment(start=0, end=4.2, text="Hello there.", speaker="S1", confidence=0.97)
        ]
        self.submit_failures = submit_failures
        self.submissions: List[str] = []
        self.polls = 0

    async def download(self, url: str) -> bytes:
        return b"audio-bytes"

    async def submit(self, audio, filename, language, options=None) -> str:
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise UpstreamError("vendor unavailable")
        vendor_id = f"vendor-{len(self.submissions) + 1}"
        self.submissions.append(vendor_id)
        return vendor_id

    async def poll(self, vendor_job_id: str) -> VendorStatus:
        index = min(self.polls, len(self.statuses) - 1)
        self.polls += 1
        return self.statuses[index]

    async def fetch(self, vendor_job_id: str) -> VendorTranscript:
        return VendorTranscript(duration_seconds=self.duration_seconds, segments=self.segments)


class FakeVerifier(TokenVerifier):
    def __init__(self) -> None:
        self.tokens: Dict[str, VerifiedToken] = {}

    async def verify(self, token: str) -> VerifiedToken:
        if token not in self.tokens:
            raise AuthenticationError("Invalid or expired token")
        return self.tokens[token]


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest.fixture
def notifications(db, queue) -> NotificationService:
    return NotificationService(db=db, queue=queue)


@pytest.fixture
def pricing(db, ledger) -> PricingService:
    return PricingService(db=db, ledger=ledger, cache=InMemoryAsyncCache())


@pytest.fixture
def usage(db, ledger, pricing, notifications) -> UsageService:
    return UsageService(db=db, ledger=ledger, pricing=pricing, notifications=notifications)


@pytest.fixture
def wallet(db, ledger) -> WalletService:
    return WalletService(db=db, ledger=ledger)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_user(db):
    """Factory: `await make_user("u1", plan="ai-professional", wallet="50")`."""

    async def _make(
        user_id: str = "user-1",
        plan: Optional[str] = None,
        minutes_used: int = 0,
        minutes_reserved: int = 0,
        wallet: str = "0",
        credits: int = 0,
        free_trial: int = 0,
        role: str = "user",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    ) -> UserAccount:
        from transcription_service.models.subscription import PLAN_CATALOG

        fields = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "role": role,
            "wallet_balance": Decimal(wallet),
            "credits": credits,
            "free_trial_minutes": free_trial,
            "minutes_used_this_month": minutes_used,
            "minutes_reserved": minutes_reserved,
        }
        if plan is not None:
            fields.update(
                subscription_plan=plan,
                subscription_status=status,
                subscription_id=f"sub-{user_id}",
                included_minutes_per_month=PLAN_CATALOG[plan].included_minutes,
            )
        return await db.add_user(UserAccount(**fields))

    return _make
