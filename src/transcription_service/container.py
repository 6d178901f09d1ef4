from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import Settings
from .db.base import BaseDBManager
from .integrations.auth import FirebaseTokenVerifier, TokenVerifier
from .integrations.payments import PaymentGateway, StripeGateway
from .integrations.speechmatics import SpeechmaticsClient, TranscriptionVendor
from .logging.ledger_logger import LedgerLogger
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .services.job_service import JobService
from .services.notification_service import NotificationService
from .services.pricing_service import PricingService
from .services.subscription_service import SubscriptionService
from .services.usage_service import UsageService
from .services.wallet_service import WalletService
from .storage.base import TranscriptStore


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """
    Every client and service the API needs, built once per application and
    handed to routes through `app.state`.
    """

    db: BaseDBManager
    cache: AsyncCacheBackend
    ledger: LedgerLogger
    queue: AsyncNotificationQueue
    gateway: PaymentGateway
    verifier: TokenVerifier
    transcripts: TranscriptStore
    vendor: Optional[TranscriptionVendor]
    notifications: NotificationService
    pricing: PricingService
    usage: UsageService
    wallet: WalletService
    subscriptions: SubscriptionService
    jobs: JobService
    auth_cookie_name: str = "auth-token"
    auth_cookie_max_age: int = 60 * 60 * 24 * 5
    secure_cookies: bool = True
    rate_limit_enabled: bool = True
    public_app_url: str = ""

    @classmethod
    def build(
        cls,
        db: BaseDBManager,
        gateway: PaymentGateway,
        verifier: TokenVerifier,
        transcripts: TranscriptStore,
        vendor: Optional[TranscriptionVendor] = None,
        cache: Optional[AsyncCacheBackend] = None,
        queue: Optional[AsyncNotificationQueue] = None,
        ledger_path: Path = Path("logs/ledger.log"),
        price_ids: Optional[Mapping[str, str]] = None,
        settings: Optional[Settings] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> "ServiceContainer":
        """
        Wire the services around the given adapters. `settings` supplies
        the tunables; without it the defaults are used.
        """
        cache = cache or InMemoryAsyncCache()
        queue = queue or InMemoryNotificationQueue()
        ledger = LedgerLogger(db=db, file_path=ledger_path)
        notifications = NotificationService(db=db, queue=queue)
        pricing = PricingService(db=db, ledger=ledger, cache=cache)
        usage_options: Dict[str, Any] = {}
        if settings is not None:
            usage_options["low_wallet_threshold"] = settings.LOW_WALLET_THRESHOLD
        usage = UsageService(
            db=db, ledger=ledger, pricing=pricing, notifications=notifications, **usage_options
        )
        if price_ids is None:
            price_ids = settings.STRIPE_PRICE_IDS if settings is not None else {}
        wallet = WalletService(db=db, ledger=ledger)
        subscriptions = SubscriptionService(
            db=db,
            ledger=ledger,
            gateway=gateway,
            usage=usage,
            wallet=wallet,
            notifications=notifications,
            price_ids=price_ids,
        )

        job_options: Dict[str, Any] = {}
        if settings is not None:
            job_options = {
                "inline_limit_bytes": settings.TRANSCRIPT_INLINE_LIMIT_BYTES,
                "poll_interval_seconds": settings.VENDOR_POLL_INTERVAL_SECONDS,
                "max_polls": settings.VENDOR_MAX_POLLS,
                "submit_retries": settings.JOB_PROCESS_RETRIES,
                "stuck_after_minutes": settings.STUCK_JOB_MINUTES,
            }
        if sleep is not None:
            job_options["sleep"] = sleep
        jobs = JobService(
            db=db,
            usage=usage,
            transcripts=transcripts,
            ledger=ledger,
            vendor=vendor,
            notifications=notifications,
            **job_options,
        )

        container = cls(
            db=db,
            cache=cache,
            ledger=ledger,
            queue=queue,
            gateway=gateway,
            verifier=verifier,
            transcripts=transcripts,
            vendor=vendor,
            notifications=notifications,
            pricing=pricing,
            usage=usage,
            wallet=wallet,
            subscriptions=subscriptions,
            jobs=jobs,
        )
        if settings is not None:
            container.auth_cookie_name = settings.AUTH_COOKIE_NAME
            container.auth_cookie_max_age = settings.AUTH_COOKIE_MAX_AGE_SECONDS
            container.secure_cookies = settings.ENVIRONMENT != "development"
            container.rate_limit_enabled = settings.RATE_LIMIT_ENABLED
            container.public_app_url = settings.PUBLIC_APP_URL.rstrip("/")
        return container

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        """Production wiring: MongoDB, GridFS, Stripe, Firebase and (optionally) Speechmatics."""
        from .db.mongo import MongoDBManager
        from .storage.gridfs import GridFSTranscriptStore

        db = MongoDBManager.from_client_uri(
            settings.MONGO_URI, settings.MONGO_DB, use_transactions=settings.MONGO_TRANSACTIONS
        )
        vendor: Optional[TranscriptionVendor] = None
        if settings.speechmatics_enabled:
            vendor = SpeechmaticsClient(
                api_key=settings.SPEECHMATICS_API_KEY or "",
                base_url=settings.SPEECHMATICS_API_URL,
            )
        return cls.build(
            db=db,
            gateway=StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET),
            verifier=FirebaseTokenVerifier(
                settings.FIREBASE_PROJECT_ID,
                settings.FIREBASE_CLIENT_EMAIL,
                settings.FIREBASE_PRIVATE_KEY,
            ),
            transcripts=GridFSTranscriptStore(db.database),
            vendor=vendor,
            ledger_path=settings.LEDGER_LOG_PATH,
            settings=settings,
        )

    async def startup(self) -> None:
        ensure_indexes = getattr(self.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        await self.pricing.get_pricing()
        logger.info("Service container ready (vendor configured: %s)", self.vendor is not None)

    async def shutdown(self) -> None:
        aclose = getattr(self.vendor, "aclose", None)
        if aclose is not None:
            await aclose()
