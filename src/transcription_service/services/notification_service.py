from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Orchestrates notification creation and dispatch via a message queue.

    Delivery (email, in-app) belongs to whatever consumes the queue; this
    service only records the event and hands it over.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue

    async def notify_usage_threshold(
        self, user_id: str, threshold: int, minutes_used: int, included_minutes: int
    ) -> NotificationEvent:
        return await self._dispatch(
            user_id,
            NotificationType.USAGE_THRESHOLD,
            {
                "threshold": threshold,
                "minutes_used": minutes_used,
                "included_minutes": included_minutes,
            },
        )

    async def notify_low_wallet(self, user_id: str, balance: Decimal) -> NotificationEvent:
        return await self._dispatch(
            user_id, NotificationType.LOW_WALLET, {"wallet_balance": str(balance)}
        )

    async def notify_payment_failed(
        self, user_id: str, subscription_id: Optional[str], invoice_id: Optional[str]
    ) -> NotificationEvent:
        return await self._dispatch(
            user_id,
            NotificationType.PAYMENT_FAILED,
            {"subscription_id": subscription_id, "invoice_id": invoice_id},
        )

    async def notify_trial_ending(
        self, user_id: str, subscription_id: str, trial_end: Optional[str]
    ) -> NotificationEvent:
        return await self._dispatch(
            user_id,
            NotificationType.TRIAL_ENDING,
            {"subscription_id": subscription_id, "trial_end": trial_end},
        )

    async def notify_job_completed(self, user_id: str, job_id: str, filename: str) -> NotificationEvent:
        return await self._dispatch(
            user_id, NotificationType.JOB_COMPLETED, {"job_id": job_id, "filename": filename}
        )

    async def notify_job_failed(self, user_id: str, job_id: str, reason: str) -> NotificationEvent:
        return await self._dispatch(
            user_id, NotificationType.JOB_FAILED, {"job_id": job_id, "reason": reason}
        )

    async def send_admin_message(
        self, user_id: str, subject: str, body: str, sent_by: Optional[str]
    ) -> NotificationEvent:
        return await self._dispatch(
            user_id,
            NotificationType.ADMIN_MESSAGE,
            {"subject": subject, "body": body, "sent_by": sent_by},
        )

    async def _dispatch(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> NotificationEvent:
        event = NotificationEvent(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            status=NotificationStatus.PENDING,
        )
        event = await self._db.add_notification_event(event)

        await self._queue.enqueue(
            {
                "notification_id": event.id,
                "type": event.notification_type.value,
                "user_id": user_id,
                "payload": event.payload,
            }
        )
        logger.debug("Queued %s notification for user %s", notification_type.value, user_id)
        return event
