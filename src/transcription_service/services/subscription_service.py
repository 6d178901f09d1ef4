from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..integrations.payments import GatewayEvent, GatewaySubscription, PaymentGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.subscription import (
    ACTIVE_STATUSES,
    NO_PLAN,
    PLAN_CATALOG,
    PlanDefinition,
    Subscription,
    SubscriptionStatus,
    get_plan,
    is_allowed_transition,
)
from ..models.user import UserAccount
from ..models.webhook import WebhookEvent, WebhookEventStatus
from .accounts import AccountChange, mutate_account
from .notification_service import NotificationService
from .usage_service import UsageService
from .wallet_service import WalletService


logger = logging.getLogger(__name__)

CYCLE_RENEWAL_REASON = "subscription_cycle"
WALLET_TOPUP_PURPOSE = "wallet_topup"

EventHandler = Callable[[GatewayEvent], Awaitable[Tuple[Optional[str], Optional[str]]]]


class SubscriptionService:
    """
    Subscription lifecycle: user actions go to the payment gateway, and the
    local state only ever changes from what the gateway reports back.

    Every sync re-fetches the gateway subscription and overwrites the
    local mirror (no merging), then mirrors plan, status, cycle window and
    included minutes onto the user account.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        gateway: PaymentGateway,
        usage: UsageService,
        wallet: WalletService,
        notifications: Optional[NotificationService] = None,
        price_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._gateway = gateway
        self._usage = usage
        self._wallet = wallet
        self._notifications = notifications
        self._price_ids: Dict[str, str] = dict(price_ids or {})
        self._handlers: Dict[str, EventHandler] = {
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
            "customer.subscription.trial_will_end": self._on_trial_will_end,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
            "checkout.session.completed": self._on_checkout_completed,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
        }

    # Plan catalog
    @staticmethod
    def list_plans() -> List[PlanDefinition]:
        return list(PLAN_CATALOG.values())

    @staticmethod
    def get_plan(plan_id: str) -> PlanDefinition:
        plan = get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"unknown plan {plan_id}")
        return plan

    def _price_for(self, plan_id: str) -> str:
        self.get_plan(plan_id)
        price_id = self._price_ids.get(plan_id)
        if not price_id:
            raise ValidationFailed(
                "plan is not available for purchase", {"plan_id": plan_id}
            )
        return price_id

    def _plan_for_price(self, price_id: Optional[str]) -> Optional[str]:
        for plan_id, configured in self._price_ids.items():
            if configured == price_id:
                return plan_id
        return None

    # User actions
    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._db.get_subscription_for_user(user_id)

    async def create_subscription(
        self, user: UserAccount, plan_id: str, trial_days: Optional[int] = None
    ) -> Subscription:
        price_id = self._price_for(plan_id)
        if user.subscription_id and user.subscription_status in ACTIVE_STATUSES:
            raise ConflictError(
                "user already has an active subscription; change plan instead",
                {"subscription_id": user.subscription_id},
            )

        customer_id = user.stripe_customer_id
        if not customer_id:
            customer_id = await self._gateway.create_customer(user.email, user.id or "")

            def remember_customer(account: UserAccount) -> None:
                account.stripe_customer_id = customer_id

            await mutate_account(self._db, user.id or "", remember_customer)

        gateway_sub = await self._gateway.create_subscription(
            customer_id,
            price_id,
            {"userId": user.id or "", "planId": plan_id},
            trial_days=trial_days,
        )
        return await self._apply(gateway_sub, user_id=user.id)

    async def cancel_subscription(self, user: UserAccount, immediately: bool = False) -> Subscription:
        subscription_id = self._require_subscription(user)
        gateway_sub = await self._gateway.cancel_subscription(subscription_id, immediately)
        return await self._apply(gateway_sub, user_id=user.id)

    async def reactivate_subscription(self, user: UserAccount) -> Subscription:
        subscription_id = self._require_subscription(user)
        if user.subscription_status == SubscriptionStatus.CANCELED:
            raise ConflictError("a canceled subscription cannot be reactivated; subscribe again")
        if not user.cancel_at_period_end:
            raise ConflictError("subscription is not scheduled for cancellation")
        gateway_sub = await self._gateway.resume_subscription(subscription_id)
        return await self._apply(gateway_sub, user_id=user.id)

    async def change_plan(self, user: UserAccount, plan_id: str) -> Subscription:
        subscription_id = self._require_subscription(user)
        if user.subscription_plan == plan_id:
            raise ConflictError("user is already on this plan", {"plan_id": plan_id})
        price_id = self._price_for(plan_id)
        gateway_sub = await self._gateway.change_subscription_price(
            subscription_id, price_id, {"userId": user.id or "", "planId": plan_id}
        )
        return await self._apply(gateway_sub, user_id=user.id)

    @staticmethod
    def _require_subscription(user: UserAccount) -> str:
        if not user.subscription_id:
            raise NotFoundError("user has no subscription")
        return user.subscription_id

    # Gateway sync
    async def sync_from_gateway(
        self, subscription_id: str, user_id: Optional[str] = None
    ) -> Subscription:
        gateway_sub = await self._gateway.retrieve_subscription(subscription_id)
        return await self._apply(gateway_sub, user_id=user_id)

    async def _resolve_user_id(
        self, gateway_sub: GatewaySubscription, user_id: Optional[str]
    ) -> str:
        if user_id:
            return user_id
        if gateway_sub.metadata.get("userId"):
            return gateway_sub.metadata["userId"]
        existing = await self._db.get_subscription(gateway_sub.id)
        if existing is not None:
            return existing.user_id
        if gateway_sub.customer_id:
            account = await self._db.find_user_by_customer_id(gateway_sub.customer_id)
            if account is not None and account.id:
                return account.id
        raise NotFoundError(
            "cannot match gateway subscription to a user",
            {"subscription_id": gateway_sub.id},
        )

    async def _apply(
        self, gateway_sub: GatewaySubscription, user_id: Optional[str] = None
    ) -> Subscription:
        user_id = await self._resolve_user_id(gateway_sub, user_id)
        status = SubscriptionStatus.from_gateway(gateway_sub.status)
        plan_id = (
            gateway_sub.metadata.get("planId")
            or self._plan_for_price(gateway_sub.price_id)
            or NO_PLAN
        )
        existing = await self._db.get_subscription(gateway_sub.id)

        mirror = Subscription(
            id=gateway_sub.id,
            user_id=user_id,
            customer_id=gateway_sub.customer_id,
            plan_id=plan_id,
            price_id=gateway_sub.price_id,
            status=status,
            current_period_start=gateway_sub.current_period_start,
            current_period_end=gateway_sub.current_period_end,
            cancel_at_period_end=gateway_sub.cancel_at_period_end,
            canceled_at=gateway_sub.canceled_at,
            trial_start=gateway_sub.trial_start,
            trial_end=gateway_sub.trial_end,
            created_at=existing.created_at if existing else utcnow(),
            updated_at=utcnow(),
        )

        def mirror_onto(account: UserAccount) -> Optional[SubscriptionStatus]:
            # A late event for a replaced subscription must not clobber the
            # user's current one.
            replaced = account.subscription_id not in (None, gateway_sub.id)
            if replaced and status not in ACTIVE_STATUSES:
                return None
            previous = account.subscription_status
            if account.subscription_id != gateway_sub.id:
                account.minutes_used_this_month = 0
            account.subscription_id = gateway_sub.id
            account.stripe_customer_id = account.stripe_customer_id or gateway_sub.customer_id
            account.subscription_status = status
            account.cancel_at_period_end = gateway_sub.cancel_at_period_end
            account.trial_start = gateway_sub.trial_start
            account.trial_end = gateway_sub.trial_end
            if gateway_sub.current_period_start is not None:
                account.billing_cycle_start = gateway_sub.current_period_start
            if gateway_sub.current_period_end is not None:
                account.billing_cycle_end = gateway_sub.current_period_end

            plan = get_plan(plan_id)
            if status == SubscriptionStatus.CANCELED or plan is None:
                account.subscription_plan = NO_PLAN
                account.included_minutes_per_month = 0
            else:
                account.subscription_plan = plan.id
                account.included_minutes_per_month = plan.included_minutes
            return previous

        async def apply() -> Tuple[Subscription, AccountChange]:
            saved = await self._db.save_subscription(mirror)
            return saved, await mutate_account(self._db, user_id, mirror_onto)

        mirror, change = await self._db.run_in_transaction(apply)
        previous = change.result
        if previous is None:
            logger.info(
                "Subscription %s is not the current one for user %s; mirror updated only",
                gateway_sub.id,
                user_id,
            )
        elif not is_allowed_transition(previous, status):
            logger.warning(
                "Unexpected subscription transition %s -> %s for user %s (%s); applying gateway state",
                previous.value,
                status.value,
                user_id,
                gateway_sub.id,
            )

        await self._ledger.log_subscription(
            user_id=user_id,
            message="Subscription synced from gateway",
            details={
                "subscription_id": gateway_sub.id,
                "status": status.value,
                "previous_status": previous.value if previous else None,
                "plan_id": plan_id,
                "cancel_at_period_end": gateway_sub.cancel_at_period_end,
                "current_period_end": gateway_sub.current_period_end,
            },
        )
        return mirror

    # Webhooks
    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        """
        Verify, log and apply one gateway event.

        Events are logged by gateway event id before being applied; a
        re-delivered id is acknowledged without re-applying it, unless the
        earlier attempt failed.
        """
        event = self._gateway.construct_event(payload, signature)
        record = WebhookEvent(
            id=event.id,
            event_type=event.type,
            data={"object_id": event.data.get("id"), "object": event.data.get("object")},
        )
        if not await self._db.add_webhook_event(record):
            stored = await self._db.get_webhook_event(event.id)
            if stored is not None and stored.status != WebhookEventStatus.FAILED:
                logger.info("Ignoring re-delivered webhook event %s (%s)", event.id, event.type)
                return stored

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type %s", event.type)
            record.status = WebhookEventStatus.IGNORED
            record.processed_at = utcnow()
            return await self._db.update_webhook_event(record)

        try:
            user_id, subscription_id = await handler(event)
        except Exception as exc:
            record.status = WebhookEventStatus.FAILED
            record.error = str(exc)
            record.processed_at = utcnow()
            await self._db.update_webhook_event(record)
            await self._ledger.log_error(
                message="Webhook event processing failed",
                details={"event_id": event.id, "event_type": event.type, "error": str(exc)},
            )
            raise

        record.user_id = user_id
        record.subscription_id = subscription_id
        record.status = WebhookEventStatus.PROCESSED
        record.processed_at = utcnow()
        return await self._db.update_webhook_event(record)

    async def _on_subscription_changed(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        metadata = event.data.get("metadata") or {}
        mirror = await self.sync_from_gateway(event.data["id"], user_id=metadata.get("userId"))
        return mirror.user_id, mirror.id

    async def _on_trial_will_end(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        mirror = await self.sync_from_gateway(event.data["id"])
        if self._notifications is not None:
            trial_end = mirror.trial_end.isoformat() if mirror.trial_end else None
            await self._notifications.notify_trial_ending(mirror.user_id, mirror.id or "", trial_end)
        return mirror.user_id, mirror.id

    async def _on_invoice_paid(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        subscription_id = _invoice_subscription_id(event.data)
        if subscription_id is None:
            return None, None
        mirror = await self.sync_from_gateway(subscription_id)
        if event.data.get("billing_reason") == CYCLE_RENEWAL_REASON:
            await self._usage.reset_monthly_usage(
                mirror.user_id,
                cycle_start=mirror.current_period_start,
                cycle_end=mirror.current_period_end,
                correlation_id=event.id,
            )
        return mirror.user_id, mirror.id

    async def _on_invoice_failed(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        subscription_id = _invoice_subscription_id(event.data)
        if subscription_id is None:
            return None, None
        mirror = await self.sync_from_gateway(subscription_id)
        if self._notifications is not None:
            await self._notifications.notify_payment_failed(
                mirror.user_id, mirror.id, event.data.get("id")
            )
        return mirror.user_id, mirror.id

    async def _on_checkout_completed(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        session = event.data
        if session.get("mode") != "subscription" or not session.get("subscription"):
            return None, None
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId") or session.get("client_reference_id")
        mirror = await self.sync_from_gateway(session["subscription"], user_id=user_id)
        return mirror.user_id, mirror.id

    async def _on_payment_intent_succeeded(self, event: GatewayEvent) -> Tuple[Optional[str], Optional[str]]:
        intent = event.data
        metadata = intent.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id or metadata.get("purpose", WALLET_TOPUP_PURPOSE) != WALLET_TOPUP_PURPOSE:
            return user_id, None
        cents = intent.get("amount_received") or intent.get("amount") or 0
        await self._wallet.top_up(
            user_id,
            Decimal(int(cents)) / 100,
            reference=intent["id"],
            source="stripe",
        )
        return user_id, None


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    """Invoices carry the subscription id at the top level or, on newer API versions, under `parent`."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")
