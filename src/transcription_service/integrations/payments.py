from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from ..errors import UpstreamError, ValidationFailed


logger = logging.getLogger(__name__)


class InvalidSignatureError(ValidationFailed):
    code = "INVALID_SIGNATURE"

    def __init__(self) -> None:
        super().__init__("Invalid signature")


class GatewayEvent(BaseModel):
    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class GatewaySubscription(BaseModel):
    """The fields of a gateway subscription the local mirror cares about."""

    id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    latest_invoice_id: Optional[str] = None


class PaymentIntent(BaseModel):
    id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str


class PaymentGateway(ABC):
    """
    What the billing services need from the payment processor.
    """

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify the webhook signature and parse the event."""
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    @abstractmethod
    async def create_customer(self, email: Optional[str], user_id: str) -> str: ...

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_days: Optional[int] = None,
    ) -> GatewaySubscription: ...

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, immediately: bool
    ) -> GatewaySubscription: ...

    @abstractmethod
    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    @abstractmethod
    async def change_subscription_price(
        self, subscription_id: str, price_id: str, metadata: Mapping[str, str]
    ) -> GatewaySubscription: ...

    @abstractmethod
    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Mapping[str, str]
    ) -> PaymentIntent: ...


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, 0, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_from_stripe(raw: Mapping[str, Any]) -> GatewaySubscription:
    """
    Normalize a Stripe subscription dict. Newer API versions moved the
    current period bounds from the subscription onto its items.
    """
    items = (raw.get("items") or {}).get("data") or []
    first_item: Mapping[str, Any] = items[0] if items else {}
    price = first_item.get("price") or {}

    def period(key: str) -> Optional[datetime]:
        return _timestamp(raw.get(key) or first_item.get(key))

    latest_invoice = raw.get("latest_invoice")
    if isinstance(latest_invoice, Mapping):
        latest_invoice = latest_invoice.get("id")

    customer = raw.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    return GatewaySubscription(
        id=raw["id"],
        customer_id=customer,
        status=raw.get("status") or "incomplete",
        price_id=price.get("id") if isinstance(price, Mapping) else price,
        metadata={str(k): str(v) for k, v in (raw.get("metadata") or {}).items()},
        current_period_start=period("current_period_start"),
        current_period_end=period("current_period_end"),
        cancel_at_period_end=bool(raw.get("cancel_at_period_end")),
        canceled_at=_timestamp(raw.get("canceled_at")),
        trial_start=_timestamp(raw.get("trial_start")),
        trial_end=_timestamp(raw.get("trial_end")),
        latest_invoice_id=latest_invoice,
    )


class StripeGateway(PaymentGateway):
    """
    PaymentGateway backed by the `stripe` SDK. The SDK is synchronous, so
    API calls run in the threadpool.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature:
            raise InvalidSignatureError()
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("Rejected Stripe webhook: %s", exc)
            raise InvalidSignatureError() from exc
        data = event.data.object
        return GatewayEvent(
            id=event.id,
            type=event.type,
            data=data.to_dict() if hasattr(data, "to_dict") else dict(data),
        )

    async def _call(self, description: str, fn, *args, **kwargs) -> Any:
        kwargs.setdefault("api_key", self._api_key)
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", description, exc)
            raise UpstreamError(f"payment gateway error during {description}") from exc

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call("subscription retrieval", stripe.Subscription.retrieve, subscription_id)
        return subscription_from_stripe(sub.to_dict())

    async def create_customer(self, email: Optional[str], user_id: str) -> str:
        customer = await self._call(
            "customer creation",
            stripe.Customer.create,
            email=email,
            metadata={"userId": user_id},
        )
        return customer.id

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Mapping[str, str],
        trial_days: Optional[int] = None,
    ) -> GatewaySubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": dict(metadata),
            "payment_behavior": "default_incomplete",
            "expand": ["latest_invoice"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        sub = await self._call("subscription creation", stripe.Subscription.create, **params)
        return subscription_from_stripe(sub.to_dict())

    async def cancel_subscription(
        self, subscription_id: str, immediately: bool
    ) -> GatewaySubscription:
        if immediately:
            sub = await self._call("subscription cancel", stripe.Subscription.cancel, subscription_id)
        else:
            sub = await self._call(
                "subscription cancel",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        return subscription_from_stripe(sub.to_dict())

    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call(
            "subscription reactivation",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return subscription_from_stripe(sub.to_dict())

    async def change_subscription_price(
        self, subscription_id: str, price_id: str, metadata: Mapping[str, str]
    ) -> GatewaySubscription:
        current = await self._call(
            "subscription retrieval", stripe.Subscription.retrieve, subscription_id
        )
        item_id = current.to_dict()["items"]["data"][0]["id"]
        sub = await self._call(
            "plan change",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            metadata=dict(metadata),
            proration_behavior="create_prorations",
        )
        return subscription_from_stripe(sub.to_dict())

    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Mapping[str, str]
    ) -> PaymentIntent:
        cents = int((amount * 100).to_integral_value())
        intent = await self._call(
            "payment intent creation",
            stripe.PaymentIntent.create,
            amount=cents,
            currency=currency.lower(),
            metadata=dict(metadata),
            automatic_payment_methods={"enabled": True},
        )
        return PaymentIntent(
            id=intent.id,
            client_secret=intent.client_secret,
            amount=amount,
            currency=currency,
        )
