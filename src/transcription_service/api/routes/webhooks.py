from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ...container import ServiceContainer
from ..deps import get_container


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request, container: ServiceContainer = Depends(get_container)
) -> dict:
    # The signature covers the raw bytes, so the body must not be re-encoded.
    payload = await request.body()
    event = await container.subscriptions.handle_webhook(
        payload, request.headers.get("stripe-signature")
    )
    return {"received": True, "eventId": event.id, "status": event.status.value}
