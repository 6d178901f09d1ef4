from __future__ import annotations

from fastapi import APIRouter, Depends

from ...container import ServiceContainer
from ..deps import get_container


router = APIRouter(tags=["health"])


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)) -> dict:
    return {
        "status": "ok",
        "vendorConfigured": container.vendor is not None,
    }
