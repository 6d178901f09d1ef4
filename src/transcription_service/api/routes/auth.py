from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from ...container import ServiceContainer
from ...models.api_models import SessionRequest, SessionResponse
from ...models.user import UserAccount
from ..deps import ensure_user, get_container, get_current_user


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/session", response_model=SessionResponse)
async def create_session(
    payload: SessionRequest,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> SessionResponse:
    verified = await container.verifier.verify(payload.id_token)
    user = await ensure_user(container, verified)
    response.set_cookie(
        key=container.auth_cookie_name,
        value=payload.id_token,
        max_age=container.auth_cookie_max_age,
        httponly=True,
        secure=container.secure_cookies,
        samesite="lax",
        path="/",
    )
    return SessionResponse(user=user)


@router.delete("/session")
async def delete_session(
    response: Response, container: ServiceContainer = Depends(get_container)
) -> dict:
    response.delete_cookie(key=container.auth_cookie_name, path="/")
    return {"success": True}


@router.get("/me", response_model=UserAccount)
async def me(user: UserAccount = Depends(get_current_user)) -> UserAccount:
    return user
