from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Request

from ..container import ServiceContainer
from ..errors import AuthenticationError, AuthorizationError, DuplicateDocumentError
from ..integrations.auth import VerifiedToken
from ..models.job import TranscriptionJob
from ..models.user import UserAccount


logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _token_from_request(request: Request, cookie_name: str) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(cookie_name) or None


async def ensure_user(container: ServiceContainer, token: VerifiedToken) -> UserAccount:
    """Load the account for a verified identity, creating it on first sign-in."""
    user = await container.db.get_user(token.uid)
    if user is not None:
        return user
    try:
        user = await container.db.add_user(
            UserAccount(id=token.uid, email=token.email, display_name=token.name)
        )
    except DuplicateDocumentError:
        # Two first requests raced; the other one created it.
        user = await container.db.get_user(token.uid)
        if user is None:
            raise
        return user
    logger.info("Created account for user %s", token.uid)
    return user


async def get_current_user(
    request: Request, container: ServiceContainer = Depends(get_container)
) -> UserAccount:
    token = _token_from_request(request, container.auth_cookie_name)
    if not token:
        raise AuthenticationError("Authentication required")
    verified = await container.verifier.verify(token)
    return await ensure_user(container, verified)


async def require_admin(user: UserAccount = Depends(get_current_user)) -> UserAccount:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user


def ensure_job_access(job: TranscriptionJob, user: UserAccount) -> None:
    if job.user_id != user.id and not user.is_admin:
        raise AuthorizationError("You do not have access to this transcription")
