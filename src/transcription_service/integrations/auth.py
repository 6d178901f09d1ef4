from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from ..errors import AuthenticationError


logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "transcription-service"


class VerifiedToken(BaseModel):
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None


class TokenVerifier(ABC):
    @abstractmethod
    async def verify(self, token: str) -> VerifiedToken:
        """Raise AuthenticationError unless `token` is a valid identity token."""
        ...


class FirebaseTokenVerifier(TokenVerifier):
    """
    Verifies Firebase ID tokens with the Admin SDK, using a named app built
    from the service-account fields in settings.
    """

    def __init__(self, project_id: str, client_email: str, private_key: str) -> None:
        try:
            self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
        except ValueError:
            cred = credentials.Certificate(
                {
                    "type": "service_account",
                    "project_id": project_id,
                    "client_email": client_email,
                    "private_key": private_key,
                    "token_uri": "https://oauth2.googleapis.com/token",
                }
            )
            self._app = firebase_admin.initialize_app(
                cred, {"projectId": project_id}, name=FIREBASE_APP_NAME
            )

    async def verify(self, token: str) -> VerifiedToken:
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            claims = await run_in_threadpool(firebase_auth.verify_id_token, token, app=self._app)
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
                firebase_auth.RevokedIdTokenError, firebase_auth.CertificateFetchError) as exc:
            logger.info("Rejected identity token: %s", exc)
            raise AuthenticationError("Invalid or expired token") from exc
        return VerifiedToken(uid=claims["uid"], email=claims.get("email"), name=claims.get("name"))
