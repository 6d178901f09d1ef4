from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """
    Base for every error the API turns into a JSON error envelope.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(ServiceError):
    status_code = 401
    code = "UNAUTHENTICATED"


class AuthorizationError(ServiceError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationFailed(ServiceError, ValueError):
    status_code = 400
    code = "VALIDATION_FAILED"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ServiceError):
    status_code = 409
    code = "CONFLICT"


class InsufficientFundsError(ServiceError, ValueError):
    """Business-rule failure: neither minutes, credits nor wallet cover the job."""

    status_code = 400
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, shortfall: Decimal, details: Optional[Dict[str, Any]] = None) -> None:
        self.shortfall = shortfall
        merged = {"shortfall": str(shortfall)}
        merged.update(details or {})
        super().__init__("insufficient minutes, credits or wallet balance", merged)


class UpstreamError(ServiceError):
    """The transcription vendor or payment gateway failed."""

    status_code = 500
    code = "UPSTREAM_ERROR"


class StaleDocumentError(Exception):
    """A compare-and-set write lost against a concurrent writer."""


class DuplicateDocumentError(Exception):
    """An insert collided with an existing document id."""
