"""Domain exception hierarchy.

Every error carries the HTTP status it maps to plus optional details; the API
layer renders them in the same envelope as HTTPException.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import status


class KontriVibeError(Exception):
    """Base class for all KontriVibe domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "internal_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details}


class ValidationError(KontriVibeError):
    """Bad plan type, bad payment method, or a field missing for the chosen method."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details)


class AuthenticationError(KontriVibeError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "authentication_error"


class PremiumRequiredError(KontriVibeError):
    """The route needs an unexpired premium entitlement."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "premium_required"

    def __init__(self, message: str = "This feature is only available for premium users"):
        super().__init__(message, {"upgradePath": "/subscribe"})


class NotFoundError(KontriVibeError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class ConflictError(KontriVibeError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "conflict"


class PaymentProviderError(KontriVibeError):
    """Raised by the provider client for any rejected or failed call."""

    error_code = "payment_provider_error"

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        retryable: bool = False,
    ):
        self.provider_status = provider_status
        self.retryable = retryable
        super().__init__(message, {"retryable": retryable})

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.retryable:
            return status.HTTP_504_GATEWAY_TIMEOUT
        return status.HTTP_502_BAD_GATEWAY


class PaymentInitiationError(KontriVibeError):
    """Provider rejected or timed out while starting a payment attempt."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "payment_initiation_failed"

    def __init__(self, message: str, retryable: bool = False, transaction_id: Optional[str] = None):
        self.retryable = retryable
        details: dict[str, Any] = {"retryable": retryable}
        if transaction_id:
            details["transaction_id"] = transaction_id
        super().__init__(message, details)
