"""Typed failures raised by the checkout and payment workflow."""
from __future__ import annotations


class StorefrontError(Exception):
    """Base class for all workflow errors."""

    kind = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "retryable": self.retryable}


class ValidationError(StorefrontError):
    """Bad input shape or range."""

    kind = "validation_error"
    status_code = 400


class AuthenticationError(ValidationError):
    """No signed-in user behind the request."""

    kind = "authentication_required"
    status_code = 401


class AccessDeniedError(StorefrontError, PermissionError):
    """Caller does not hold the role the operation requires."""

    kind = "permission_denied"
    status_code = 403


class NotFoundError(StorefrontError):
    kind = "not_found"
    status_code = 404


class AlreadyProcessedError(StorefrontError):
    """The entity already left the state the operation expects."""

    kind = "already_processed"
    status_code = 409


class CapacityError(StorefrontError):
    """Flash-sale inventory or voucher uses are exhausted."""

    kind = "capacity_exceeded"
    status_code = 409


class StoreError(StorefrontError):
    """The persistent store failed; the caller may retry."""

    kind = "store_error"
    status_code = 503
    retryable = True


__all__ = [
    "StorefrontError",
    "ValidationError",
    "AuthenticationError",
    "AccessDeniedError",
    "NotFoundError",
    "AlreadyProcessedError",
    "CapacityError",
    "StoreError",
]
