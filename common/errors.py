"""Domain error taxonomy for bill settlement and shift reconciliation.

Every error is recoverable: it is rendered to the calling terminal by
``common.exceptions.custom_exception_handler`` with a stable ``code`` and a
``details`` mapping describing which item or constraint was involved.
"""

from __future__ import annotations

from typing import Any

from rest_framework import status
from rest_framework.exceptions import APIException


class DomainError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "domain_error"
    default_detail = "The request could not be completed."

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None):
        self.details = details or {}
        super().__init__(detail=message or self.default_detail, code=self.default_code)

    @property
    def message(self) -> str:
        return str(self.detail)


class ValidationError(DomainError):
    default_code = "validation_error"
    default_detail = "Invalid input."


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"
    default_detail = "The request conflicts with the current state."


class CapacityError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "capacity_exceeded"
    default_detail = "Requested quantity exceeds what is available."


class InvariantError(DomainError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_code = "invariant_violation"
    default_detail = "The operation would leave the record in an illegal state."


class InsufficientPaymentError(DomainError):
    default_code = "insufficient_payment"
    default_detail = "Amount tendered is less than the total due."


class AuthorizationError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "authorization_failed"
    default_detail = "Authorization failed."
