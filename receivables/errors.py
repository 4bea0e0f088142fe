"""Receivables ledger error taxonomy with caller-facing context."""

from typing import Any, Dict, Optional
from rest_framework import status


class LedgerError(Exception):
    """Base ledger error with rich context."""

    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "LEDGER_ERROR"
    message = "A ledger error occurred"
    retryable = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        """Convert error to API response."""
        return {
            "status": "error",
            "code": self.http_status,
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: str(v) for k, v in self.context.items()} if self.context else None,
        }


class ValidationError(LedgerError):
    """Malformed input, rejected before anything is persisted."""
    http_status = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"
    message = "Invalid input provided"

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, str]] = None, **context: Any):
        self.errors = errors or {}
        if self.errors and not message:
            message = "; ".join(f"{field}: {reason}" for field, reason in self.errors.items())
        super().__init__(message, **context)

    def to_response(self) -> Dict[str, Any]:
        response = super().to_response()
        if self.errors:
            response["fields"] = dict(self.errors)
        return response


class NotFoundError(LedgerError):
    """Invoice, payment, customer or series absent for the tenant."""
    http_status = status.HTTP_404_NOT_FOUND
    error_code = "RESOURCE_NOT_FOUND"
    message = "Resource not found"


class SeriesNotFound(NotFoundError):
    error_code = "SERIES_NOT_FOUND"
    message = "Numbering series is missing or inactive"


class InvariantViolation(LedgerError):
    """A ledger invariant would break. Always rejected, never partially applied."""
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "INVARIANT_VIOLATION"
    message = "Operation would violate a ledger invariant"


class OverAllocation(InvariantViolation):
    error_code = "OVER_ALLOCATION"
    message = "Allocation exceeds the available amount"


class InvalidTransition(InvariantViolation):
    error_code = "INVALID_STATE_TRANSITION"
    message = "Status transition is not allowed"


class HasPayments(InvariantViolation):
    error_code = "INVOICE_HAS_PAYMENTS"
    message = "Invoice has recorded payments; reverse the allocations first"


class ImmutableField(InvariantViolation):
    error_code = "IMMUTABLE_FIELD"
    message = "Field cannot be changed"


class SeriesExhausted(InvariantViolation):
    error_code = "SERIES_EXHAUSTED"
    message = "Numbering series has no numbers left for its pad length"


class CreditLimitExceeded(InvariantViolation):
    error_code = "CREDIT_LIMIT_EXCEEDED"
    message = "Credit limit exceeded"


class ConcurrencyConflict(LedgerError):
    """Concurrent writers touched the same rows; safe to retry."""
    http_status = status.HTTP_409_CONFLICT
    error_code = "CONCURRENCY_CONFLICT"
    message = "The record was modified concurrently, please retry"
    retryable = True


class StaleInvoiceState(ConcurrencyConflict):
    error_code = "STALE_INVOICE_STATE"
    message = "Invoice changed while the allocation was being applied"


class ExternalDeliveryFailure(LedgerError):
    """A notification channel could not be reached."""
    http_status = status.HTTP_502_BAD_GATEWAY
    error_code = "EXTERNAL_DELIVERY_FAILURE"
    message = "Notification could not be delivered"
    retryable = True
