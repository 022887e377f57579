"""
DataPraktis - Settlement Errors
================================

Error taxonomy raised by the settlement services.

Every error is raised before any state change, or inside a unit of work
that is rolled back, so callers may re-fetch state and retry.
"""

from fastapi import status


class SettlementError(Exception):
    """Base class for settlement errors."""

    code = "SETTLEMENT_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SettlementError):
    """Malformed input, e.g. milestone amounts not summing to the budget."""

    code = "VALIDATION_ERROR"
    status_code = 422


class NotFound(SettlementError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class AccessDenied(SettlementError):
    code = "ACCESS_DENIED"
    status_code = status.HTTP_403_FORBIDDEN


class PreconditionFailed(SettlementError):
    """Entity is in the wrong status for the requested transition."""

    code = "PRECONDITION_FAILED"
    status_code = status.HTTP_409_CONFLICT


class AlreadyPaid(PreconditionFailed):
    code = "ALREADY_PAID"


class RevisionLimitExceeded(SettlementError):
    """No revisions left; the client's remaining recourse is a dispute."""

    code = "REVISION_LIMIT_EXCEEDED"
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(SettlementError):
    code = "INSUFFICIENT_BALANCE"
    status_code = status.HTTP_400_BAD_REQUEST


class BelowMinimumAmount(SettlementError):
    code = "BELOW_MINIMUM_AMOUNT"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidSignature(SettlementError):
    """Gateway notification failed authenticity check."""

    code = "INVALID_SIGNATURE"
    status_code = status.HTTP_401_UNAUTHORIZED


class UnknownOrderReference(SettlementError):
    code = "UNKNOWN_ORDER_REFERENCE"
    status_code = status.HTTP_404_NOT_FOUND


class ExternalServiceFailure(SettlementError):
    """Gateway unreachable or returned an error after retries."""

    code = "EXTERNAL_SERVICE_FAILURE"
    status_code = status.HTTP_502_BAD_GATEWAY
