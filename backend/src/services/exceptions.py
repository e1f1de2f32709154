"""
Custom exceptions for service layer.

Provides specific exception types for business logic errors
that can be translated to appropriate HTTP responses.

Recurrence taxonomy:
- InvalidRuleError / UnsupportedRuleError: bad recurrence input, never retried
- InvalidInstanceError: requested date is not a live occurrence
- ConcurrentModificationError: series changed underneath a write, retry once
- DataIntegrityError: a split left inconsistent rows, writes halted
"""

from datetime import date
from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service layer errors."""
    pass


class NotFoundError(ServiceError):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class ConflictError(ServiceError):
    """Raised when an operation conflicts with existing state."""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ServiceError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


class InvalidRuleError(ValidationError):
    """Raised when recurrence rule text or fields are malformed."""

    def __init__(self, message: str):
        super().__init__(message, field="rule")


class UnsupportedRuleError(ValidationError):
    """Raised when a well-formed rule uses a combination the engine does not support."""

    def __init__(self, message: str):
        super().__init__(message, field="rule")


class InvalidInstanceError(ServiceError):
    """Raised when a date is not a live occurrence of a series."""

    def __init__(self, series_guid: Optional[str], instance_date: date, message: Optional[str] = None):
        self.series_guid = series_guid
        self.instance_date = instance_date
        self.message = message or (
            f"{instance_date.isoformat()} is no longer part of this event"
        )
        super().__init__(self.message)


class ConcurrentModificationError(ConflictError):
    """Raised when a series was modified by another request mid-transaction.

    Safe to retry once after re-reading the series.
    """

    retryable = True

    def __init__(self, series_guid: str):
        self.series_guid = series_guid
        super().__init__(
            f"Event series '{series_guid}' was changed by another request. "
            "Reload the event and try again."
        )


class DataIntegrityError(ServiceError):
    """Raised when a series split is found partially applied.

    The affected series is placed on hold and rejects further writes
    until repaired manually.
    """

    def __init__(self, series_guid: str, detail: str):
        self.series_guid = series_guid
        self.detail = detail
        self.message = (
            f"Event series '{series_guid}' is on hold pending repair: {detail}"
        )
        super().__init__(self.message)
