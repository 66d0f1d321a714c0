"""
Custom exceptions for the tracking service with structured error context.

Every exception carries a message, a context dictionary and the original
exception (if any) so failures can be logged and stored uniformly.

Exception Hierarchy:
    TrackingException (base)
    ├── IngestionError
    │   ├── MalformedEvent
    │   ├── InvalidSignature
    │   └── UnknownEventType
    ├── DeliveryError
    │   ├── TransientDeliveryError
    │   │   └── QuotaExceeded
    │   └── PermanentDeliveryError
    ├── NotificationError
    ├── SourceSyncError
    │   ├── SourceNetworkError
    │   └── SourceAuthenticationError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class TrackingException(Exception):
    """
    Base exception for all tracking-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, target, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{self.original_exception}"
            )

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Classification
# ============================================================================

class RetryableError(TrackingException):
    """
    Marks failures the sync engine schedules for another attempt:
    timeouts and 429 or 5xx replies from the store.
    """


class NonRetryableError(TrackingException):
    """
    Marks failures that dead-letter immediately, e.g. a 4xx rejection
    from the store or bad credentials on the commerce backend.
    """


# ============================================================================
# Ingestion Errors (surfaced synchronously to the webhook caller)
# ============================================================================

class IngestionError(NonRetryableError):
    """Base exception for events rejected at ingestion time."""

    error_code = "ingestion_error"


class MalformedEvent(IngestionError):
    """
    Payload violates the declared schema for its (sourceSystem, eventType).

    ``fields`` lists the missing or invalid field names.
    """

    error_code = "malformed_event"

    def __init__(
        self,
        message: str,
        fields: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.fields = list(fields or [])
        self.context["fields"] = self.fields


class InvalidSignature(IngestionError):
    """Missing, malformed or mismatching webhook signature."""

    error_code = "invalid_signature"


class UnknownEventType(IngestionError):
    """No schema is declared for the (sourceSystem, eventType) pair."""

    error_code = "unknown_event_type"


# ============================================================================
# Delivery Errors (handled internally by the sync engine)
# ============================================================================

class DeliveryError(TrackingException):
    """Base exception for analytics store delivery failures."""


class TransientDeliveryError(RetryableError, DeliveryError):
    """Timeout, connection failure or 5xx from the analytics store."""


class QuotaExceeded(TransientDeliveryError):
    """Rate limiting (HTTP 429) from the analytics store."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class PermanentDeliveryError(NonRetryableError, DeliveryError):
    """Malformed request or authorization failure; never retried."""


# ============================================================================
# Notification Errors
# ============================================================================

class NotificationError(TrackingException):
    """
    Exception raised when an outbound notification channel fails.

    Context should include:
        - channel: Name of the channel that failed
        - alert_type: Type of the alert being dispatched
    """


# ============================================================================
# Source Sync Errors (reconciliation against the commerce backend)
# ============================================================================

class SourceSyncError(TrackingException):
    """Base exception for reconciliation fetch failures."""


class SourceNetworkError(RetryableError, SourceSyncError):
    """Network-related errors that should be retried."""


class SourceAuthenticationError(NonRetryableError, SourceSyncError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
