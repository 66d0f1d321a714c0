"""
Core utilities and configuration for the tracking service.

This package provides foundational components used throughout the service:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import build_engine, build_session_factory
    from core.exceptions import MalformedEvent, TransientDeliveryError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "build_engine",
    "build_session_factory",
    "setup_logging",
    # Exceptions
    "TrackingException",
    "RetryableError",
    "NonRetryableError",
    "IngestionError",
    "MalformedEvent",
    "InvalidSignature",
    "UnknownEventType",
    "DeliveryError",
    "TransientDeliveryError",
    "QuotaExceeded",
    "PermanentDeliveryError",
    "NotificationError",
    "SourceSyncError",
    "SourceNetworkError",
    "SourceAuthenticationError",
]
