"""
Event tracking and analytics store synchronization.

This package contains every component between an inbound webhook and the
analytics spreadsheets:

Modules:
    verifier: HMAC-SHA256 webhook signature verification
    normalizer: Schema validation and canonical event construction
    correlation: Cross-system timelines keyed by correlation id
    sync_engine: Delivery tasks, last-write-wins, retry and worker pool
    pipeline: Webhook ingestion orchestration
    analytics: Pure aggregate computations for the scheduled tiers
    jobs: Work performed by each scheduler tier
    scheduler: APScheduler integration for the five cadence tiers
    source_client: Commerce backend client for reconciliation
    reports: Plain-text business reports
    services: Wiring of all components from settings

Subpackages:
    delivery: Rate-limited, idempotent writes into Google Sheets
    notifications: Alert aggregation and outbound channels

Architecture:
    An accepted event flows through four stages:

    1. Verify - Check the webhook signature over the raw body
    2. Normalize - Validate the payload and build a CanonicalEvent
    3. Persist - Store the event, link its correlation id, queue a task
    4. Deliver - Workers claim tasks and upsert rows in the store

    Everything after acceptance is asynchronous; delivery failures are
    retried or dead-lettered and never reach the webhook caller.

Usage:
    from tracking.services import TrackingServices

    services = TrackingServices()
    result = await services.pipeline.handle_webhook("order", body, signature)
    await services.engine.drain()
"""

__all__ = [
    "SignatureVerifier",
    "EventNormalizer",
    "CorrelationStore",
    "SyncEngine",
    "IngestionPipeline",
    "TierScheduler",
    "TrackingServices",
]
