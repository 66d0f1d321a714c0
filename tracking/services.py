"""
Wiring of the tracking components from settings.
"""

from datetime import datetime
from typing import Callable, Dict, Optional
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.database import build_engine, build_session_factory
from tracking.correlation import CorrelationStore
from tracking.delivery.client import DeliveryClient
from tracking.delivery.rate_limiter import QuotaLimiter
from tracking.delivery.sheets_client import SheetsClient
from tracking.jobs import TierJobs
from tracking.normalizer import EventNormalizer
from tracking.notifications.aggregator import NotificationAggregator
from tracking.notifications.channels import ChannelDispatcher, EmailChannel, NotificationChannel, PagerChannel
from tracking.pipeline import IngestionPipeline
from tracking.reports import ReportSender
from tracking.scheduler import TierScheduler
from tracking.source_client import CommerceClient
from tracking.sync_engine import SyncEngine
from tracking.verifier import SignatureVerifier

logger = logging.getLogger(__name__)


class TrackingServices:
    """
    One instance per process; owns every long-lived component.

    Optional arguments replace the default collaborators (tests pass an
    in-memory database, mock HTTP transports and recording channels).
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        session_factory: Optional[async_sessionmaker] = None,
        sheets_http: Optional[httpx.AsyncClient] = None,
        commerce_http: Optional[httpx.AsyncClient] = None,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        limiter: Optional[QuotaLimiter] = None,
        sleep=None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.config = config or default_settings
        cfg = self.config
        self.clock = clock

        self.db_engine = engine or build_engine(cfg)
        self.session_factory = session_factory or build_session_factory(self.db_engine)

        self.verifier = SignatureVerifier(cfg.WEBHOOK_SECRET, cfg.WEBHOOK_SECRETS, cfg.UNSIGNED_CHANNELS)
        self.normalizer = EventNormalizer()
        self.correlation = CorrelationStore()

        self.limiter = limiter or QuotaLimiter(cfg.SHEETS_QUOTA_PER_MINUTE, window=60.0)
        self.sheets = SheetsClient(
            cfg.SHEETS_API_URL,
            cfg.SHEETS_ACCESS_TOKEN,
            timeout=cfg.DELIVERY_TIMEOUT_SECONDS,
            http_client=sheets_http
        )
        delivery_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.delivery = DeliveryClient(
            self.sheets,
            cfg.SPREADSHEET_IDS,
            self.limiter,
            batch_size=cfg.DELIVERY_BATCH_SIZE,
            rate_limit_retries=cfg.RATE_LIMIT_RETRIES,
            retry_base_delay=cfg.RETRY_BASE_DELAY,
            retry_max_delay=cfg.RETRY_MAX_DELAY,
            **delivery_kwargs
        )

        if channels is None:
            channels = {
                "email": EmailChannel(
                    cfg.SMTP_HOST,
                    port=cfg.SMTP_PORT,
                    user=cfg.SMTP_USER,
                    password=cfg.SMTP_PASS,
                    sender=cfg.SMTP_FROM,
                    recipients=cfg.NOTIFICATION_RECIPIENTS,
                    timeout=cfg.NOTIFICATION_TIMEOUT_SECONDS
                ),
                "pager": PagerChannel(cfg.PAGER_WEBHOOK_URL, timeout=cfg.NOTIFICATION_TIMEOUT_SECONDS),
            }
        self.dispatcher = ChannelDispatcher(channels, timeout=cfg.NOTIFICATION_TIMEOUT_SECONDS)
        self.aggregator = NotificationAggregator(
            self.session_factory,
            self.dispatcher,
            cfg.SEVERITY_CHANNELS,
            window_seconds=cfg.NOTIFICATION_WINDOW_SECONDS,
            clock=clock
        )

        self.engine = SyncEngine(
            self.session_factory,
            self.delivery,
            self.normalizer,
            alert=self.aggregator.record,
            max_attempts=cfg.MAX_DELIVERY_ATTEMPTS,
            base_delay=cfg.RETRY_BASE_DELAY,
            max_delay=cfg.RETRY_MAX_DELAY,
            jitter=cfg.RETRY_JITTER,
            batch_size=cfg.DELIVERY_BATCH_SIZE,
            worker_count=cfg.WORKER_POOL_SIZE,
            poll_interval=cfg.WORKER_POLL_INTERVAL,
            stale_after_seconds=cfg.STALE_IN_FLIGHT_SECONDS,
            delivery_timeout=cfg.DELIVERY_TIMEOUT_SECONDS,
            failure_threshold=cfg.SUSTAINED_FAILURE_THRESHOLD,
            clock=clock
        )
        self.pipeline = IngestionPipeline(
            self.session_factory,
            self.verifier,
            self.normalizer,
            self.correlation,
            self.engine,
            aggregator=self.aggregator,
            clock=clock
        )

        self.source = CommerceClient(
            cfg.COMMERCE_API_URL,
            cfg.COMMERCE_API_TOKEN,
            page_size=cfg.COMMERCE_PAGE_SIZE,
            http_client=commerce_http
        )
        self.reports = ReportSender(self.dispatcher, cfg.REPORT_CHANNELS)
        self.jobs = TierJobs(
            self.session_factory,
            self.engine,
            self.delivery,
            self.pipeline,
            self.source,
            self.reports,
            retention_days=cfg.RETENTION_DAYS,
            cohort_periods=cfg.COHORT_PERIODS,
            clock=clock
        )
        self.scheduler = TierScheduler(
            self.session_factory,
            self.jobs,
            aggregator=self.aggregator,
            realtime_minutes=cfg.REALTIME_INTERVAL_MINUTES,
            tier_timeout=cfg.TIER_TIMEOUT_SECONDS,
            flush_interval=min(60, cfg.NOTIFICATION_WINDOW_SECONDS),
            clock=clock
        )

    async def start(self):
        """Start delivery workers and the tier scheduler"""
        self.engine.start()
        self.scheduler.start()
        logger.info("Tracking services started")

    async def stop(self):
        self.scheduler.stop()
        await self.engine.stop()
        await self.sheets.close()
        logger.info("Tracking services stopped")

    async def dispose(self):
        await self.db_engine.dispose()
