"""
Work performed by each scheduler tier.

Every tier method returns the number of records it processed. Failures
propagate to the scheduler, which records and alerts on them.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import MalformedEvent, SourceSyncError
from models.base import AlertStatus, RunStatus, TaskStatus
from models.correlation import CorrelationLink
from models.delivery import ConflictRecord, DeliveryTask, DeliveryTombstone
from models.event import CanonicalEventRecord
from models.notification import NotificationAlert
from models.schedule import ScheduleRun, SourceCheckpoint
from schemas.events import CanonicalEvent
from tracking import analytics
from tracking.delivery.client import DeliveryClient
from tracking.pipeline import IngestionPipeline
from tracking.reports import ReportSender
from tracking.source_client import RESOURCES, SNAPSHOTS, CommerceClient
from tracking.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

FUNNEL_TARGET = "analytics/Funnel"
AGENT_TARGET = "support/Agent Performance"
FORECAST_TARGET = "inventory/Forecast"
COHORT_TARGET = "analytics/Cohorts"
SEGMENT_TARGET = "business/Customer Segments"
SUPPLIER_TARGET = "inventory/Suppliers"
JOURNEY_TARGET = "analytics/User Journeys"
JOURNEY_SUMMARY_TARGET = "analytics/Journey Summary"
CATEGORY_TARGET = "support/Category Analysis"
SUPPORT_METRICS_TARGET = "support/Daily Metrics"
KPI_TARGET = "business/KPI Dashboard"
PRODUCT_TARGET = "business/Product Performance"

# Trailing window for product performance and ticket resolution times
PERFORMANCE_WINDOW_DAYS = 30

# Tasks in these states still need their event row
_OPEN_TASK_STATES = (TaskStatus.PENDING, TaskStatus.IN_FLIGHT, TaskStatus.FAILED, TaskStatus.DEAD_LETTERED)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _previous_month(day: date) -> Tuple[date, date]:
    end = _month_start(day)
    start = _month_start(end - timedelta(days=1))
    return start, end


def _at_midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day)


class TierJobs:
    """Realtime, hourly, daily, weekly and monthly work"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: SyncEngine,
        delivery: DeliveryClient,
        pipeline: IngestionPipeline,
        source: CommerceClient,
        reports: ReportSender,
        retention_days: int = 90,
        cohort_periods: int = 12,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.delivery = delivery
        self.pipeline = pipeline
        self.source = source
        self.reports = reports
        self.retention_days = retention_days
        self.cohort_periods = cohort_periods
        self.clock = clock

    # ------------------------------------------------------------------
    # Event access
    # ------------------------------------------------------------------

    async def delivered_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        kinds: Optional[Iterable[Tuple[str, str]]] = None,
        sources: Optional[Iterable[str]] = None
    ) -> List[CanonicalEvent]:
        """
        Canonical events whose delivery completed, by occurred_at window.

        Args:
            kinds: (source_system, event_type) pairs to include
            sources: source systems to include
        """
        query = (
            select(CanonicalEventRecord)
            .join(DeliveryTask, DeliveryTask.event_id == CanonicalEventRecord.id)
            .where(DeliveryTask.status == TaskStatus.DELIVERED)
        )
        if start is not None:
            query = query.where(CanonicalEventRecord.occurred_at >= start)
        if end is not None:
            query = query.where(CanonicalEventRecord.occurred_at < end)
        if sources is not None:
            query = query.where(CanonicalEventRecord.source_system.in_(list(sources)))

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(CanonicalEventRecord.occurred_at))
            records = result.scalars().unique().all()

        events = [CanonicalEvent.from_record(r) for r in records]
        if kinds is not None:
            wanted = set(kinds)
            events = [e for e in events if (e.source_system, e.event_type) in wanted]
        return events

    async def _write(self, target: str, rows: Sequence[analytics.Row]) -> int:
        if not rows:
            return 0
        result = await self.delivery.append_or_update(target, rows)
        return result.written

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def realtime(self) -> int:
        """Watchdog requeue, queue drain, then reconciliation from the source"""
        requeued = await self.engine.requeue_stale()
        delivered = await self.engine.drain(worker_id="realtime")
        reconciled = await self.reconcile()
        if reconciled:
            delivered += await self.engine.drain(worker_id="realtime")
        logger.info(f"Realtime tier: {requeued} requeued, {delivered} delivered, {reconciled} reconciled")
        return delivered + reconciled

    async def _checkpoint(self, session, resource: str) -> SourceCheckpoint:
        checkpoint = await session.get(SourceCheckpoint, resource)
        if checkpoint is None:
            checkpoint = SourceCheckpoint(resource=resource, total_records_processed=0, last_records_processed=0)
            session.add(checkpoint)
        return checkpoint

    async def reconcile(self) -> int:
        """
        Pull orders and products changed since their checkpoint and feed
        them through the pipeline as snapshots.

        Raises:
            SourceSyncError: Fetch failed (checkpoint left unchanged)
        """
        if not self.source.is_configured:
            logger.debug("Commerce backend not configured, skipping reconciliation")
            return 0

        total = 0
        for resource in RESOURCES:
            event_type, to_payload = SNAPSHOTS[resource]
            async with self.session_factory() as session:
                checkpoint = await self._checkpoint(session, resource)
                cursor = checkpoint.cursor
                checkpoint.last_run_at = self.clock()
                try:
                    records = await self.source.fetch_updated(resource, cursor)
                except SourceSyncError as e:
                    checkpoint.status = RunStatus.FAILED
                    checkpoint.error_message = e.message[:1000]
                    await session.commit()
                    logger.error(f"Reconciliation of {resource} failed: {e.message}", extra={"error_context": e.to_dict()})
                    raise
                await session.commit()

            accepted = 0
            for record in records:
                try:
                    result = await self.pipeline.ingest("commerce", event_type, to_payload(record))
                except MalformedEvent as e:
                    logger.warning(f"Skipping {resource} record {record.get('id')}: {e.message} {e.fields}")
                    continue
                if not result.duplicate:
                    accepted += 1
                updated_at = record.get("updatedAt")
                if updated_at and (cursor is None or str(updated_at) > cursor):
                    cursor = str(updated_at)

            async with self.session_factory() as session:
                checkpoint = await self._checkpoint(session, resource)
                checkpoint.cursor = cursor
                checkpoint.status = RunStatus.SUCCESS
                checkpoint.error_message = None
                checkpoint.last_success_at = self.clock()
                checkpoint.last_records_processed = accepted
                checkpoint.total_records_processed = (checkpoint.total_records_processed or 0) + accepted
                await session.commit()

            logger.info(f"Reconciled {accepted} new {resource} snapshots (cursor={cursor})")
            total += accepted
        return total

    # ------------------------------------------------------------------
    # Hourly
    # ------------------------------------------------------------------

    async def hourly(self) -> int:
        """
        Funnel conversion, user journeys, support-agent performance and
        support category analysis, refreshed for the last full hour
        """
        end = self.clock().replace(minute=0, second=0, microsecond=0)
        start = end - timedelta(hours=1)
        period = start.strftime("%Y-%m-%dT%H:00")
        day = start.date()

        activity = await self.delivered_events(start, end, sources=["user_activity"])
        written = await self._write(FUNNEL_TARGET, analytics.funnel_rows(activity, period))

        # Sessions cross hour boundaries; journeys are rebuilt over the trailing day
        recent_activity = await self.delivered_events(end - timedelta(days=1), end, sources=["user_activity"])
        journeys = analytics.user_journeys(recent_activity)
        written += await self._write(JOURNEY_TARGET, analytics.journey_rows(journeys))
        written += await self._write(
            JOURNEY_SUMMARY_TARGET, analytics.journey_summary_rows(analytics.journey_summary(journeys), period)
        )

        # Agent stats are cumulative over the trailing day
        support = await self.delivered_events(end - timedelta(days=1), end, sources=["support"])
        written += await self._write(AGENT_TARGET, analytics.agent_rows(support, period))

        today = [e for e in support if e.occurred_at >= _at_midnight(day)]
        written += await self._write(
            CATEGORY_TARGET, analytics.category_rows(analytics.category_analysis(today), day.isoformat())
        )
        return written

    # ------------------------------------------------------------------
    # Daily
    # ------------------------------------------------------------------

    async def daily(self) -> int:
        """
        Yesterday's summary report, support metrics and KPI row, product
        performance over the trailing window and the inventory forecast
        """
        today = self.clock().date()
        yesterday = today - timedelta(days=1)
        events = await self.delivered_events(_at_midnight(yesterday), _at_midnight(today))
        summary = analytics.daily_summary(events)
        by_type = summary.pop("events_by_type")

        written = await self._write(KPI_TARGET, analytics.kpi_rows(analytics.kpi_dashboard(events), yesterday))

        # Tickets opened earlier may be resolved yesterday
        support = await self.delivered_events(
            _at_midnight(yesterday) - timedelta(days=PERFORMANCE_WINDOW_DAYS), _at_midnight(today),
            sources=["support"]
        )
        metrics = analytics.support_daily_metrics(support, yesterday)
        written += await self._write(SUPPORT_METRICS_TARGET, analytics.support_metric_rows(metrics, yesterday))

        inventory = await self.delivered_events(
            sources=["inventory", "commerce"],
            start=_at_midnight(today) - timedelta(days=365)
        )
        forecasts = analytics.inventory_forecast(inventory, as_of=self.clock())
        written += await self._write(FORECAST_TARGET, analytics.forecast_rows(forecasts, today.isoformat()))

        activity = await self.delivered_events(
            _at_midnight(today) - timedelta(days=PERFORMANCE_WINDOW_DAYS), _at_midnight(today),
            sources=["user_activity"]
        )
        products = analytics.product_performance(inventory + activity)
        written += await self._write(PRODUCT_TARGET, analytics.product_rows(products, today.isoformat()))

        reorder = {f.sku or f.product_id: f"{f.current_stock} in stock, {f.days_remaining} days left"
                   for f in forecasts if f.reorder}
        await self.reports.send(
            "Daily summary",
            yesterday.isoformat(),
            {
                "Overview": summary,
                "Support": {k: v for k, v in metrics.items() if v is not None},
                "Events by type": by_type,
                "Reorder suggested": reorder,
            },
        )
        return len(events) + written

    # ------------------------------------------------------------------
    # Weekly
    # ------------------------------------------------------------------

    async def weekly(self) -> int:
        """Cohort retention over the trailing periods and the weekly report"""
        now = self.clock()
        this_week = analytics.week_start(now)
        last_week = this_week - timedelta(weeks=1)

        orders = await self.delivered_events(
            start=_at_midnight(this_week) - timedelta(weeks=self.cohort_periods),
            end=_at_midnight(this_week) + timedelta(weeks=1),
            kinds=[("order", "created")]
        )
        retention = analytics.cohort_retention(orders, periods=self.cohort_periods, as_of=now)
        written = await self._write(COHORT_TARGET, analytics.cohort_rows(retention, self.cohort_periods))

        events = await self.delivered_events(_at_midnight(last_week), _at_midnight(this_week))
        summary = analytics.daily_summary(events)
        summary.pop("events_by_type")
        iso_year, iso_week, _ = last_week.isocalendar()
        cohorts = {
            cohort.isoformat(): ", ".join(f"{rate:.0%}" for rate in rates[:4])
            for cohort, rates in retention.items()
        }
        await self.reports.send(
            "Weekly report",
            f"{iso_year}-W{iso_week:02d}",
            {"Overview": summary, "Cohort retention (first 4 weeks)": cohorts},
        )
        return len(events) + written

    # ------------------------------------------------------------------
    # Monthly
    # ------------------------------------------------------------------

    async def monthly(self) -> int:
        """Customer segments, supplier rollup, monthly report and retention cleanup"""
        now = self.clock()
        start, end = _previous_month(now.date())
        period = start.strftime("%Y-%m")

        orders = await self.delivered_events(
            kinds=[("order", "created"), ("order", "updated"), ("commerce", "order_snapshot")],
            start=_at_midnight(end) - timedelta(days=365),
            end=_at_midnight(end)
        )
        segments = analytics.customer_segments(orders, as_of=_at_midnight(end))
        written = await self._write(SEGMENT_TARGET, analytics.segment_rows(segments, period))

        inventory = await self.delivered_events(
            start=_at_midnight(start), end=_at_midnight(end), sources=["inventory", "commerce"]
        )
        rollup = analytics.supplier_rollup(inventory)
        written += await self._write(SUPPLIER_TARGET, analytics.supplier_rows(rollup, period))

        events = await self.delivered_events(_at_midnight(start), _at_midnight(end))
        summary = analytics.daily_summary(events)
        summary.pop("events_by_type")
        segment_counts = {}
        for segment in segments:
            segment_counts[segment.segment] = segment_counts.get(segment.segment, 0) + 1
        await self.reports.send(
            "Monthly business report",
            period,
            {"Overview": summary, "Customer segments": segment_counts, "Suppliers": rollup},
        )

        removed = await self.cleanup()
        return written + removed

    async def cleanup(self) -> int:
        """
        Delete data older than the retention window.

        Events whose task is not yet delivered are kept regardless of age,
        as are dead letters awaiting an operator. Each deleted task leaves a
        tombstone, which is never pruned, so late re-sends stay duplicates and
        older writes for the key still lose.
        """
        cutoff = self.clock() - timedelta(days=self.retention_days)
        async with self.session_factory() as session:
            open_events = select(DeliveryTask.event_id).where(DeliveryTask.status.in_(_OPEN_TASK_STATES))
            result = await session.execute(
                select(CanonicalEventRecord.id).where(
                    CanonicalEventRecord.received_at < cutoff,
                    CanonicalEventRecord.id.not_in(open_events)
                )
            )
            expired = list(result.scalars().all())

            if expired:
                tasks = await session.execute(select(DeliveryTask).where(DeliveryTask.event_id.in_(expired)))
                tasks = list(tasks.scalars().all())
                kept = await session.execute(
                    select(DeliveryTombstone.id).where(DeliveryTombstone.id.in_([task.id for task in tasks]))
                )
                kept = set(kept.scalars().all())
                now = self.clock()
                for task in tasks:
                    if task.id not in kept:
                        session.add(DeliveryTombstone.from_task(task, now))
                await session.flush()

                await session.execute(delete(CorrelationLink).where(CorrelationLink.event_id.in_(expired)))
                await session.execute(delete(DeliveryTask).where(DeliveryTask.event_id.in_(expired)))
                await session.execute(delete(CanonicalEventRecord).where(CanonicalEventRecord.id.in_(expired)))
            await session.execute(delete(ConflictRecord).where(ConflictRecord.created_at < cutoff))
            await session.execute(delete(ScheduleRun).where(ScheduleRun.started_at < cutoff))
            await session.execute(
                delete(NotificationAlert).where(
                    NotificationAlert.status != AlertStatus.PENDING,
                    NotificationAlert.last_seen_at < cutoff
                )
            )
            await session.commit()

        logger.info(f"Retention cleanup removed {len(expired)} events older than {cutoff.date().isoformat()}")
        return len(expired)
