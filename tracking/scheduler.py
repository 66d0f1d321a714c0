"""
Five-tier scheduler built on APScheduler.

Each tier is an independent job with its own persisted state:
- A slot (5-minute bucket, hour, date, ISO week, month) identifies one
  scheduled run; a slot that already ran is skipped, so restarts never
  duplicate work
- At startup every tier whose latest due slot has not run is caught up,
  so downtime never skips work
- A failing run is recorded, logged and alerted, and never blocks the next
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import logging
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import TrackingException
from models.base import RunStatus, Tier
from models.schedule import ScheduleRun, TierState
from tracking.jobs import TierJobs
from tracking.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Wall-clock (UTC) fire times per tier
DAILY_AT = (6, 0)
WEEKLY_AT = (0, 8, 0)  # Monday 08:00
MONTHLY_AT = (1, 9, 0)  # 1st of the month 09:00


def build_trigger(tier: Tier, realtime_minutes: int = 5) -> CronTrigger:
    if tier == Tier.REALTIME:
        return CronTrigger(minute=f"*/{realtime_minutes}", timezone="UTC")
    if tier == Tier.HOURLY:
        return CronTrigger(minute=0, timezone="UTC")
    if tier == Tier.DAILY:
        return CronTrigger(hour=DAILY_AT[0], minute=DAILY_AT[1], timezone="UTC")
    if tier == Tier.WEEKLY:
        return CronTrigger(day_of_week="mon", hour=WEEKLY_AT[1], minute=WEEKLY_AT[2], timezone="UTC")
    return CronTrigger(day=MONTHLY_AT[0], hour=MONTHLY_AT[1], minute=MONTHLY_AT[2], timezone="UTC")


def slot_for(tier: Tier, moment: datetime, realtime_minutes: int = 5) -> str:
    """Identifier of the schedule slot containing ``moment``"""
    if tier == Tier.REALTIME:
        minute = moment.minute - moment.minute % realtime_minutes
        return moment.strftime("%Y-%m-%dT%H:") + f"{minute:02d}"
    if tier == Tier.HOURLY:
        return moment.strftime("%Y-%m-%dT%H")
    if tier == Tier.DAILY:
        return moment.date().isoformat()
    if tier == Tier.WEEKLY:
        year, week, _ = moment.isocalendar()
        return f"{year}-W{week:02d}"
    return moment.strftime("%Y-%m")


def last_fire_time(tier: Tier, now: datetime, realtime_minutes: int = 5) -> datetime:
    """Most recent scheduled fire time at or before ``now``"""
    if tier == Tier.REALTIME:
        return now.replace(minute=now.minute - now.minute % realtime_minutes, second=0, microsecond=0)
    if tier == Tier.HOURLY:
        return now.replace(minute=0, second=0, microsecond=0)
    if tier == Tier.DAILY:
        fire = now.replace(hour=DAILY_AT[0], minute=DAILY_AT[1], second=0, microsecond=0)
        return fire if fire <= now else fire - timedelta(days=1)
    if tier == Tier.WEEKLY:
        monday = now - timedelta(days=now.weekday())
        fire = monday.replace(hour=WEEKLY_AT[1], minute=WEEKLY_AT[2], second=0, microsecond=0)
        return fire if fire <= now else fire - timedelta(weeks=1)
    fire = now.replace(day=MONTHLY_AT[0], hour=MONTHLY_AT[1], minute=MONTHLY_AT[2], second=0, microsecond=0)
    if fire <= now:
        return fire
    previous = fire - timedelta(days=1)
    return previous.replace(day=MONTHLY_AT[0])


class TierScheduler:
    """
    Runs tier jobs on their cadences and records every run.

    ``run_tier`` can also be called directly (manual runs, tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        jobs: TierJobs,
        aggregator=None,
        realtime_minutes: int = 5,
        tier_timeout: float = 900,
        flush_interval: float = 60,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.jobs = jobs
        self.aggregator = aggregator
        self.realtime_minutes = realtime_minutes
        self.tier_timeout = tier_timeout
        self.flush_interval = flush_interval
        self.clock = clock
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._tier_locks = KeyedLocks()
        self.handlers: Dict[Tier, Callable[[], Awaitable[int]]] = {
            Tier.REALTIME: jobs.realtime,
            Tier.HOURLY: jobs.hourly,
            Tier.DAILY: jobs.daily,
            Tier.WEEKLY: jobs.weekly,
            Tier.MONTHLY: jobs.monthly,
        }

    async def _state(self, session, tier: Tier) -> TierState:
        state = await session.get(TierState, tier)
        if state is None:
            state = TierState(tier=tier, total_runs=0)
            session.add(state)
        return state

    async def run_tier(
        self,
        tier: Union[Tier, str],
        slot: Optional[str] = None,
        force: bool = False
    ) -> ScheduleRun:
        """
        Execute one tier run and record it.

        Args:
            tier: Tier to run
            slot: Slot to run for; defaults to the slot containing now
            force: Run even if the slot already ran, without marking it done

        Returns:
            The ScheduleRun row (status skipped, success or failed)
        """
        tier = Tier(tier)
        slot = slot or slot_for(tier, self.clock(), self.realtime_minutes)

        async with self._tier_locks.hold(tier):
            started = self.clock()
            async with self.session_factory() as session:
                state = await self._state(session, tier)
                if state.last_slot == slot and not force:
                    run = ScheduleRun(
                        tier=tier, slot=slot, status=RunStatus.SKIPPED,
                        started_at=started, finished_at=started, duration_seconds=0.0,
                        records_processed=0, errors=[]
                    )
                    session.add(run)
                    await session.commit()
                    logger.info(f"{tier.value} slot {slot} already ran, skipping")
                    return run

                run = ScheduleRun(tier=tier, slot=slot, status=RunStatus.RUNNING, started_at=started, errors=[])
                session.add(run)
                # Forced runs are out of cadence and leave the scheduled slot due
                if not force:
                    state.last_slot = slot
                state.last_started_at = started
                state.total_runs = (state.total_runs or 0) + 1
                await session.commit()
                run_id = run.id

            logger.info(f"Running {tier.value} tier for slot {slot}")
            t0 = time.perf_counter()
            records = 0
            errors: List[dict] = []
            try:
                records = await asyncio.wait_for(self.handlers[tier](), timeout=self.tier_timeout)
            except asyncio.TimeoutError:
                errors.append({"error_type": "TimeoutError", "message": f"Run exceeded {self.tier_timeout}s"})
                logger.error(f"{tier.value} tier run {slot} timed out after {self.tier_timeout}s")
            except TrackingException as e:
                errors.append(e.to_dict())
                logger.error(f"{tier.value} tier run {slot} failed: {e.message}", extra={"error_context": e.to_dict()})
            except Exception as e:
                errors.append({"error_type": type(e).__name__, "message": str(e)})
                logger.exception(f"{tier.value} tier run {slot} failed")

            finished = self.clock()
            async with self.session_factory() as session:
                run = await session.get(ScheduleRun, run_id)
                run.status = RunStatus.FAILED if errors else RunStatus.SUCCESS
                run.finished_at = finished
                run.duration_seconds = round(time.perf_counter() - t0, 3)
                run.records_processed = records or 0
                run.errors = errors
                state = await self._state(session, tier)
                if errors:
                    state.last_failure_at = finished
                else:
                    state.last_success_at = finished
                await session.commit()

        if errors:
            await self._alert_failure(tier, slot, errors[0].get("message", "unknown error"))
        else:
            logger.info(f"{tier.value} tier slot {slot} completed: {records} records in {run.duration_seconds}s")
        return run

    async def _alert_failure(self, tier: Tier, slot: str, message: str):
        if self.aggregator is None:
            return
        try:
            await self.aggregator.record(
                "scheduler_tier_failed", "high", f"Scheduler {tier.value} run {slot} failed: {message}"
            )
        except Exception as e:
            logger.error(f"Could not record scheduler failure alert: {e}")

    async def catch_up(self) -> List[ScheduleRun]:
        """Run every tier whose latest due slot has not run yet"""
        now = self.clock()
        runs = []
        for tier in Tier:
            slot = slot_for(tier, last_fire_time(tier, now, self.realtime_minutes), self.realtime_minutes)
            async with self.session_factory() as session:
                state = await session.get(TierState, tier)
                last_slot = state.last_slot if state else None
            if last_slot != slot:
                logger.info(f"Catching up {tier.value} tier for slot {slot}")
                runs.append(await self.run_tier(tier, slot=slot))
        return runs

    async def flush_notifications(self) -> int:
        if self.aggregator is None:
            return 0
        try:
            closed = await self.aggregator.flush()
        except Exception:
            logger.exception("Notification flush failed")
            return 0
        return len(closed)

    async def _scheduled(self, tier: Tier):
        await self.run_tier(tier)

    def start(self, catch_up: bool = True):
        """Register tier jobs and start the APScheduler loop"""
        if self.scheduler is not None:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        for tier in Tier:
            self.scheduler.add_job(
                self._scheduled,
                trigger=build_trigger(tier, self.realtime_minutes),
                args=[tier],
                id=f"tier_{tier.value}",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
                replace_existing=True
            )
        self.scheduler.add_job(
            self.flush_notifications,
            trigger=IntervalTrigger(seconds=self.flush_interval),
            id="notification_flush",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        if catch_up:
            self.scheduler.add_job(self.catch_up, id="catch_up", replace_existing=True)
        self.scheduler.start()
        logger.info("Tier scheduler started")

    def stop(self):
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Tier scheduler stopped")

    async def recent_runs(self, limit: int = 20) -> List[ScheduleRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduleRun).order_by(ScheduleRun.started_at.desc(), ScheduleRun.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def tier_states(self) -> List[TierState]:
        async with self.session_factory() as session:
            result = await session.execute(select(TierState))
            return list(result.scalars().all())
