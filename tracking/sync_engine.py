"""
Sync engine: turns accepted events into delivery tasks and drives them into
the analytics store.

Responsibilities:
- Last-write-wins conflict resolution per logical key
- Single-owner task claiming for the worker pool
- Retry with exponential backoff and jitter, dead-lettering
- Watchdog for claims abandoned by crashed or hung workers

Task states:
    pending -> in_flight -> delivered
                         -> pending (attempt += 1, next_attempt_at = now + backoff)
                         -> dead_lettered (permanent error or attempts exhausted)
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence
import asyncio
import logging
import random
import uuid

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from core.exceptions import PermanentDeliveryError, QuotaExceeded, TransientDeliveryError
from models.base import TaskStatus
from models.delivery import ConflictRecord, DeliveryTask, DeliveryTombstone
from models.event import CanonicalEventRecord
from schemas.events import CanonicalEvent
from tracking.delivery.client import DeliveryClient
from tracking.locks import KeyedLocks
from tracking.normalizer import EventNormalizer, build_row, logical_key_for

logger = logging.getLogger(__name__)

# Trailing metadata columns appended by build_row
_METADATA_COLUMNS = 4

AlertHook = Callable[[str, str, str], Awaitable[Any]]


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    cap: float = 60.0,
    jitter: float = 0.1,
    rng: Callable[[], float] = random.random
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    ``min(cap, base * 2^(attempt-1) * (1 + U[0, jitter]))``; with jitter
    below 1 the delay never decreases as attempts grow.
    """
    exponent = max(0, attempt - 1)
    delay = base * (2 ** exponent) * (1 + jitter * rng())
    return min(cap, delay)


def resolve_last_write_wins(candidates: Iterable[DeliveryTask]) -> DeliveryTask:
    """
    Pick the winning task among writes to one logical key.

    Latest occurred_at wins; ties fall back to source system, then event
    id, so the result does not depend on arrival order.
    """
    candidates = list(candidates)
    if not candidates:
        raise ValueError("No candidates to resolve")
    return max(candidates, key=lambda task: task.ordering)


def business_values(row_values: Sequence[Any]) -> List[Any]:
    """Row values without the key column and trailing metadata"""
    return list(row_values[1:len(row_values) - _METADATA_COLUMNS])


class SyncEngine:
    """
    Conflict resolution, retry and worker pool on top of the delivery client.

    All timestamps come from ``clock`` (naive UTC) so tests can control time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        delivery: DeliveryClient,
        normalizer: EventNormalizer,
        alert: Optional[AlertHook] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.1,
        batch_size: int = 100,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        stale_after_seconds: float = 120.0,
        delivery_timeout: float = 30.0,
        failure_threshold: int = 5,
        clock: Callable[[], datetime] = datetime.utcnow,
        rng: Callable[[], float] = random.random
    ):
        self.session_factory = session_factory
        self.delivery = delivery
        self.normalizer = normalizer
        self.alert = alert
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.batch_size = batch_size
        self.worker_count = worker_count
        self.poll_interval = poll_interval
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.delivery_timeout = delivery_timeout
        self.failure_threshold = failure_threshold
        self.clock = clock
        self.rng = rng

        self.key_locks = KeyedLocks()
        self.consecutive_failures = 0
        self._workers: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Submission and conflict resolution
    # ------------------------------------------------------------------

    async def submit(
        self,
        session: AsyncSession,
        record: CanonicalEventRecord,
        event: CanonicalEvent
    ) -> DeliveryTask:
        """
        Create the delivery task for an accepted event and commit the session.

        Submitting the same event twice returns the existing task. When the
        event's logical key already has tasks, last-write-wins decides which
        one is delivered; the loser is closed as superseded.
        """
        existing = await self._task_by_idempotency_key(session, event.idempotency_key)
        if existing is not None:
            await session.commit()
            return existing

        schema = self.normalizer.schema_for(event.source_system, event.event_type)
        logical_key = logical_key_for(schema, event)
        row_key = str(event.payload[schema.key_field]) if logical_key else event.idempotency_key

        task = DeliveryTask(
            id=uuid.uuid4().hex,
            event_id=record.id,
            target_resource=schema.target,
            logical_key=logical_key,
            idempotency_key=event.idempotency_key,
            row_key=row_key,
            row_values=build_row(schema, event, row_key),
            occurred_at=event.occurred_at,
            source_system=event.source_system,
            source_event_id=event.event_id,
            status=TaskStatus.PENDING,
            attempt=0,
            next_attempt_at=self.clock(),
        )

        if logical_key is None:
            session.add(task)
            await session.commit()
            logger.debug(f"Queued append {task.idempotency_key} for {task.target_resource}")
            return task

        async with self.key_locks.hold(logical_key):
            rivals = await self._rivals_for_key(session, logical_key)
            session.add(task)
            await session.flush()

            if rivals:
                winner = resolve_last_write_wins(rivals + [task])
                if winner is task:
                    for rival in rivals:
                        if rival.status == TaskStatus.PENDING:
                            await self._supersede(session, rival, task)
                        elif rival.status == TaskStatus.IN_FLIGHT:
                            # Already being written; the newer task follows it
                            await self._record_conflict(session, task, rival)
                else:
                    await self._supersede(session, task, winner)

            await session.commit()

        logger.debug(f"Queued {task.idempotency_key} for {logical_key} (status={task.status.value})")
        return task

    async def _supersede(self, session: AsyncSession, loser: DeliveryTask, winner: DeliveryTask):
        """Close a pending loser as delivered without sending it"""
        now = self.clock()
        won = await self._transition(
            session, loser, TaskStatus.PENDING, None,
            status=TaskStatus.DELIVERED, superseded_by=winner.id, delivered_at=now, updated_at=now
        )
        if not won:
            return
        await self._record_conflict(session, winner, loser)
        logger.info(
            f"Last-write-wins on {loser.logical_key}: {winner.idempotency_key} supersedes {loser.idempotency_key}"
        )

    async def _record_conflict(self, session: AsyncSession, winner: DeliveryTask, loser: DeliveryTask):
        """Audit a pair of differing writes once"""
        if business_values(loser.row_values) == business_values(winner.row_values):
            return
        existing = await session.execute(
            select(ConflictRecord).where(
                ConflictRecord.logical_key == winner.logical_key,
                ConflictRecord.winner_task_id == winner.id
            )
        )
        for record in existing.scalars().all():
            if any(candidate["task_id"] == loser.id for candidate in record.candidates):
                return
        session.add(self._conflict(winner, loser))

    def _conflict(self, winner: DeliveryTask, loser: DeliveryTask) -> ConflictRecord:
        candidates = sorted([winner, loser], key=lambda task: task.ordering)
        return ConflictRecord(
            logical_key=winner.logical_key,
            target_resource=winner.target_resource,
            candidates=[
                {
                    "task_id": candidate.id,
                    "value": business_values(candidate.row_values),
                    "source_system": candidate.source_system,
                    "occurred_at": candidate.occurred_at.isoformat(),
                    "event_id": candidate.source_event_id,
                }
                for candidate in candidates
            ],
            resolution={"task_id": winner.id, "value": business_values(winner.row_values)},
            winner_task_id=winner.id,
            strategy="last-write-wins",
            created_at=self.clock(),
        )

    async def _task_by_idempotency_key(self, session: AsyncSession, key: str) -> Optional[DeliveryTask]:
        result = await session.execute(select(DeliveryTask).where(DeliveryTask.idempotency_key == key))
        return result.scalar_one_or_none()

    async def _live_tasks_for_key(self, session: AsyncSession, logical_key: str) -> List[DeliveryTask]:
        result = await session.execute(
            select(DeliveryTask).where(
                DeliveryTask.logical_key == logical_key,
                DeliveryTask.status != TaskStatus.DEAD_LETTERED
            )
        )
        return list(result.scalars().all())

    async def _rivals_for_key(self, session: AsyncSession, logical_key: str) -> list:
        """Live tasks for the key plus the newest tombstone left by cleanup"""
        rivals: list = await self._live_tasks_for_key(session, logical_key)
        result = await session.execute(
            select(DeliveryTombstone)
            .where(DeliveryTombstone.logical_key == logical_key)
            .order_by(
                DeliveryTombstone.occurred_at.desc(),
                DeliveryTombstone.source_system.desc(),
                DeliveryTombstone.source_event_id.desc(),
                DeliveryTombstone.idempotency_key.desc()
            )
            .limit(1)
        )
        tombstone = result.scalar_one_or_none()
        if tombstone is not None:
            rivals.append(tombstone)
        return rivals

    async def tombstone_for(self, session: AsyncSession, idempotency_key: str) -> Optional[DeliveryTombstone]:
        result = await session.execute(
            select(DeliveryTombstone).where(DeliveryTombstone.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Claiming and delivery
    # ------------------------------------------------------------------

    async def claim_batch(self, worker_id: str, limit: Optional[int] = None) -> List[DeliveryTask]:
        """
        Claim due pending tasks for ``worker_id``.

        A task is claimed only if its conditional pending -> in_flight update
        succeeds, so no two workers own the same task. Logical keys already
        in flight are skipped. A task whose key already has a newer write is
        closed as superseded instead of being claimed.
        """
        limit = limit or self.batch_size
        now = self.clock()
        claimed: List[DeliveryTask] = []

        async with self.session_factory() as session:
            busy = await session.execute(
                select(DeliveryTask.logical_key).where(
                    DeliveryTask.status == TaskStatus.IN_FLIGHT,
                    DeliveryTask.logical_key.is_not(None)
                ).distinct()
            )
            busy_keys = set(busy.scalars().all())

            due = await session.execute(
                select(DeliveryTask)
                .where(DeliveryTask.status == TaskStatus.PENDING, DeliveryTask.next_attempt_at <= now)
                .order_by(DeliveryTask.next_attempt_at, DeliveryTask.created_at)
                .limit(limit * 2)
            )

            for task in due.scalars().all():
                if len(claimed) >= limit:
                    break
                if task.logical_key and task.logical_key in busy_keys:
                    continue

                newer = None
                if task.logical_key:
                    rivals = await self._rivals_for_key(session, task.logical_key)
                    winner = resolve_last_write_wins(rivals)
                    if winner.id != task.id:
                        newer = winner

                if newer is not None:
                    won = await self._transition(
                        session, task, TaskStatus.PENDING, None,
                        status=TaskStatus.DELIVERED, superseded_by=newer.id,
                        delivered_at=now, updated_at=now
                    )
                    if won:
                        await self._record_conflict(session, newer, task)
                        logger.info(f"Closed late write {task.idempotency_key}, superseded by {newer.idempotency_key}")
                    continue

                won = await self._transition(
                    session, task, TaskStatus.PENDING, None,
                    status=TaskStatus.IN_FLIGHT, claimed_by=worker_id, claimed_at=now, updated_at=now
                )
                if won:
                    claimed.append(task)
                    if task.logical_key:
                        busy_keys.add(task.logical_key)

            await session.commit()

        if claimed:
            logger.debug(f"Worker {worker_id} claimed {len(claimed)} tasks")
        return claimed

    async def _transition(
        self,
        session: AsyncSession,
        task: DeliveryTask,
        expected: TaskStatus,
        owner: Optional[str],
        **values
    ) -> bool:
        """Conditional status update; True when this caller won the row"""
        criteria = [DeliveryTask.id == task.id, DeliveryTask.status == expected]
        if owner is not None:
            criteria.append(DeliveryTask.claimed_by == owner)
        result = await session.execute(
            update(DeliveryTask)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        for name, value in values.items():
            set_committed_value(task, name, value)
        return True

    async def process_batch(self, worker_id: str, tasks: Sequence[DeliveryTask]) -> int:
        """
        Deliver claimed tasks grouped by target resource.

        Returns:
            Number of tasks delivered
        """
        by_target: Dict[str, List[DeliveryTask]] = {}
        for task in tasks:
            by_target.setdefault(task.target_resource, []).append(task)

        delivered = 0
        for target, group in by_target.items():
            rows = [(task.row_key, task.row_values) for task in group]
            try:
                await asyncio.wait_for(
                    self.delivery.append_or_update(target, rows),
                    timeout=self.delivery_timeout
                )
            except PermanentDeliveryError as e:
                logger.error(
                    f"Permanent delivery failure for {target}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                await self._fail(worker_id, group, e.message, permanent=True)
            except TransientDeliveryError as e:
                logger.warning(
                    f"Transient delivery failure for {target}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                retry_after = e.retry_after if isinstance(e, QuotaExceeded) else None
                await self._fail(worker_id, group, e.message, retry_after=retry_after)
            except asyncio.TimeoutError:
                logger.warning(f"Delivery to {target} timed out after {self.delivery_timeout}s")
                self.delivery.invalidate(target)
                await self._fail(worker_id, group, f"Delivery timed out after {self.delivery_timeout}s")
            except Exception as e:
                logger.exception(f"Unexpected delivery failure for {target}")
                await self._fail(worker_id, group, f"{type(e).__name__}: {e}")
            else:
                await self._succeed(worker_id, group)
                delivered += len(group)
        return delivered

    async def _succeed(self, worker_id: str, tasks: Sequence[DeliveryTask]):
        now = self.clock()
        async with self.session_factory() as session:
            for task in tasks:
                await self._transition(
                    session, task, TaskStatus.IN_FLIGHT, worker_id,
                    status=TaskStatus.DELIVERED, delivered_at=now, last_error=None, updated_at=now
                )
            await session.commit()
        self.consecutive_failures = 0

    async def _fail(
        self,
        worker_id: Optional[str],
        tasks: Sequence[DeliveryTask],
        error: str,
        permanent: bool = False,
        retry_after: Optional[float] = None
    ):
        """Record one failed attempt: reschedule with backoff or dead-letter"""
        now = self.clock()
        dead: List[DeliveryTask] = []

        async with self.session_factory() as session:
            for task in tasks:
                attempt = task.attempt + 1
                if permanent or attempt >= self.max_attempts:
                    values = dict(
                        status=TaskStatus.DEAD_LETTERED, attempt=attempt, last_error=error,
                        claimed_by=None, updated_at=now
                    )
                else:
                    delay = compute_backoff(attempt, self.base_delay, self.max_delay, self.jitter, self.rng)
                    if retry_after is not None:
                        delay = max(delay, retry_after)
                    values = dict(
                        status=TaskStatus.PENDING, attempt=attempt, last_error=error,
                        next_attempt_at=now + timedelta(seconds=delay),
                        claimed_by=None, claimed_at=None, updated_at=now
                    )
                won = await self._transition(session, task, TaskStatus.IN_FLIGHT, worker_id, **values)
                if won and values["status"] == TaskStatus.DEAD_LETTERED:
                    dead.append(task)
            await session.commit()

        for task in dead:
            logger.error(f"Dead-lettered {task.idempotency_key} after {task.attempt} attempts: {error}")
            await self._raise_alert(
                "delivery_dead_lettered", "high",
                f"Delivery of {task.idempotency_key} to {task.target_resource} dead-lettered: {error}"
            )

        if not permanent:
            self.consecutive_failures += 1
            if self.consecutive_failures == self.failure_threshold:
                await self._raise_alert(
                    "analytics_store_unavailable", "high",
                    f"Analytics store failing: {self.consecutive_failures} consecutive transient failures ({error})"
                )

    async def _raise_alert(self, alert_type: str, severity: str, message: str):
        if self.alert is None:
            return
        try:
            await self.alert(alert_type, severity, message)
        except Exception as e:
            logger.error(f"Failed to record alert {alert_type}: {e}")

    async def drain(self, worker_id: str = "drain", max_batches: Optional[int] = None) -> int:
        """
        Claim and deliver due tasks until none are left.

        Returns:
            Number of tasks delivered
        """
        delivered = 0
        batches = 0
        while max_batches is None or batches < max_batches:
            tasks = await self.claim_batch(worker_id)
            if not tasks:
                break
            delivered += await self.process_batch(worker_id, tasks)
            batches += 1
        return delivered

    async def requeue_stale(self) -> int:
        """
        Treat in_flight tasks claimed longer than the stale threshold as a
        transient failure of their current attempt.

        Returns:
            Number of tasks requeued or dead-lettered
        """
        cutoff = self.clock() - self.stale_after
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryTask).where(
                    DeliveryTask.status == TaskStatus.IN_FLIGHT,
                    DeliveryTask.claimed_at < cutoff
                )
            )
            stale = list(result.scalars().all())

        by_owner: Dict[Optional[str], List[DeliveryTask]] = {}
        for task in stale:
            by_owner.setdefault(task.claimed_by, []).append(task)
        for owner, group in by_owner.items():
            logger.warning(f"Requeueing {len(group)} stale tasks claimed by {owner}")
            await self._fail(owner, group, "Claim expired while in flight")
        return len(stale)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def dead_letters(self, limit: int = 100) -> List[DeliveryTask]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryTask)
                .where(DeliveryTask.status == TaskStatus.DEAD_LETTERED)
                .order_by(DeliveryTask.updated_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def counts(self) -> Dict[str, int]:
        """Task counts per status (every status present, zero if none)"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryTask.status, func.count()).group_by(DeliveryTask.status)
            )
            counts = {status.value: 0 for status in TaskStatus}
            for status, count in result.all():
                counts[TaskStatus(status).value] = count
            return counts

    async def conflicts_for(self, logical_key: str) -> List[ConflictRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConflictRecord)
                .where(ConflictRecord.logical_key == logical_key)
                .order_by(ConflictRecord.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: str):
        logger.info(f"Delivery worker {worker_id} started")
        while not self._stopping.is_set():
            try:
                if self.delivery.get_remaining_quota() <= 0:
                    await self._idle()
                    continue
                tasks = await self.claim_batch(worker_id)
                if not tasks:
                    await self._idle()
                    continue
                await self.process_batch(worker_id, tasks)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Delivery worker {worker_id} iteration failed")
                await self._idle()
        logger.info(f"Delivery worker {worker_id} stopped")

    async def _idle(self):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    def start(self, worker_count: Optional[int] = None):
        """Start the asyncio worker pool"""
        if self._workers:
            return
        self._stopping.clear()
        count = worker_count or self.worker_count
        self._workers = [
            asyncio.create_task(self._worker(f"worker-{n}"), name=f"delivery-worker-{n}")
            for n in range(count)
        ]
        logger.info(f"Started {count} delivery workers")

    async def stop(self):
        """Stop workers after their current batch"""
        if not self._workers:
            return
        self._stopping.set()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    @property
    def running(self) -> bool:
        return bool(self._workers)
