"""
Delivery client: idempotent, batched, quota-aware writes into the analytics
store.

Targets are addressed as ``"<spreadsheet alias>/<sheet name>"``; the alias is
resolved through the configured spreadsheet ids. Column A of every sheet holds
the row key, so an upsert is "update the row whose key matches, else append".
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging

from core.exceptions import PermanentDeliveryError, QuotaExceeded, TransientDeliveryError
from tracking.delivery.rate_limiter import QuotaLimiter
from tracking.delivery.sheets_client import SheetsClient
from tracking.locks import KeyedLocks

logger = logging.getLogger(__name__)

Row = Tuple[str, List[Any]]


class DeliveryResult:
    """Outcome of one append_or_update call"""

    def __init__(self):
        self.updated: int = 0
        self.appended: int = 0

    @property
    def written(self) -> int:
        return self.updated + self.appended

    def __repr__(self) -> str:
        return f"DeliveryResult(updated={self.updated}, appended={self.appended})"


class DeliveryClient:
    """
    Adapter over the rate-limited tabular store.

    Features:
    - Duplicate row keys collapse to the last value
    - Chunks of ``batch_size`` rows, one update and one append call per chunk
    - Per-target key index (row key -> row number) loaded from column A
    - 429 handling: pause the shared limiter and re-send the chunk up to
      ``rate_limit_retries`` times, then raise QuotaExceeded
    """

    def __init__(
        self,
        sheets: SheetsClient,
        spreadsheet_ids: Dict[str, str],
        limiter: QuotaLimiter,
        batch_size: int = 100,
        rate_limit_retries: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.sheets = sheets
        self.spreadsheet_ids = dict(spreadsheet_ids)
        self.limiter = limiter
        self.batch_size = max(1, batch_size)
        self.rate_limit_retries = rate_limit_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._indexes: Dict[str, Dict[str, int]] = {}
        self._target_locks = KeyedLocks()

    def resolve(self, target: str) -> Tuple[str, str]:
        """Split a target into (spreadsheet id, sheet name)"""
        alias, sep, sheet = target.partition("/")
        if not sep or not sheet:
            raise PermanentDeliveryError(
                f"Malformed target resource '{target}'",
                context={"target": target}
            )
        spreadsheet_id = self.spreadsheet_ids.get(alias)
        if not spreadsheet_id:
            raise PermanentDeliveryError(
                f"No spreadsheet configured for '{alias}'",
                context={"target": target, "alias": alias}
            )
        return spreadsheet_id, sheet

    def get_remaining_quota(self) -> int:
        return self.limiter.remaining()

    def invalidate(self, target: Optional[str] = None):
        """Drop cached key indexes so they are re-read from the store"""
        if target is None:
            self._indexes.clear()
        else:
            self._indexes.pop(target, None)

    async def ping(self) -> bool:
        """
        True when the store answers for the first configured spreadsheet.

        Health checks do not take limiter slots; the write quota belongs
        to delivery.
        """
        if not self.spreadsheet_ids:
            return False
        spreadsheet_id = next(iter(self.spreadsheet_ids.values()))
        await self.sheets.get_spreadsheet(spreadsheet_id)
        return True

    async def _call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run one store call under the limiter, re-sending on 429"""
        attempt = 0
        while True:
            await self.limiter.acquire()
            try:
                return await operation()
            except QuotaExceeded as e:
                attempt += 1
                if attempt > self.rate_limit_retries:
                    logger.error(
                        f"Quota still exceeded after {self.rate_limit_retries} retries",
                        extra={"error_context": e.to_dict()}
                    )
                    raise
                delay = e.retry_after
                if delay is None:
                    delay = min(self.retry_max_delay, self.retry_base_delay * (2 ** (attempt - 1)))
                logger.warning(
                    f"Rate limited by analytics store, retry {attempt}/{self.rate_limit_retries} in {delay}s"
                )
                self.limiter.pause(delay)
                await self._sleep(delay)

    async def _index_for(self, target: str, spreadsheet_id: str, sheet: str) -> Dict[str, int]:
        index = self._indexes.get(target)
        if index is None:
            column = await self._call(lambda: self.sheets.read_column(spreadsheet_id, sheet))
            index = {}
            for position, key in enumerate(column, start=1):
                if key:
                    index[key] = position
            self._indexes[target] = index
            logger.debug(f"Loaded {len(index)} row keys for {target}")
        return index

    async def append_or_update(self, target: str, rows: Sequence[Row]) -> DeliveryResult:
        """
        Idempotently write rows keyed by their row key.

        Raises:
            TransientDeliveryError: Retryable failure (QuotaExceeded after
                exhausting rate-limit retries)
            PermanentDeliveryError: Request rejected by the store
        """
        result = DeliveryResult()
        if not rows:
            return result

        spreadsheet_id, sheet = self.resolve(target)

        collapsed: Dict[str, List[Any]] = {}
        for row_key, values in rows:
            collapsed.pop(row_key, None)
            collapsed[row_key] = list(values)
        items = list(collapsed.items())

        async with self._target_locks.hold(target):
            index = await self._index_for(target, spreadsheet_id, sheet)
            for start in range(0, len(items), self.batch_size):
                chunk = items[start:start + self.batch_size]
                await self._write_chunk(target, spreadsheet_id, sheet, index, chunk, result)

        logger.info(f"Delivered {result.written} rows to {target} ({result.updated} updated, {result.appended} appended)")
        return result

    async def _write_chunk(
        self,
        target: str,
        spreadsheet_id: str,
        sheet: str,
        index: Dict[str, int],
        chunk: List[Tuple[str, List[Any]]],
        result: DeliveryResult
    ):
        updates = {index[key]: values for key, values in chunk if key in index}
        new_rows = [(key, values) for key, values in chunk if key not in index]

        if updates:
            await self._call(lambda: self.sheets.batch_update(spreadsheet_id, updates, sheet))
            result.updated += len(updates)

        if new_rows:
            try:
                row_numbers = await self._call(
                    lambda: self.sheets.append(spreadsheet_id, sheet, [values for _, values in new_rows])
                )
            except (TransientDeliveryError, asyncio.CancelledError):
                # The append may have landed; re-read keys before retrying
                self.invalidate(target)
                raise
            if len(row_numbers) == len(new_rows):
                for (key, _), row_number in zip(new_rows, row_numbers):
                    index[key] = row_number
            else:
                # Unknown placement; re-read the key column on next use
                self.invalidate(target)
            result.appended += len(new_rows)
