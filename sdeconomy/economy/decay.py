"""
Demand Decay Scheduler

Products sharing a decay interval are decayed together by one recurring task.
Each pass removes demand per the product's policy and appends one DECAY ledger
entry per product that actually changed, as a single batch under the system
actor.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional

import structlog
from prometheus_client import Counter

from sdeconomy.economy.ledger import SYSTEM_ACTOR_ID, LedgerAction, LedgerEntry, LedgerSink
from sdeconomy.economy.pricing import PricingEngine
from sdeconomy.economy.product import DecayType, ProductRecord
from sdeconomy.economy.store import ProductStore
from sdeconomy.exceptions import InvalidAmountError, StorageError

logger = structlog.get_logger(__name__)

DECAY_UNITS = Counter(
    "sdeconomy_decay_units_total",
    "Units of demand removed by scheduled decay",
)


def requested_decay(record: ProductRecord) -> int:
    """Demand the record's policy asks to remove on one pass."""
    if record.decay_type == DecayType.PERCENTAGE:
        # ceil(demand * pct / 100) in integer arithmetic
        return -(-record.demand * record.decay_amount // 100)
    return record.decay_amount


def group_by_interval(records: List[ProductRecord]) -> Dict[int, List[ProductRecord]]:
    """Group records by decay interval (milliseconds)."""
    groups: Dict[int, List[ProductRecord]] = defaultdict(list)
    for record in records:
        groups[record.decay_interval].append(record)
    return dict(groups)


class DecayScheduler:
    """
    Recurring demand decay, one asyncio task per distinct positive interval.

    The interval grouping is a snapshot; call ``reschedule()`` whenever products
    are added or removed or a decay interval changes.
    """

    def __init__(
        self,
        store: ProductStore,
        engine: PricingEngine,
        ledger: Optional[LedgerSink] = None,
        actor_id: str = SYSTEM_ACTOR_ID,
    ):
        self.store = store
        self.engine = engine
        self.ledger = ledger
        self.actor_id = actor_id
        self._groups: Dict[int, List[ProductRecord]] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    @property
    def intervals(self) -> List[int]:
        """Intervals that currently have a running task."""
        return sorted(self._tasks)

    @property
    def groups(self) -> Dict[int, List[ProductRecord]]:
        return self._groups

    def regroup(self) -> Dict[int, List[ProductRecord]]:
        self._groups = group_by_interval(self.store.values())
        return self._groups

    async def decay(self, records: List[ProductRecord]) -> List[LedgerEntry]:
        """
        Apply one decay pass to ``records``.

        A record whose policy cannot be applied is logged and skipped; the
        rest of the group still decays.

        Returns:
            The DECAY entries produced (one per record whose demand changed)
        """
        entries: List[LedgerEntry] = []
        for record in records:
            try:
                removed = self.engine.decay_demand(record, requested_decay(record))
            except InvalidAmountError as e:
                logger.warning("Decay skipped", alias=record.alias, error=str(e))
                continue
            if removed > 0:
                entries.append(LedgerEntry(
                    actor_id=self.actor_id,
                    action=LedgerAction.DECAY,
                    product_alias=record.alias,
                    amount=removed,
                    money_exchanged=0.0,
                ))
        if not entries:
            return entries

        DECAY_UNITS.inc(sum(e.amount for e in entries))
        logger.info("Demand decayed", products=len(entries))

        if self.ledger is not None:
            try:
                await self.ledger.append_ledger_batch(entries)
            except StorageError as e:
                logger.error("Decay ledger batch failed", products=len(entries), error=str(e))
        return entries

    async def run_interval(self, interval: int) -> List[LedgerEntry]:
        """Decay every product in the ``interval`` group once."""
        return await self.decay(self._groups.get(interval, []))

    async def _loop(self, interval: int) -> None:
        seconds = interval / 1000.0
        while True:
            await asyncio.sleep(seconds)
            try:
                await self.run_interval(interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Decay pass failed", interval_ms=interval, error=str(e), exc_info=True)

    def _spawn(self, interval: int) -> None:
        self._tasks[interval] = asyncio.create_task(
            self._loop(interval), name=f"decay-{interval}"
        )

    def start(self) -> None:
        """Regroup products and start one task per positive interval."""
        if self._tasks:
            logger.warning("Decay scheduler already running")
            return
        for interval in self.regroup():
            if interval > 0:
                self._spawn(interval)
        logger.info("Decay scheduler started", intervals=self.intervals)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def reschedule(self) -> None:
        """
        Regroup products and reconcile the running tasks.

        Tasks for intervals that still have products keep their timers and
        pick up the new group on their next pass. Only emptied intervals are
        cancelled and only new intervals get a fresh task.
        """
        groups = self.regroup()
        wanted = {interval for interval in groups if interval > 0}

        stale = [self._tasks.pop(i) for i in list(self._tasks) if i not in wanted]
        for task in stale:
            task.cancel()
        await asyncio.gather(*stale, return_exceptions=True)

        added = sorted(wanted - set(self._tasks))
        for interval in added:
            self._spawn(interval)
        if stale or added:
            logger.info("Decay tasks rescheduled", intervals=self.intervals, added=added)
