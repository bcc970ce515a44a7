"""
Economy Service

Top-level owner of the product store, pricing engine, decay scheduler and
persistence gateway. Host integrations (commands, GUIs) call the facade
methods here and receive TradeResult values instead of exceptions for the
expected outcomes: unknown product, rejected amount, storage failure.

Lifecycle:
    start()  migrate -> load -> populate -> decay tasks -> snapshot loop
    stop()   cancel tasks -> final snapshot -> dispose owned engine
"""

import asyncio
import time
from enum import Enum
from typing import Iterable, List, Optional

import structlog
from prometheus_client import Histogram
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from sdeconomy.config.settings import Settings
from sdeconomy.database.connection import close_database, init_database
from sdeconomy.economy.decay import DecayScheduler
from sdeconomy.economy.ledger import LedgerAction, LedgerEntry
from sdeconomy.economy.pricing import PricingEngine
from sdeconomy.economy.product import DecayType, ProductDefaults, ProductRecord, normalize_alias
from sdeconomy.economy.store import ProductStore
from sdeconomy.exceptions import InvalidAmountError, StorageError
from sdeconomy.persistence.gateway import PersistenceGateway
from sdeconomy.persistence.migrations import (
    SchemaMigrator,
    SqlMigrationContext,
    build_migration_chain,
)

logger = structlog.get_logger(__name__)

SNAPSHOT_SECONDS = Histogram(
    "sdeconomy_snapshot_seconds",
    "Time spent writing a full product snapshot",
)

PRICE_NOT_SET = "price not set yet"
OPERATION_FAILED = "operation failed"


# =============================================================================
# RESULT MODELS
# =============================================================================

class TradeStatus(str, Enum):
    """Outcome of a facade operation"""
    OK = "ok"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    FAILED = "failed"


class TradeResult(BaseModel):
    """Result of a quote, trade or admin change"""
    alias: str
    status: TradeStatus
    action: Optional[LedgerAction] = None
    amount: float = 0
    total: float = 0.0
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == TradeStatus.OK


class LedgerPage(BaseModel):
    """One page of an actor's ledger"""
    actor_id: str
    page: int
    status: TradeStatus
    entries: List[LedgerEntry] = []
    message: Optional[str] = None


class ProductSnapshot(BaseModel):
    """Read-only view of a product's public fields"""
    alias: str
    item_type: str
    variant_tag: int
    mod_factor: float
    base_price: float
    supply: int
    demand: int
    unit_price: float
    decay_amount: int
    decay_interval: int
    decay_type: DecayType


# =============================================================================
# SERVICE
# =============================================================================

class EconomyService:
    """
    Supply/demand economy facade.

    Args:
        engine: Async engine for durable storage
        defaults: Field values for products created at runtime
        snapshot_interval: Seconds between bulk snapshots
        operation_timeout: Seconds allowed per storage operation
        populate_database: Create default products for host item types on start
        max_items_per_buy: Unit cap per buy, ``None`` for no cap
        owns_engine: Dispose of ``engine`` on stop
    """

    def __init__(
        self,
        engine: AsyncEngine,
        defaults: Optional[ProductDefaults] = None,
        snapshot_interval: float = 300.0,
        operation_timeout: float = 10.0,
        populate_database: bool = False,
        max_items_per_buy: Optional[int] = None,
        owns_engine: bool = False,
    ):
        self.engine = engine
        self.defaults = defaults or ProductDefaults()
        self.snapshot_interval = snapshot_interval
        self.populate_database = populate_database
        self.max_items_per_buy = max_items_per_buy
        self.owns_engine = owns_engine

        self.store = ProductStore()
        self.gateway = PersistenceGateway(engine, operation_timeout=operation_timeout)
        self.pricing = PricingEngine(ledger=self.gateway)
        self.decay = DecayScheduler(self.store, self.pricing, ledger=self.gateway)
        self.migrator = SchemaMigrator(
            SqlMigrationContext(engine), build_migration_chain(self.defaults)
        )

        self._snapshot_task: Optional[asyncio.Task] = None
        self._persist_lock = asyncio.Lock()
        self._running = False

    @classmethod
    async def from_settings(cls, settings: Settings) -> "EconomyService":
        """Create the engine from settings and build a service that owns it."""
        engine = await init_database(settings.database)
        economy = settings.economy
        return cls(
            engine,
            defaults=ProductDefaults(
                mod_factor=economy.default_mod_factor,
                base_price=economy.default_base_price,
                decay_amount=economy.default_decay_amount,
                decay_interval=economy.default_decay_interval,
                decay_type=economy.default_decay_type,
            ),
            snapshot_interval=economy.snapshot_interval,
            operation_timeout=settings.database.operation_timeout,
            populate_database=economy.populate_database,
            max_items_per_buy=economy.max_items_per_buy if economy.use_max_items_per_buy else None,
            owns_engine=True,
        )

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, item_types: Iterable[str] = ()) -> None:
        """
        Migrate, load and start background tasks.

        Raises:
            MigrationError: Schema could not be brought current
            StorageError: Initial product load or populate write failed
        """
        if self._running:
            logger.warning("Economy service already running")
            return

        version = await self.migrator.run()

        loaded = 0
        for record in await self.gateway.load_all():
            if self.store.put_if_absent(record):
                loaded += 1

        created = []
        if self.populate_database:
            for item_type in item_types:
                record = self.defaults.create(item_type.lower(), item_type)
                if self.store.put_if_absent(record):
                    created.append(record)
        if created:
            # Ledger entries need the product row, so populated products are written now
            await self.gateway.save_all(created)
        populated = len(created)

        self.decay.start()
        self._snapshot_task = asyncio.create_task(self._snapshot_loop(), name="snapshot")
        self._running = True
        logger.info(
            "Economy service started",
            schema_version=version,
            loaded=loaded,
            populated=populated,
            decay_intervals=self.decay.intervals,
        )

    async def stop(self) -> None:
        """Stop background tasks and write a final snapshot."""
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            await asyncio.gather(self._snapshot_task, return_exceptions=True)
            self._snapshot_task = None
        await self.decay.stop()

        if self._running:
            await self.snapshot()
        self._running = False

        if self.owns_engine:
            await close_database(self.engine)
        logger.info("Economy service stopped")

    async def snapshot(self) -> int:
        """
        Save every product; failures are logged and the snapshot abandoned.

        The product list is taken under the persist lock so a product removed
        while a snapshot is pending is never written back.
        """
        start = time.perf_counter()
        try:
            async with self._persist_lock:
                count = await self.gateway.save_all(self.store.values())
        except StorageError as e:
            logger.error("Snapshot abandoned", error=str(e))
            return 0
        SNAPSHOT_SECONDS.observe(time.perf_counter() - start)
        return count

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.snapshot_interval)
            try:
                await self.snapshot()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Snapshot pass failed", error=str(e), exc_info=True)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_product(self, alias: str) -> Optional[ProductRecord]:
        return self.store.get(alias)

    def product_for_item(self, item_type: str, variant_tag: int = 0) -> Optional[ProductRecord]:
        return self.store.find_by_item(item_type, variant_tag)

    def product_info(self, alias: str) -> Optional[ProductSnapshot]:
        record = self.store.get(alias)
        if record is None:
            return None
        with record.lock:
            return ProductSnapshot(unit_price=record.unit_price, **record.to_row())

    # -------------------------------------------------------------------------
    # Quotes and trades
    # -------------------------------------------------------------------------

    def quote_buy(self, alias: str, amount: int) -> TradeResult:
        return self._quote(alias, amount, LedgerAction.BUY)

    def quote_sell(self, alias: str, amount: int) -> TradeResult:
        return self._quote(alias, amount, LedgerAction.SELL)

    def _quote(self, alias: str, amount: int, action: LedgerAction) -> TradeResult:
        record = self.store.get(alias)
        if record is None:
            return _not_found(alias, action, amount)
        try:
            if action == LedgerAction.BUY:
                total = self.pricing.quote_buy(record, amount)
            else:
                total = self.pricing.quote_sell(record, amount)
        except InvalidAmountError as e:
            return _rejected(record.alias, action, amount, e)
        return TradeResult(alias=record.alias, status=TradeStatus.OK, action=action, amount=amount, total=total)

    async def execute_buy(self, alias: str, amount: int, actor_id: str) -> TradeResult:
        """Buy from the market; ``total`` is the money to take from the actor."""
        record = self.store.get(alias)
        if record is None:
            return _not_found(alias, LedgerAction.BUY, amount)
        if self.max_items_per_buy is not None and isinstance(amount, int) and amount > self.max_items_per_buy:
            return _rejected(
                record.alias,
                LedgerAction.BUY,
                amount,
                InvalidAmountError(amount, f"at most {self.max_items_per_buy} units per buy"),
            )
        try:
            total = await self.pricing.execute_buy(record, amount, actor_id)
        except InvalidAmountError as e:
            return _rejected(record.alias, LedgerAction.BUY, amount, e)
        return TradeResult(
            alias=record.alias, status=TradeStatus.OK, action=LedgerAction.BUY, amount=amount, total=total
        )

    async def execute_sell(self, alias: str, amount: int, actor_id: str) -> TradeResult:
        """Sell to the market; ``total`` is the money to give the actor."""
        record = self.store.get(alias)
        if record is None:
            return _not_found(alias, LedgerAction.SELL, amount)
        try:
            total = await self.pricing.execute_sell(record, amount, actor_id)
        except InvalidAmountError as e:
            return _rejected(record.alias, LedgerAction.SELL, amount, e)
        return TradeResult(
            alias=record.alias, status=TradeStatus.OK, action=LedgerAction.SELL, amount=amount, total=total
        )

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    async def set_price(
        self,
        alias: str,
        price: float,
        actor_id: str,
        item_type: Optional[str] = None,
        variant_tag: int = 0,
    ) -> TradeResult:
        """Set a product's base price, creating the product on first use."""
        created: List[str] = []

        def factory(key: str) -> ProductRecord:
            created.append(key)
            return self.defaults.create(key, item_type, variant_tag)

        record = self.store.get_or_create(alias, factory)
        if item_type is not None and not created:
            with record.lock:
                record.item_type = item_type.upper()
                record.variant_tag = variant_tag

        if created:
            # The product row must exist before its first ledger entry
            await self._save_quietly(record)
            await self.decay.reschedule()

        await self.pricing.set_price(record, price, actor_id)
        await self._save_quietly(record)
        return TradeResult(
            alias=record.alias, status=TradeStatus.OK, action=LedgerAction.SET_PRICE, amount=price
        )

    async def set_mod_factor(self, alias: str, mod_factor: float, actor_id: str) -> TradeResult:
        record = self.store.get(alias)
        if record is None:
            return _not_found(alias, LedgerAction.SET_MOD_FACTOR, mod_factor)
        await self.pricing.set_mod_factor(record, mod_factor, actor_id)
        await self._save_quietly(record)
        return TradeResult(
            alias=record.alias, status=TradeStatus.OK, action=LedgerAction.SET_MOD_FACTOR, amount=mod_factor
        )

    async def set_decay(
        self,
        alias: str,
        amount: int,
        interval: int,
        decay_type: DecayType = DecayType.CONSTANT,
    ) -> TradeResult:
        """Change a product's decay policy and regroup the decay tasks."""
        record = self.store.get(alias)
        if record is None:
            return _not_found(alias, None, amount)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            return _rejected(record.alias, None, amount, InvalidAmountError(amount, "decay amount must be >= 0"))
        with record.lock:
            interval_changed = record.decay_interval != interval
            record.decay_amount = amount
            record.decay_interval = interval
            record.decay_type = DecayType(decay_type)
        if interval_changed:
            await self.decay.reschedule()
        await self._save_quietly(record)
        return TradeResult(alias=record.alias, status=TradeStatus.OK, amount=amount)

    async def remove_product(self, alias: str) -> TradeResult:
        """Remove a product from memory and durable storage, ledger rows included."""
        async with self._persist_lock:
            record = self.store.remove(alias)
            if record is None:
                return _not_found(alias, None, 0)
            try:
                await self.gateway.delete_product(record.alias)
            except StorageError:
                self.store.put_if_absent(record)
                return TradeResult(alias=record.alias, status=TradeStatus.FAILED, message=OPERATION_FAILED)
        await self.decay.reschedule()
        return TradeResult(alias=record.alias, status=TradeStatus.OK)

    async def transactions(self, actor_id: str, page: int = 0) -> LedgerPage:
        """One page (zero-based) of an actor's ledger, most recent first."""
        try:
            entries = await self.gateway.query_ledger(actor_id, page)
        except StorageError:
            return LedgerPage(actor_id=actor_id, page=page, status=TradeStatus.FAILED, message=OPERATION_FAILED)
        return LedgerPage(actor_id=actor_id, page=page, status=TradeStatus.OK, entries=entries)

    async def _save_quietly(self, record: ProductRecord) -> None:
        try:
            async with self._persist_lock:
                if self.store.get(record.alias) is not record:
                    return
                await self.gateway.save_one(record)
        except StorageError as e:
            logger.warning("Product kept in memory until next snapshot", alias=record.alias, error=str(e))


def _not_found(alias: str, action: Optional[LedgerAction], amount) -> TradeResult:
    return TradeResult(
        alias=normalize_alias(alias),
        status=TradeStatus.NOT_FOUND,
        action=action,
        amount=amount,
        message=PRICE_NOT_SET,
    )


def _rejected(alias: str, action: Optional[LedgerAction], amount, error: InvalidAmountError) -> TradeResult:
    logger.info("Operation rejected", alias=alias, amount=amount, reason=str(error))
    return TradeResult(alias=alias, status=TradeStatus.REJECTED, action=action, amount=amount, message=str(error))
