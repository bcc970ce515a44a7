"""
Pricing Engine

Supply/demand price formation. A trade of ``amount`` units is priced one unit
at a time: each unit mutates supply and demand first and is then priced at

    unit_price = mod_factor * (demand / supply) + base_price

so the total is an ordered sum, not ``amount * unit_price``.

Quotes work on local copies and never touch the record. A sell quote only
raises the simulated supply, so it prices at the current demand and can
exceed what the executed sell later pays. Executions mutate the
record under its lock, release the lock, then append a ledger entry. Trades are
memory-first: a ledger failure is logged and does not undo the trade.
"""

from typing import Optional, Tuple

import structlog
from prometheus_client import Counter

from sdeconomy.economy.ledger import LedgerAction, LedgerEntry, LedgerSink
from sdeconomy.economy.product import (
    ProductRecord,
    floored_decrement,
    saturating_increment,
)
from sdeconomy.exceptions import InvalidAmountError, StorageError

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

TRADES_EXECUTED = Counter(
    "sdeconomy_trades_total",
    "Economic actions applied to products",
    ["action"],
)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)


def _sell_units(
    mod_factor: float, base_price: float, supply: int, demand: int, amount: int
) -> Tuple[float, int, int]:
    """Executed sell loop. Returns (total, supply, demand)."""
    total = 0.0
    for _ in range(amount):
        supply = saturating_increment(supply)
        demand = floored_decrement(demand)
        total += mod_factor * (demand / supply) + base_price
    return total, supply, demand


def _quote_sell_units(
    mod_factor: float, base_price: float, supply: int, demand: int, amount: int
) -> float:
    """Sell preview: only supply moves; demand is priced as it stands now."""
    total = 0.0
    for _ in range(amount):
        supply = saturating_increment(supply)
        total += mod_factor * (demand / supply) + base_price
    return total


def _buy_units(
    mod_factor: float, base_price: float, supply: int, demand: int, amount: int
) -> Tuple[float, int, int]:
    """Buy loop shared by quote and execute. Returns (total, supply, demand)."""
    total = 0.0
    for _ in range(amount):
        supply = floored_decrement(supply)
        demand = saturating_increment(demand)
        total += mod_factor * (demand / supply) + base_price
    return total, supply, demand


class PricingEngine:
    """
    Quote and execute trades against ProductRecords.

    Args:
        ledger: Sink for ledger entries; ``None`` disables ledger writes
    """

    def __init__(self, ledger: Optional[LedgerSink] = None):
        self.ledger = ledger

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    @staticmethod
    def quote_sell(record: ProductRecord, amount: int) -> float:
        """Money a seller would receive for ``amount`` units right now."""
        _check_amount(amount)
        with record.lock:
            state = (record.mod_factor, record.base_price, record.supply, record.demand)
        return _quote_sell_units(*state, amount)

    @staticmethod
    def quote_buy(record: ProductRecord, amount: int) -> float:
        """Money a buyer would pay for ``amount`` units right now."""
        _check_amount(amount)
        with record.lock:
            state = (record.mod_factor, record.base_price, record.supply, record.demand)
        total, _, _ = _buy_units(*state, amount)
        return total

    # -------------------------------------------------------------------------
    # In-memory mutations
    # -------------------------------------------------------------------------

    @staticmethod
    def sell(record: ProductRecord, amount: int) -> float:
        """Apply a sell to the record without writing a ledger entry."""
        _check_amount(amount)
        with record.lock:
            total, record.supply, record.demand = _sell_units(
                record.mod_factor, record.base_price, record.supply, record.demand, amount
            )
        return total

    @staticmethod
    def buy(record: ProductRecord, amount: int) -> float:
        """Apply a buy to the record without writing a ledger entry."""
        _check_amount(amount)
        with record.lock:
            total, record.supply, record.demand = _buy_units(
                record.mod_factor, record.base_price, record.supply, record.demand, amount
            )
        return total

    @staticmethod
    def decay_demand(record: ProductRecord, requested_amount: int) -> int:
        """
        Remove up to ``requested_amount`` demand, never going below 1.

        Returns:
            The amount actually removed (0 when demand is already 1)
        """
        if isinstance(requested_amount, bool) or not isinstance(requested_amount, int) or requested_amount < 0:
            raise InvalidAmountError(requested_amount, "decay amount must be a non-negative integer")
        with record.lock:
            removed = min(requested_amount, record.demand - 1)
            record.demand -= removed
        return removed

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    async def execute_sell(self, record: ProductRecord, amount: int, actor_id: str) -> float:
        """Sell ``amount`` units and record a SELL ledger entry."""
        total = self.sell(record, amount)
        TRADES_EXECUTED.labels(action=LedgerAction.SELL.name).inc()
        logger.info("Executed sell", alias=record.alias, amount=amount, total=total, actor=actor_id)
        await self._record(LedgerEntry(
            actor_id=actor_id,
            action=LedgerAction.SELL,
            product_alias=record.alias,
            amount=amount,
            money_exchanged=total,
        ))
        return total

    async def execute_buy(self, record: ProductRecord, amount: int, actor_id: str) -> float:
        """Buy ``amount`` units and record a BUY ledger entry."""
        total = self.buy(record, amount)
        TRADES_EXECUTED.labels(action=LedgerAction.BUY.name).inc()
        logger.info("Executed buy", alias=record.alias, amount=amount, total=total, actor=actor_id)
        await self._record(LedgerEntry(
            actor_id=actor_id,
            action=LedgerAction.BUY,
            product_alias=record.alias,
            amount=amount,
            money_exchanged=total,
        ))
        return total

    async def set_price(self, record: ProductRecord, value: float, actor_id: str) -> None:
        with record.lock:
            record.base_price = float(value)
        TRADES_EXECUTED.labels(action=LedgerAction.SET_PRICE.name).inc()
        logger.info("Price set", alias=record.alias, price=value, actor=actor_id)
        await self._record(LedgerEntry(
            actor_id=actor_id,
            action=LedgerAction.SET_PRICE,
            product_alias=record.alias,
            amount=value,
        ))

    async def set_mod_factor(self, record: ProductRecord, value: float, actor_id: str) -> None:
        with record.lock:
            record.mod_factor = float(value)
        TRADES_EXECUTED.labels(action=LedgerAction.SET_MOD_FACTOR.name).inc()
        logger.info("Mod factor set", alias=record.alias, mod_factor=value, actor=actor_id)
        await self._record(LedgerEntry(
            actor_id=actor_id,
            action=LedgerAction.SET_MOD_FACTOR,
            product_alias=record.alias,
            amount=value,
        ))

    async def _record(self, entry: LedgerEntry) -> None:
        if self.ledger is None:
            return
        try:
            await self.ledger.append_ledger(entry)
        except StorageError as e:
            logger.error(
                "Ledger append failed, trade kept in memory",
                alias=entry.product_alias,
                action=entry.action.name,
                error=str(e),
            )
