"""
Persistence Gateway

Translates between in-memory ProductRecords / LedgerEntries and durable
storage. Every operation runs under a bounded timeout; SQLAlchemy errors and
timeouts surface as StorageError. The gateway never touches record locks
while waiting on storage: records are copied to row dicts before any await.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

import structlog
from prometheus_client import Counter
from sqlalchemy import delete, func, insert, select
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from sdeconomy.database.models import Actor, LedgerRow, ProductRow
from sdeconomy.economy.ledger import LEDGER_PAGE_SIZE, LedgerAction, LedgerEntry
from sdeconomy.economy.product import ProductRecord, normalize_alias
from sdeconomy.exceptions import StorageError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

STORAGE_ERRORS = Counter(
    "sdeconomy_storage_errors_total",
    "Durable storage operations that failed or timed out",
    ["operation"],
)

UPSERT_CHUNK_SIZE = 500

_UPSERT_COLUMNS = [
    "item_type",
    "variant_tag",
    "mod_factor",
    "base_price",
    "supply",
    "demand",
    "decay_amount",
    "decay_interval",
    "decay_type",
]


def _snapshot_row(record: ProductRecord) -> dict:
    with record.lock:
        return record.to_row()


class PersistenceGateway:
    """
    Durable storage for products and the ledger.

    Args:
        engine: Async SQLAlchemy engine, already migrated
        operation_timeout: Seconds allowed for each operation
    """

    def __init__(self, engine: AsyncEngine, operation_timeout: float = 10.0):
        self.engine = engine
        self.operation_timeout = operation_timeout
        self._actor_cache: Dict[str, int] = {}
        self._last_timestamp: Optional[datetime] = None

    async def _guard(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (SQLAlchemyError, asyncio.TimeoutError, OSError) as e:
            STORAGE_ERRORS.labels(operation=operation).inc()
            logger.error("Storage operation failed", operation=operation, error=str(e))
            raise StorageError(operation, e) from e

    def _unsupported(self, operation: str) -> StorageError:
        STORAGE_ERRORS.labels(operation=operation).inc()
        dialect = self.engine.dialect.name
        logger.error("Storage dialect not supported", operation=operation, dialect=dialect)
        return StorageError(operation, NotImplementedError(f"dialect {dialect!r} is not supported"))

    def _upsert(self, rows: List[dict]):
        """Insert-or-update product rows keyed by alias."""
        dialect = self.engine.dialect.name
        if dialect == "mysql":
            stmt = mysql.insert(ProductRow).values(rows)
            return stmt.on_duplicate_key_update(
                {column: stmt.inserted[column] for column in _UPSERT_COLUMNS}
            )
        if dialect == "postgresql":
            stmt = postgresql.insert(ProductRow).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite.insert(ProductRow).values(rows)
        else:
            raise self._unsupported("upsert")
        return stmt.on_conflict_do_update(
            index_elements=[ProductRow.alias],
            set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
        )

    def _insert_actors(self, external_ids: List[str]):
        """Insert actors, leaving any that already exist untouched."""
        values = [{"external_id": ext} for ext in external_ids]
        dialect = self.engine.dialect.name
        if dialect == "mysql":
            stmt = mysql.insert(Actor).values(values)
            return stmt.on_duplicate_key_update(external_id=stmt.inserted.external_id)
        if dialect == "postgresql":
            stmt = postgresql.insert(Actor).values(values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(Actor).values(values)
        else:
            raise self._unsupported("insert_actors")
        return stmt.on_conflict_do_nothing(index_elements=[Actor.external_id])

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def load_all(self) -> List[ProductRecord]:
        """Read every durable product into new ProductRecords."""
        async def _load() -> List[ProductRecord]:
            async with self.engine.connect() as conn:
                result = await conn.execute(select(ProductRow.__table__).order_by(ProductRow.id))
                return [ProductRecord.from_row(row) for row in result.mappings()]

        records = await self._guard("load_all", _load())
        logger.info("Products loaded", count=len(records))
        return records

    async def save_all(self, records: Iterable[ProductRecord]) -> int:
        """
        Upsert every record in one transaction.

        Returns:
            Number of records written
        """
        rows = [_snapshot_row(record) for record in records]
        if not rows:
            return 0

        async def _save() -> None:
            async with self.engine.begin() as conn:
                for i in range(0, len(rows), UPSERT_CHUNK_SIZE):
                    await conn.execute(self._upsert(rows[i:i + UPSERT_CHUNK_SIZE]))

        await self._guard("save_all", _save())
        logger.info("Products saved", count=len(rows))
        return len(rows)

    async def save_one(self, record: ProductRecord) -> None:
        """Upsert a single record."""
        row = _snapshot_row(record)

        async def _save() -> None:
            async with self.engine.begin() as conn:
                await conn.execute(self._upsert([row]))

        await self._guard("save_one", _save())
        logger.debug("Product saved", alias=row["alias"])

    async def delete_product(self, alias: str) -> bool:
        """
        Delete a product; its ledger rows are removed by the cascading FK.

        Returns:
            True if a row was deleted
        """
        key = normalize_alias(alias)

        async def _delete() -> int:
            async with self.engine.begin() as conn:
                result = await conn.execute(delete(ProductRow).where(ProductRow.alias == key))
                return result.rowcount

        deleted = await self._guard("delete_product", _delete())
        logger.info("Product deleted", alias=key, deleted=bool(deleted))
        return bool(deleted)

    # =========================================================================
    # LEDGER
    # =========================================================================

    async def _resolve_actors(self, conn: AsyncConnection, external_ids: Iterable[str]) -> Dict[str, int]:
        """
        Map external actor ids to internal ids, creating missing actors.

        Another writer may create the same actor concurrently, so missing
        actors are inserted with a conflict no-op and then selected again.
        """
        wanted = set(external_ids)
        resolved = {ext: self._actor_cache[ext] for ext in wanted if ext in self._actor_cache}
        missing = wanted - resolved.keys()
        if missing:
            lookup = select(Actor.external_id, Actor.id).where(Actor.external_id.in_(missing))
            found = {row.external_id: row.id for row in await conn.execute(lookup)}
            absent = sorted(missing - found.keys())
            if absent:
                await conn.execute(self._insert_actors(absent))
                found = {row.external_id: row.id for row in await conn.execute(lookup)}
            resolved.update(found)
        return resolved

    async def _product_ids(self, conn: AsyncConnection, aliases: Iterable[str]) -> Dict[str, int]:
        result = await conn.execute(
            select(ProductRow.alias, ProductRow.id).where(ProductRow.alias.in_(set(aliases)))
        )
        return {row.alias: row.id for row in result}

    async def append_ledger(self, entry: LedgerEntry) -> None:
        await self.append_ledger_batch([entry])

    async def append_ledger_batch(self, entries: List[LedgerEntry]) -> int:
        """
        Append entries in one transaction, all sharing one timestamp.

        Entries whose product has never been saved are skipped and logged.

        Returns:
            Number of rows written
        """
        if not entries:
            return 0
        timestamp = datetime.now(timezone.utc)
        # Never hand out a timestamp older than the previous append
        if self._last_timestamp is not None and timestamp < self._last_timestamp:
            timestamp = self._last_timestamp
        self._last_timestamp = timestamp

        async def _append() -> tuple:
            async with self.engine.begin() as conn:
                actors = await self._resolve_actors(conn, (e.actor_id for e in entries))
                products = await self._product_ids(conn, (e.product_alias for e in entries))
                rows = []
                skipped = []
                for entry in entries:
                    product_id = products.get(entry.product_alias)
                    if product_id is None:
                        skipped.append(entry.product_alias)
                        continue
                    rows.append({
                        "actor_id": actors[entry.actor_id],
                        "action": int(entry.action),
                        "product_id": product_id,
                        "amount": float(entry.amount),
                        "money_exchanged": float(entry.money_exchanged),
                        "created_at": timestamp,
                    })
                if rows:
                    await conn.execute(insert(LedgerRow), rows)
                return actors, rows, skipped

        actors, rows, skipped = await self._guard("append_ledger", _append())
        # Only cache ids whose insert committed
        self._actor_cache.update(actors)
        if skipped:
            logger.warning("Ledger entries skipped for unsaved products", aliases=sorted(set(skipped)))
        return len(rows)

    async def query_ledger(self, actor_id: str, page: int = 0) -> List[LedgerEntry]:
        """
        Up to LEDGER_PAGE_SIZE entries for ``actor_id``, most recent first.

        Pages are zero-based; a negative page reads as page 0.
        """
        offset = max(page, 0) * LEDGER_PAGE_SIZE

        async def _query() -> List[Any]:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(
                        Actor.external_id,
                        LedgerRow.action,
                        ProductRow.alias,
                        LedgerRow.amount,
                        LedgerRow.money_exchanged,
                        LedgerRow.created_at,
                    )
                    .join(Actor, Actor.id == LedgerRow.actor_id)
                    .join(ProductRow, ProductRow.id == LedgerRow.product_id)
                    .where(Actor.external_id == actor_id)
                    .order_by(LedgerRow.created_at.desc(), LedgerRow.id.desc())
                    .limit(LEDGER_PAGE_SIZE)
                    .offset(offset)
                )
                return result.all()

        rows = await self._guard("query_ledger", _query())
        return [
            LedgerEntry(
                actor_id=row.external_id,
                action=LedgerAction(row.action),
                product_alias=row.alias,
                amount=row.amount,
                money_exchanged=row.money_exchanged,
                timestamp=row.created_at,
            )
            for row in rows
        ]

    async def count_ledger(self, actor_id: Optional[str] = None) -> int:
        """Number of ledger rows, optionally for one actor."""
        async def _count() -> int:
            async with self.engine.connect() as conn:
                stmt = select(func.count()).select_from(LedgerRow)
                if actor_id is not None:
                    stmt = stmt.join(Actor, Actor.id == LedgerRow.actor_id).where(
                        Actor.external_id == actor_id
                    )
                return (await conn.execute(stmt)).scalar_one()

        return await self._guard("count_ledger", _count())
