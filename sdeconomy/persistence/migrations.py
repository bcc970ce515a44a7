"""
Schema Migrations

A table-driven chain of version-gated steps. Every step

- runs only when the stored version equals its ``from_version``,
- inspects durable state first and applies its change only if needed,
- writes its ``to_version`` marker in the same transaction as its change.

The migrator runs at every startup; once storage is current every step is
skipped on the version check alone. Any failure raises MigrationError and the
service must not start.

Chain (absent marker reads as -1):

    -1 -> 1  schema_version marker table
     1 -> 2  products in the current shape (legacy products rebuilt)
     2 -> 3  actors table with the system actor
     3 -> 4  ledger in the current shape (legacy ledger rebuilt, cascade FK)
     4 -> 5  lower-case aliases, ledger timestamp index
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
)

import structlog
from sqlalchemy import delete, inspect, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from sdeconomy.database.models import Actor, LedgerRow, ProductRow, SchemaConstant
from sdeconomy.economy.ledger import SYSTEM_ACTOR_ID
from sdeconomy.economy.product import ProductDefaults, normalize_alias
from sdeconomy.exceptions import MigrationError, MigrationOrderError
from sdeconomy.persistence.legacy import (
    LEDGER_MARKER_COLUMN,
    PRODUCTS_MARKER_COLUMN,
    legacy_ledger,
    legacy_products,
    upgrade_ledger_row,
    upgrade_product_row,
)

logger = structlog.get_logger(__name__)

CURRENT_SCHEMA_VERSION = 5
VERSION_KEY = "sql_version"
NO_VERSION = -1

INSERT_CHUNK_SIZE = 1000


# =============================================================================
# MIGRATION FRAMEWORK
# =============================================================================

class MigrationContext(Protocol):
    """Storage access the migrator needs; steps receive the transaction handle."""

    async def read_version(self) -> int:
        ...

    async def write_version(self, handle: Any, version: int) -> None:
        ...

    def transaction(self) -> AsyncContextManager[Any]:
        ...


@dataclass(frozen=True)
class MigrationStep:
    """One ordered schema transformation"""
    from_version: int
    to_version: int
    name: str
    is_applied: Callable[[Any], Awaitable[bool]]
    apply: Callable[[Any], Awaitable[None]]


def validate_chain(steps: Sequence[MigrationStep]) -> None:
    """Steps must be non-empty, strictly increasing and contiguous."""
    if not steps:
        raise MigrationOrderError("migration chain is empty")
    previous: Optional[MigrationStep] = None
    for step in steps:
        if step.to_version <= step.from_version:
            raise MigrationOrderError(
                f"step {step.name} does not advance ({step.from_version} -> {step.to_version})"
            )
        if previous is not None and step.from_version != previous.to_version:
            raise MigrationOrderError(
                f"step {step.name} starts at {step.from_version}, "
                f"previous step {previous.name} ends at {previous.to_version}"
            )
        previous = step


class SchemaMigrator:
    """
    Bring durable storage to the chain's final version.

    Example:
        migrator = SchemaMigrator(SqlMigrationContext(engine), build_migration_chain())
        version = await migrator.run()
    """

    def __init__(self, context: MigrationContext, steps: Sequence[MigrationStep]):
        validate_chain(steps)
        self.context = context
        self.steps = list(steps)

    @property
    def target_version(self) -> int:
        return self.steps[-1].to_version

    async def current_version(self) -> int:
        return await self.context.read_version()

    async def run(self) -> int:
        """
        Run every pending step in order.

        Returns:
            The stored version after the run

        Raises:
            MigrationOrderError: Stored version does not line up with the chain
            MigrationError: A step failed
        """
        try:
            version = await self.context.read_version()
        except Exception as e:
            raise MigrationError(f"could not read schema version: {e}") from e

        if version > self.target_version:
            raise MigrationOrderError(
                f"storage is at version {version}, newer than supported {self.target_version}"
            )

        logger.info("Schema migration starting", version=version, target=self.target_version)

        for step in self.steps:
            if version >= step.to_version:
                continue
            if version != step.from_version:
                raise MigrationOrderError(
                    f"step {step.name} expects version {step.from_version}, storage is at {version}"
                )
            try:
                async with self.context.transaction() as handle:
                    if await step.is_applied(handle):
                        logger.info("Migration step already applied", step=step.name)
                    else:
                        await step.apply(handle)
                        logger.info(
                            "Migration step applied",
                            step=step.name,
                            from_version=step.from_version,
                            to_version=step.to_version,
                        )
                    await self.context.write_version(handle, step.to_version)
            except MigrationError:
                raise
            except Exception as e:
                logger.error("Migration step failed", step=step.name, error=str(e))
                raise MigrationError(f"migration step {step.name} failed: {e}") from e
            version = step.to_version

        logger.info("Schema is current", version=version)
        return version


# =============================================================================
# SQL CONTEXT
# =============================================================================

async def _has_table(conn: AsyncConnection, name: str) -> bool:
    return await conn.run_sync(lambda c: inspect(c).has_table(name))


async def _column_names(conn: AsyncConnection, table: str) -> Set[str]:
    columns = await conn.run_sync(lambda c: inspect(c).get_columns(table))
    return {column["name"] for column in columns}


async def _index_names(conn: AsyncConnection, table: str) -> Set[str]:
    indexes = await conn.run_sync(lambda c: inspect(c).get_indexes(table))
    return {index["name"] for index in indexes}


async def _foreign_keys(conn: AsyncConnection, table: str) -> List[Dict[str, Any]]:
    return await conn.run_sync(lambda c: inspect(c).get_foreign_keys(table))


async def read_version_marker(conn: AsyncConnection) -> int:
    if not await _has_table(conn, SchemaConstant.__tablename__):
        return NO_VERSION
    result = await conn.execute(
        select(SchemaConstant.value).where(SchemaConstant.key == VERSION_KEY)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else NO_VERSION


class SqlMigrationContext:
    """MigrationContext over an async SQLAlchemy engine"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def read_version(self) -> int:
        async with self.engine.connect() as conn:
            return await read_version_marker(conn)

    async def write_version(self, handle: AsyncConnection, version: int) -> None:
        result = await handle.execute(
            update(SchemaConstant)
            .where(SchemaConstant.key == VERSION_KEY)
            .values(value=str(version))
        )
        if result.rowcount == 0:
            await handle.execute(
                insert(SchemaConstant).values(key=VERSION_KEY, value=str(version))
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        async with self.engine.begin() as conn:
            yield conn


# =============================================================================
# STEPS
# =============================================================================

async def _insert_chunked(conn: AsyncConnection, table, rows: List[dict]) -> None:
    for i in range(0, len(rows), INSERT_CHUNK_SIZE):
        await conn.execute(insert(table), rows[i:i + INSERT_CHUNK_SIZE])


# -1 -> 1 ---------------------------------------------------------------------

async def _version_table_applied(conn: AsyncConnection) -> bool:
    return await _has_table(conn, SchemaConstant.__tablename__)


async def _create_version_table(conn: AsyncConnection) -> None:
    await conn.run_sync(lambda c: SchemaConstant.__table__.create(c, checkfirst=True))


# 1 -> 2 ----------------------------------------------------------------------

async def _products_applied(conn: AsyncConnection) -> bool:
    if not await _has_table(conn, ProductRow.__tablename__):
        return False
    return PRODUCTS_MARKER_COLUMN in await _column_names(conn, ProductRow.__tablename__)


def _upgrade_products(defaults: ProductDefaults) -> Callable[[AsyncConnection], Awaitable[None]]:
    async def apply(conn: AsyncConnection) -> None:
        rows: List[dict] = []
        if await _has_table(conn, ProductRow.__tablename__):
            legacy_rows = (await conn.execute(select(legacy_products))).mappings().all()
            seen: Set[str] = set()
            for legacy_row in legacy_rows:
                row = upgrade_product_row(legacy_row, defaults)
                if row["alias"] in seen:
                    logger.warning("Dropping duplicate legacy product", alias=row["alias"])
                    continue
                seen.add(row["alias"])
                rows.append(row)
            await conn.run_sync(lambda c: legacy_products.drop(c))
            logger.info("Rebuilding legacy products table", rows=len(rows))

        await conn.run_sync(lambda c: ProductRow.__table__.create(c, checkfirst=True))
        await _insert_chunked(conn, ProductRow.__table__, rows)

    return apply


# 2 -> 3 ----------------------------------------------------------------------

async def _actors_applied(conn: AsyncConnection) -> bool:
    if not await _has_table(conn, Actor.__tablename__):
        return False
    result = await conn.execute(select(Actor.id).where(Actor.external_id == SYSTEM_ACTOR_ID))
    return result.scalar_one_or_none() is not None


async def _create_actors(conn: AsyncConnection) -> None:
    await conn.run_sync(lambda c: Actor.__table__.create(c, checkfirst=True))
    result = await conn.execute(select(Actor.id).where(Actor.external_id == SYSTEM_ACTOR_ID))
    if result.scalar_one_or_none() is None:
        await conn.execute(insert(Actor).values(external_id=SYSTEM_ACTOR_ID))


# 3 -> 4 ----------------------------------------------------------------------

def _has_cascade_fk(foreign_keys: List[Dict[str, Any]]) -> bool:
    for fk in foreign_keys:
        if fk.get("referred_table") != ProductRow.__tablename__:
            continue
        ondelete = (fk.get("options") or {}).get("ondelete") or ""
        if ondelete.upper() == "CASCADE":
            return True
    return False


async def _ledger_applied(conn: AsyncConnection) -> bool:
    if not await _has_table(conn, LedgerRow.__tablename__):
        return False
    if LEDGER_MARKER_COLUMN not in await _column_names(conn, LedgerRow.__tablename__):
        return False
    return _has_cascade_fk(await _foreign_keys(conn, LedgerRow.__tablename__))


async def _actor_ids(conn: AsyncConnection, external_ids: Set[str]) -> Dict[str, int]:
    existing = {
        row.external_id: row.id
        for row in (await conn.execute(select(Actor.id, Actor.external_id))).all()
    }
    missing = [{"external_id": ext} for ext in sorted(external_ids - existing.keys())]
    if missing:
        await _insert_chunked(conn, Actor.__table__, missing)
        existing = {
            row.external_id: row.id
            for row in (await conn.execute(select(Actor.id, Actor.external_id))).all()
        }
    return existing


async def _upgrade_ledger(conn: AsyncConnection) -> None:
    rows: List[dict] = []
    if await _has_table(conn, LedgerRow.__tablename__):
        columns = await _column_names(conn, LedgerRow.__tablename__)
        if LEDGER_MARKER_COLUMN in columns:
            # Current columns but no cascading product FK: rebuild preserving rows
            current = (await conn.execute(select(LedgerRow.__table__))).mappings().all()
            rows = [{k: v for k, v in row.items() if k != "id"} for row in current]
            await conn.run_sync(lambda c: LedgerRow.__table__.drop(c))
        else:
            legacy_rows = (await conn.execute(select(legacy_ledger))).mappings().all()
            product_ids = {
                normalize_alias(row.alias): row.id
                for row in (await conn.execute(select(ProductRow.id, ProductRow.alias))).all()
            }
            actor_ids = await _actor_ids(conn, {row["actor_uuid"] for row in legacy_rows})
            dropped = 0
            for legacy_row in legacy_rows:
                product_id = product_ids.get(normalize_alias(legacy_row["product_alias"]))
                if product_id is None:
                    dropped += 1
                    continue
                rows.append(upgrade_ledger_row(
                    legacy_row, actor_ids[legacy_row["actor_uuid"]], product_id
                ))
            if dropped:
                logger.warning("Dropped legacy ledger rows for unknown products", rows=dropped)
            await conn.run_sync(lambda c: legacy_ledger.drop(c))
        logger.info("Rebuilding ledger table", rows=len(rows))

    await conn.run_sync(lambda c: LedgerRow.__table__.create(c, checkfirst=True))
    await _insert_chunked(conn, LedgerRow.__table__, rows)


# 4 -> 5 ----------------------------------------------------------------------

LEDGER_TIMESTAMP_INDEX = "ix_ledger_created_at"


async def _normalized_applied(conn: AsyncConnection) -> bool:
    aliases = (await conn.execute(select(ProductRow.alias))).scalars().all()
    if any(alias != normalize_alias(alias) for alias in aliases):
        return False
    return LEDGER_TIMESTAMP_INDEX in await _index_names(conn, LedgerRow.__tablename__)


async def _normalize_aliases(conn: AsyncConnection) -> None:
    rows = (await conn.execute(select(ProductRow.id, ProductRow.alias))).all()
    by_alias = {row.alias: row.id for row in rows}
    for row in rows:
        target = normalize_alias(row.alias)
        if target == row.alias:
            continue
        winner = by_alias.get(target)
        if winner is None:
            await conn.execute(
                update(ProductRow).where(ProductRow.id == row.id).values(alias=target)
            )
            by_alias[target] = row.id
        else:
            # An already normalized product owns the alias; fold this one into it
            logger.warning("Merging case-duplicate product", alias=row.alias, into=target)
            await conn.execute(
                update(LedgerRow).where(LedgerRow.product_id == row.id).values(product_id=winner)
            )
            await conn.execute(delete(ProductRow).where(ProductRow.id == row.id))

    if LEDGER_TIMESTAMP_INDEX not in await _index_names(conn, LedgerRow.__tablename__):
        index = next(i for i in LedgerRow.__table__.indexes if i.name == LEDGER_TIMESTAMP_INDEX)
        await conn.run_sync(lambda c: index.create(c))


def build_migration_chain(defaults: Optional[ProductDefaults] = None) -> List[MigrationStep]:
    """The ordered steps from pre-versioned storage to CURRENT_SCHEMA_VERSION."""
    defaults = defaults or ProductDefaults()
    return [
        MigrationStep(NO_VERSION, 1, "create_version_table", _version_table_applied, _create_version_table),
        MigrationStep(1, 2, "products_current_shape", _products_applied, _upgrade_products(defaults)),
        MigrationStep(2, 3, "create_actors", _actors_applied, _create_actors),
        MigrationStep(3, 4, "ledger_current_shape", _ledger_applied, _upgrade_ledger),
        MigrationStep(4, CURRENT_SCHEMA_VERSION, "normalize_aliases", _normalized_applied, _normalize_aliases),
    ]
