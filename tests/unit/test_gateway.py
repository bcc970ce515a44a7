"""
Unit Tests - Persistence Gateway
"""
import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy.dialects import mysql

from sdeconomy.database.connection import create_engine
from sdeconomy.economy import DecayType, LedgerAction, LedgerEntry, ProductRecord
from sdeconomy.exceptions import StorageError
from sdeconomy.persistence import PersistenceGateway, SchemaMigrator, SqlMigrationContext, build_migration_chain

ALICE = "11111111-1111-1111-1111-111111111111"
BOB = "22222222-2222-2222-2222-222222222222"


def trade(actor, alias, amount, action=LedgerAction.BUY, money=1.0):
    return LedgerEntry(
        actor_id=actor,
        action=action,
        product_alias=alias,
        amount=amount,
        money_exchanged=money,
    )


class TestProducts:
    """Tests for product persistence"""

    async def test_save_and_load_round_trip(self, gateway):
        """Test every persisted field survives a save and load"""
        record = ProductRecord(
            alias="red_wool",
            item_type="WOOL",
            variant_tag=14,
            mod_factor=0.3,
            base_price=2.25,
            supply=40,
            demand=75,
            decay_amount=5,
            decay_interval=60_000,
            decay_type=DecayType.PERCENTAGE,
        )

        assert await gateway.save_all([record]) == 1
        loaded = await gateway.load_all()

        assert len(loaded) == 1
        assert loaded[0].to_row() == record.to_row()
        assert loaded[0] is not record

    async def test_save_one_upserts(self, gateway, record):
        """Test saving twice updates the existing row"""
        await gateway.save_one(record)
        record.base_price = 9.0
        record.supply = 3
        await gateway.save_one(record)

        loaded = await gateway.load_all()

        assert len(loaded) == 1
        assert loaded[0].base_price == 9.0
        assert loaded[0].supply == 3

    async def test_save_all_empty(self, gateway):
        """Test saving nothing is a no-op"""
        assert await gateway.save_all([]) == 0

    async def test_delete_cascades_ledger(self, gateway, record):
        """Test deleting a product deletes its ledger rows"""
        other = ProductRecord(alias="dirt", item_type="DIRT")
        await gateway.save_all([record, other])
        await gateway.append_ledger_batch([trade(ALICE, "stone", 1), trade(ALICE, "dirt", 1)])

        assert await gateway.delete_product("Stone") is True

        assert [r.alias for r in await gateway.load_all()] == ["dirt"]
        assert await gateway.count_ledger() == 1
        assert await gateway.delete_product("stone") is False


class TestLedger:
    """Tests for ledger append and query"""

    async def test_pagination(self, gateway, record):
        """Test pages are 20 entries, most recent first"""
        await gateway.save_one(record)
        await gateway.append_ledger_batch([trade(ALICE, "stone", i) for i in range(1, 46)])

        pages = [await gateway.query_ledger(ALICE, page) for page in range(4)]

        assert [len(p) for p in pages] == [20, 20, 5, 0]
        assert pages[0][0].amount == 45
        assert pages[2][-1].amount == 1
        assert await gateway.query_ledger(ALICE, -1) == pages[0]

    async def test_entries_scoped_to_actor(self, gateway, record):
        """Test queries only return the requested actor's entries"""
        await gateway.save_one(record)
        await gateway.append_ledger(trade(ALICE, "stone", 1))
        await gateway.append_ledger(trade(BOB, "stone", 2, action=LedgerAction.SELL))

        bob = await gateway.query_ledger(BOB)

        assert len(bob) == 1
        assert bob[0].actor_id == BOB
        assert bob[0].action == LedgerAction.SELL
        assert await gateway.count_ledger(ALICE) == 1
        assert await gateway.query_ledger("33333333-3333-3333-3333-333333333333") == []

    async def test_timestamps_never_go_backwards(self, gateway, record):
        """Test later appends never carry an earlier timestamp"""
        await gateway.save_one(record)
        await gateway.append_ledger(trade(ALICE, "stone", 1))
        await gateway.append_ledger(trade(ALICE, "stone", 2))

        newest, oldest = await gateway.query_ledger(ALICE)

        assert newest.amount == 2
        assert newest.timestamp >= oldest.timestamp

    async def test_unsaved_product_skipped(self, gateway, record):
        """Test entries for a product never saved are skipped"""
        await gateway.save_one(record)

        written = await gateway.append_ledger_batch([trade(ALICE, "stone", 1), trade(ALICE, "ghost", 1)])

        assert written == 1
        assert await gateway.count_ledger() == 1

    async def test_concurrent_batches_share_new_actor(self, tmp_path, record):
        """Test two writers creating the same new actor at once both succeed"""
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/economy.db")
        try:
            await SchemaMigrator(SqlMigrationContext(engine), build_migration_chain()).run()
            gateway = PersistenceGateway(engine)
            await gateway.save_one(record)

            written = await asyncio.gather(
                gateway.append_ledger_batch([trade(ALICE, "stone", 1)]),
                gateway.append_ledger_batch([trade(ALICE, "stone", 2)]),
            )

            assert written == [1, 1]
            assert await gateway.count_ledger(ALICE) == 2
        finally:
            await engine.dispose()

    async def test_known_actor_reused(self, gateway, record):
        """Test a fresh gateway resolves an actor created by an earlier one"""
        await gateway.save_one(record)
        await gateway.append_ledger(trade(ALICE, "stone", 1))

        other = PersistenceGateway(gateway.engine)
        await other.append_ledger(trade(ALICE, "stone", 2))

        assert await other.count_ledger(ALICE) == 2


class TestFailures:
    """Tests for storage failures"""

    async def test_unreachable_database(self, tmp_path):
        """Test driver errors surface as StorageError"""
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/economy.db")
        gateway = PersistenceGateway(engine)
        try:
            with pytest.raises(StorageError) as exc_info:
                await gateway.load_all()
        finally:
            await engine.dispose()

        assert exc_info.value.operation == "load_all"

    async def test_timeout(self, migrated_engine):
        """Test an operation exceeding the timeout surfaces as StorageError"""
        gateway = PersistenceGateway(migrated_engine, operation_timeout=0.01)

        with pytest.raises(StorageError):
            await gateway._guard("slow", asyncio.sleep(1))


class TestDialects:
    """Tests for dialect-specific statements"""

    @staticmethod
    def gateway_for(dialect):
        return PersistenceGateway(SimpleNamespace(dialect=SimpleNamespace(name=dialect)))

    def test_mysql_upsert(self):
        """Test MySQL products are upserted with ON DUPLICATE KEY UPDATE"""
        record = ProductRecord(alias="stone", item_type="STONE")

        stmt = self.gateway_for("mysql")._upsert([record.to_row()])
        sql = str(stmt.compile(dialect=mysql.dialect()))

        assert "ON DUPLICATE KEY UPDATE" in sql
        assert "demand" in sql.split("ON DUPLICATE KEY UPDATE")[1]

    def test_mysql_actor_insert(self):
        """Test MySQL actor creation tolerates an existing actor"""
        stmt = self.gateway_for("mysql")._insert_actors([ALICE])

        assert "ON DUPLICATE KEY UPDATE" in str(stmt.compile(dialect=mysql.dialect()))

    @pytest.mark.parametrize("method,args", [("_upsert", ([{"alias": "stone"}],)), ("_insert_actors", ([ALICE],))])
    def test_unsupported_dialect_is_storage_error(self, method, args):
        """Test an unknown dialect surfaces as StorageError"""
        gateway = self.gateway_for("oracle")

        with pytest.raises(StorageError) as exc_info:
            getattr(gateway, method)(*args)

        assert isinstance(exc_info.value.cause, NotImplementedError)
