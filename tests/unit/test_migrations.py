"""
Unit Tests - Schema Migrations
"""
from contextlib import asynccontextmanager
from datetime import datetime

import pytest
from sqlalchemy import func, insert, inspect, select

from sdeconomy.database.models import Actor, LedgerRow, ProductRow
from sdeconomy.economy import SYSTEM_ACTOR_ID, LedgerAction
from sdeconomy.exceptions import MigrationError, MigrationOrderError
from sdeconomy.persistence import (
    CURRENT_SCHEMA_VERSION,
    MigrationStep,
    PersistenceGateway,
    SchemaMigrator,
    SqlMigrationContext,
    build_migration_chain,
)
from sdeconomy.persistence.legacy import legacy_ledger, legacy_metadata, legacy_products
from sdeconomy.persistence.migrations import validate_chain

ALICE = "11111111-1111-1111-1111-111111111111"


class FakeContext:
    """In-memory MigrationContext; version writes commit with the transaction"""

    def __init__(self, version=-1):
        self.version = version
        self._pending = None

    async def read_version(self):
        return self.version

    async def write_version(self, handle, version):
        self._pending = version

    @asynccontextmanager
    async def transaction(self):
        self._pending = None
        yield self
        if self._pending is not None:
            self.version = self._pending


def make_step(from_version, to_version, calls, applied=False, fail=False):
    async def is_applied(handle):
        return applied

    async def apply(handle):
        if fail:
            raise RuntimeError("boom")
        calls.append(to_version)

    return MigrationStep(from_version, to_version, f"step_{to_version}", is_applied, apply)


class TestSchemaMigrator:
    """Tests for the migration framework"""

    async def test_runs_all_steps_in_order(self):
        """Test every pending step runs once, in order"""
        calls = []
        context = FakeContext()
        steps = [make_step(-1, 1, calls), make_step(1, 2, calls), make_step(2, 3, calls)]

        version = await SchemaMigrator(context, steps).run()

        assert version == 3
        assert calls == [1, 2, 3]
        assert context.version == 3

    async def test_skips_completed_steps(self):
        """Test steps at or below the stored version are skipped"""
        calls = []
        context = FakeContext(version=2)
        steps = [make_step(-1, 1, calls), make_step(1, 2, calls), make_step(2, 3, calls)]

        await SchemaMigrator(context, steps).run()

        assert calls == [3]

    async def test_second_run_is_noop(self):
        """Test running twice applies nothing the second time"""
        calls = []
        context = FakeContext()
        migrator = SchemaMigrator(context, [make_step(-1, 1, calls), make_step(1, 2, calls)])

        await migrator.run()
        await migrator.run()

        assert calls == [1, 2]

    async def test_applied_step_only_writes_marker(self):
        """Test a step whose change already exists only advances the version"""
        calls = []
        context = FakeContext()

        await SchemaMigrator(context, [make_step(-1, 1, calls, applied=True)]).run()

        assert calls == []
        assert context.version == 1

    async def test_failure_stops_chain(self):
        """Test a failing step raises MigrationError and keeps the last good version"""
        calls = []
        context = FakeContext()
        steps = [make_step(-1, 1, calls), make_step(1, 2, calls, fail=True), make_step(2, 3, calls)]

        with pytest.raises(MigrationError):
            await SchemaMigrator(context, steps).run()

        assert calls == [1]
        assert context.version == 1

    async def test_newer_storage_rejected(self):
        """Test storage ahead of the chain refuses to start"""
        context = FakeContext(version=9)

        with pytest.raises(MigrationOrderError):
            await SchemaMigrator(context, [make_step(-1, 1, [])]).run()

    async def test_unknown_version_rejected(self):
        """Test a stored version the chain cannot continue from is refused"""
        context = FakeContext(version=0)

        with pytest.raises(MigrationOrderError):
            await SchemaMigrator(context, [make_step(-1, 1, []), make_step(1, 2, [])]).run()

    def test_gap_in_chain_rejected(self):
        """Test a non-contiguous chain is rejected up front"""
        with pytest.raises(MigrationOrderError):
            validate_chain([make_step(-1, 1, []), make_step(2, 3, [])])

    def test_empty_chain_rejected(self):
        """Test an empty chain is rejected"""
        with pytest.raises(MigrationOrderError):
            validate_chain([])


class TestSqlMigrations:
    """Tests for the SQL migration chain"""

    async def test_fresh_database(self, test_engine):
        """Test an empty database is brought to the current version"""
        context = SqlMigrationContext(test_engine)

        version = await SchemaMigrator(context, build_migration_chain()).run()

        assert version == CURRENT_SCHEMA_VERSION
        assert await context.read_version() == CURRENT_SCHEMA_VERSION
        async with test_engine.connect() as conn:
            tables = await conn.run_sync(lambda c: inspect(c).get_table_names())
            system = await conn.execute(select(Actor.id).where(Actor.external_id == SYSTEM_ACTOR_ID))
            assert system.scalar_one_or_none() is not None
        assert {"schema_version", "products", "actors", "ledger"} <= set(tables)

    async def test_rerun_is_idempotent(self, migrated_engine):
        """Test migrating a current database changes nothing"""
        context = SqlMigrationContext(migrated_engine)

        version = await SchemaMigrator(context, build_migration_chain()).run()

        assert version == CURRENT_SCHEMA_VERSION
        async with migrated_engine.connect() as conn:
            actors = await conn.execute(select(func.count()).select_from(Actor))
            assert actors.scalar_one() == 1

    async def test_legacy_tables_upgraded(self, test_engine):
        """Test pre-versioned products and ledger rows are carried forward"""
        async with test_engine.begin() as conn:
            await conn.run_sync(legacy_metadata.create_all)
            await conn.execute(insert(legacy_products), [
                {"alias": "Stone", "item_type": "STONE", "variant_tag": 0, "price": 2.5, "supply": 10, "demand": 20},
                {"alias": "dirt", "item_type": "DIRT", "variant_tag": 0, "price": 1.0, "supply": 0, "demand": 5},
            ])
            await conn.execute(insert(legacy_ledger), [
                {"actor_uuid": ALICE, "action": 1, "product_alias": "stone", "amount": 3.0,
                 "created_at": datetime(2020, 1, 1, 12, 0)},
                {"actor_uuid": ALICE, "action": 2, "product_alias": "ghost", "amount": 1.0,
                 "created_at": datetime(2020, 1, 2, 12, 0)},
            ])

        await SchemaMigrator(SqlMigrationContext(test_engine), build_migration_chain()).run()

        gateway = PersistenceGateway(test_engine)
        records = {r.alias: r for r in await gateway.load_all()}
        assert sorted(records) == ["dirt", "stone"]
        assert records["stone"].base_price == 2.5
        assert records["stone"].mod_factor == pytest.approx(0.1)
        assert (records["stone"].supply, records["stone"].demand) == (10, 20)
        assert records["dirt"].supply == 1

        entries = await gateway.query_ledger(ALICE)
        assert len(entries) == 1
        assert entries[0].action == LedgerAction.BUY
        assert entries[0].product_alias == "stone"
        assert entries[0].amount == 3.0
        assert entries[0].money_exchanged == 0.0

    async def test_case_duplicates_merged(self, test_engine):
        """Test mixed-case aliases are lowered and duplicates folded together"""
        chain = build_migration_chain()
        await SchemaMigrator(SqlMigrationContext(test_engine), chain[:4]).run()

        async with test_engine.begin() as conn:
            base = {"item_type": "STONE", "variant_tag": 0, "mod_factor": 0.1, "base_price": 1.0,
                    "supply": 1, "demand": 1, "decay_amount": 64, "decay_interval": 1000, "decay_type": 0}
            await conn.execute(insert(ProductRow), [
                {**base, "alias": "Stone"},
                {**base, "alias": "stone"},
                {**base, "alias": "Dirt", "item_type": "DIRT"},
            ])
            ids = dict((await conn.execute(select(ProductRow.alias, ProductRow.id))).all())
            actor_id = (await conn.execute(select(Actor.id))).scalar_one()
            await conn.execute(insert(LedgerRow), [
                {"actor_id": actor_id, "action": 1, "product_id": ids["Stone"], "amount": 1.0,
                 "money_exchanged": 1.0, "created_at": datetime(2021, 1, 1)},
                {"actor_id": actor_id, "action": 1, "product_id": ids["Dirt"], "amount": 1.0,
                 "money_exchanged": 1.0, "created_at": datetime(2021, 1, 1)},
            ])

        version = await SchemaMigrator(SqlMigrationContext(test_engine), chain).run()

        assert version == CURRENT_SCHEMA_VERSION
        async with test_engine.connect() as conn:
            products = dict((await conn.execute(select(ProductRow.alias, ProductRow.id))).all())
            assert sorted(products) == ["dirt", "stone"]
            assert products["stone"] == ids["stone"]
            ledger_products = (await conn.execute(select(LedgerRow.product_id))).scalars().all()
            assert sorted(ledger_products) == sorted([ids["stone"], ids["Dirt"]])
