"""
Test Suite Configuration
"""
import pytest
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine

from sdeconomy.database.connection import create_engine
from sdeconomy.economy import PricingEngine, ProductDefaults, ProductRecord, ProductStore
from sdeconomy.exceptions import StorageError
from sdeconomy.persistence import PersistenceGateway, SchemaMigrator, SqlMigrationContext, build_migration_chain

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an empty in-memory database engine"""
    engine = create_engine(TEST_DATABASE_URL)
    yield engine
    await engine.dispose()


@pytest.fixture
async def migrated_engine(test_engine) -> AsyncEngine:
    """Engine whose schema has been migrated to the current version"""
    await SchemaMigrator(SqlMigrationContext(test_engine), build_migration_chain()).run()
    return test_engine


@pytest.fixture
def gateway(migrated_engine) -> PersistenceGateway:
    return PersistenceGateway(migrated_engine, operation_timeout=5.0)


@pytest.fixture
def engine() -> PricingEngine:
    """Pricing engine without a ledger"""
    return PricingEngine()


@pytest.fixture
def defaults() -> ProductDefaults:
    return ProductDefaults()


@pytest.fixture
def record() -> ProductRecord:
    """A product at supply 100, demand 100, priced at 1.1 per unit"""
    return ProductRecord(
        alias="stone",
        item_type="STONE",
        mod_factor=0.1,
        base_price=1.0,
        supply=100,
        demand=100,
    )


@pytest.fixture
def store(record) -> ProductStore:
    return ProductStore([record])


class RecordingLedger:
    """LedgerSink that keeps entries in memory"""

    def __init__(self, fail_with=None):
        self.entries = []
        self.batches = []
        self.fail_with = fail_with

    async def append_ledger(self, entry):
        await self.append_ledger_batch([entry])

    async def append_ledger_batch(self, entries):
        if self.fail_with is not None:
            raise self.fail_with
        self.batches.append(list(entries))
        self.entries.extend(entries)
        return len(entries)


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def failing_ledger() -> RecordingLedger:
    """LedgerSink whose storage is unreachable"""
    return RecordingLedger(fail_with=StorageError("append_ledger", ConnectionError("refused")))
