"""
Persistence Module
"""
from .gateway import PersistenceGateway
from .migrations import (
    CURRENT_SCHEMA_VERSION,
    MigrationStep,
    SchemaMigrator,
    SqlMigrationContext,
    build_migration_chain,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "MigrationStep",
    "PersistenceGateway",
    "SchemaMigrator",
    "SqlMigrationContext",
    "build_migration_chain",
]
