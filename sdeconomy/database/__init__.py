"""
Database Module
"""
from .connection import (
    check_database_health,
    close_database,
    create_engine,
    init_database,
)
from .models import Actor, Base, LedgerRow, ProductRow, SchemaConstant

__all__ = [
    "init_database",
    "close_database",
    "create_engine",
    "check_database_health",
    "Actor",
    "Base",
    "LedgerRow",
    "ProductRow",
    "SchemaConstant",
]
