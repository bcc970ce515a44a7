"""
Economy Core Module
"""
from .decay import DecayScheduler
from .ledger import SYSTEM_ACTOR_ID, LedgerAction, LedgerEntry
from .pricing import PricingEngine
from .product import DecayType, ProductDefaults, ProductRecord
from .store import ProductStore

__all__ = [
    "DecayScheduler",
    "DecayType",
    "LedgerAction",
    "LedgerEntry",
    "PricingEngine",
    "ProductDefaults",
    "ProductRecord",
    "ProductStore",
    "SYSTEM_ACTOR_ID",
]
