"""
Legacy Storage Shapes

Table layouts written before schema versioning existed, and pure functions
mapping their rows to the current shape. The migration chain reads legacy rows
once, maps them here and writes them into the current tables.

Legacy products priced a unit as ``price * demand / supply``; the current model
prices it as ``mod_factor * demand / supply + base_price``. The legacy price is
carried over as the base price and the elasticity starts from the configured
default.
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
)

from sdeconomy.economy.product import MAX_COUNTER, ProductDefaults, normalize_alias

legacy_metadata = MetaData()

legacy_products = Table(
    "products",
    legacy_metadata,
    Column("alias", String(255), primary_key=True),
    Column("item_type", String(255), nullable=False),
    Column("variant_tag", SmallInteger, default=0),
    Column("price", Float, nullable=False),
    Column("supply", Integer, nullable=False),
    Column("demand", Integer, nullable=False),
)

legacy_ledger = Table(
    "ledger",
    legacy_metadata,
    Column("actor_uuid", String(36), nullable=False),
    Column("action", SmallInteger, nullable=False),
    Column("product_alias", String(255), nullable=False),
    Column("amount", Float, nullable=False),
    Column("created_at", DateTime, nullable=True),
)

# Column whose absence marks a products table as legacy
PRODUCTS_MARKER_COLUMN = "mod_factor"
# Column whose absence marks a ledger table as legacy
LEDGER_MARKER_COLUMN = "money_exchanged"


def _clamp_counter(value: Any) -> int:
    return min(max(int(value or 1), 1), MAX_COUNTER)


def upgrade_product_row(row: Mapping[str, Any], defaults: Optional[ProductDefaults] = None) -> dict:
    """Map a legacy products row to current ``products`` column values."""
    defaults = defaults or ProductDefaults()
    return {
        "alias": normalize_alias(row["alias"]),
        "item_type": row["item_type"],
        "variant_tag": int(row.get("variant_tag") or 0),
        "mod_factor": defaults.mod_factor,
        "base_price": float(row["price"]),
        "supply": _clamp_counter(row["supply"]),
        "demand": _clamp_counter(row["demand"]),
        "decay_amount": defaults.decay_amount,
        "decay_interval": defaults.decay_interval,
        "decay_type": int(defaults.decay_type),
    }


def upgrade_ledger_row(
    row: Mapping[str, Any], actor_id: int, product_id: int
) -> dict:
    """
    Map a legacy ledger row to current ``ledger`` column values.

    Legacy rows never recorded money; it is carried as 0.
    """
    created_at = row.get("created_at") or datetime.now(timezone.utc)
    return {
        "actor_id": actor_id,
        "action": int(row["action"]),
        "product_id": product_id,
        "amount": float(row["amount"]),
        "money_exchanged": 0.0,
        "created_at": created_at,
    }
