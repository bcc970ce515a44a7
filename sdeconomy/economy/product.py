"""
Product Record

In-memory state of one tradeable item. Records are owned by the ProductStore;
callers hold references to the live record, never detached copies.
"""

import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

# Supply and demand are stored as signed 32-bit integers in durable storage.
MAX_COUNTER = 2**31 - 1


class DecayType(IntEnum):
    """Demand decay policy. Values are the stored codes."""
    CONSTANT = 0
    PERCENTAGE = 1


def saturating_increment(value: int) -> int:
    """Increment by one, stopping at MAX_COUNTER."""
    return value + 1 if value < MAX_COUNTER else MAX_COUNTER


def floored_decrement(value: int) -> int:
    """Decrement by one, never going below 1."""
    return value - 1 if value > 1 else 1


def normalize_alias(alias: str) -> str:
    """Aliases are stored and looked up lower-case."""
    return alias.strip().lower()


@dataclass(eq=False)
class ProductRecord:
    """
    Live pricing state of a single product.

    ``supply`` and ``demand`` are always >= 1 and saturate at MAX_COUNTER.
    ``decay_interval`` is in milliseconds; values <= 0 disable decay.
    Mutations of the numeric fields go through PricingEngine while holding
    ``lock``.
    """
    alias: str
    item_type: str
    variant_tag: int = 0
    mod_factor: float = 0.1
    base_price: float = 1.0
    supply: int = 1
    demand: int = 1
    decay_amount: int = 64
    decay_interval: int = 43_200_000
    decay_type: DecayType = DecayType.CONSTANT
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.alias = normalize_alias(self.alias)
        self.decay_type = DecayType(self.decay_type)
        self.supply = min(max(int(self.supply), 1), MAX_COUNTER)
        self.demand = min(max(int(self.demand), 1), MAX_COUNTER)
        self.decay_amount = max(int(self.decay_amount), 0)

    @property
    def unit_price(self) -> float:
        """Price of one unit at the current supply/demand ratio."""
        return self.mod_factor * (self.demand / self.supply) + self.base_price

    def matches_item(self, item_type: str, variant_tag: int) -> bool:
        return self.item_type.lower() == item_type.lower() and self.variant_tag == variant_tag

    def to_row(self) -> dict:
        """Column mapping used by the persistence layer."""
        return {
            "alias": self.alias,
            "item_type": self.item_type,
            "variant_tag": self.variant_tag,
            "mod_factor": self.mod_factor,
            "base_price": self.base_price,
            "supply": self.supply,
            "demand": self.demand,
            "decay_amount": self.decay_amount,
            "decay_interval": self.decay_interval,
            "decay_type": int(self.decay_type),
        }

    @classmethod
    def from_row(cls, row) -> "ProductRecord":
        return cls(
            alias=row["alias"],
            item_type=row["item_type"],
            variant_tag=row["variant_tag"],
            mod_factor=row["mod_factor"],
            base_price=row["base_price"],
            supply=row["supply"],
            demand=row["demand"],
            decay_amount=row["decay_amount"],
            decay_interval=row["decay_interval"],
            decay_type=DecayType(row["decay_type"]),
        )


@dataclass(frozen=True)
class ProductDefaults:
    """Field values for products created at runtime"""
    mod_factor: float = 0.1
    base_price: float = 1.0
    decay_amount: int = 64
    decay_interval: int = 43_200_000
    decay_type: DecayType = DecayType.CONSTANT

    def create(self, alias: str, item_type: Optional[str] = None, variant_tag: int = 0) -> ProductRecord:
        return ProductRecord(
            alias=alias,
            item_type=(item_type or alias).upper(),
            variant_tag=variant_tag,
            mod_factor=self.mod_factor,
            base_price=self.base_price,
            decay_amount=self.decay_amount,
            decay_interval=self.decay_interval,
            decay_type=self.decay_type,
        )
