"""
Ledger Entries

Append-only record of economic actions. Entries are built by the pricing
engine and decay scheduler and written through a LedgerSink.
"""

from datetime import datetime
from enum import IntEnum
from typing import List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_ACTOR_ID = "00000000-0000-0000-0000-000000000000"

LEDGER_PAGE_SIZE = 20


class LedgerAction(IntEnum):
    """Economic action kinds. Values are the stored codes."""
    SET_PRICE = 0
    BUY = 1
    SELL = 2
    DECAY = 3
    SET_MOD_FACTOR = 4

    @property
    def label(self) -> str:
        return self.name.replace("_", " ")


class LedgerEntry(BaseModel):
    """A single ledger row as seen by callers"""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    action: LedgerAction
    product_alias: str
    amount: float
    money_exchanged: float = 0.0
    timestamp: Optional[datetime] = Field(
        default=None, description="Assigned by storage at append time"
    )


class LedgerSink(Protocol):
    """Anything that can durably append ledger entries"""

    async def append_ledger(self, entry: LedgerEntry) -> None:
        ...

    async def append_ledger_batch(self, entries: List[LedgerEntry]) -> None:
        ...
