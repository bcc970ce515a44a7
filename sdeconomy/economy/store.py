"""
Product Store

Concurrent alias -> ProductRecord mapping; the in-memory system of record.
The map itself is guarded by a short-lived lock; field mutation of a record is
serialized by the record's own lock, so work on different aliases never
contends beyond the dictionary operation.
"""

import threading
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from sdeconomy.economy.product import ProductRecord, normalize_alias

logger = structlog.get_logger(__name__)


class ProductStore:
    """Keyed collection of live ProductRecords"""

    def __init__(self, records: Iterable[ProductRecord] = ()):
        self._records: Dict[str, ProductRecord] = {}
        self._lock = threading.Lock()
        for record in records:
            self.put_if_absent(record)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, alias: str) -> bool:
        return normalize_alias(alias) in self._records

    def get(self, alias: str) -> Optional[ProductRecord]:
        """Return the live record for ``alias`` or ``None``."""
        return self._records.get(normalize_alias(alias))

    def get_or_create(self, alias: str, factory: Callable[[str], ProductRecord]) -> ProductRecord:
        """
        Return the record for ``alias``, creating it with ``factory`` if absent.

        The factory receives the normalized alias and runs at most once per alias.
        """
        key = normalize_alias(alias)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = factory(key)
                if record.alias != key:
                    raise ValueError(f"factory produced alias {record.alias!r} for {key!r}")
                self._records[key] = record
                logger.info("Product created", alias=key)
            return record

    def put_if_absent(self, record: ProductRecord) -> bool:
        """Insert ``record`` unless its alias is already present. Returns True if inserted."""
        with self._lock:
            if record.alias in self._records:
                return False
            self._records[record.alias] = record
            return True

    def remove(self, alias: str) -> Optional[ProductRecord]:
        """Remove and return the record for ``alias``, if any."""
        with self._lock:
            return self._records.pop(normalize_alias(alias), None)

    def values(self) -> List[ProductRecord]:
        """Stable snapshot of the current records for iteration."""
        with self._lock:
            return list(self._records.values())

    def aliases(self) -> List[str]:
        with self._lock:
            return sorted(self._records)

    def find_by_item(self, item_type: str, variant_tag: int = 0) -> Optional[ProductRecord]:
        """Find the record trading a given item type and variant."""
        for record in self.values():
            if record.matches_item(item_type, variant_tag):
                return record
        return None
