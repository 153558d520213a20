"""
Run-scoped record index

Append-only identity map used to merge paged results without duplicates.
One index per dataset per aggregation run; never shared across runs.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


def field_value(record: Mapping[str, Any], *keys: str) -> Any:
    """First non-null value among alternative key spellings"""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def record_id(record: Mapping[str, Any]) -> Optional[str]:
    """Stable id of a store record (``id`` or ``_id``)"""
    value = record.get("id")
    if value is None:
        value = record.get("_id")
    if value is None or value == "":
        return None
    return str(value)


class RecordIndex:
    """
    Append-only id -> record arena.

    Adding a record whose id is already present is a no-op, so overlapping or
    re-fetched pages never produce duplicates. Insertion order is preserved.
    """

    def __init__(self, dataset: str):
        self.dataset = dataset
        self._records: Dict[str, Dict[str, Any]] = {}
        self.duplicates = 0
        self.missing_ids = 0

    def add(self, record: Mapping[str, Any]) -> bool:
        """Insert a record; False if its id was already present or missing"""
        key = record_id(record)
        if key is None:
            self.missing_ids += 1
            logger.warning("Record without id dropped", dataset=self.dataset)
            return False
        if key in self._records:
            self.duplicates += 1
            return False
        self._records[key] = dict(record)
        return True

    def extend(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Insert many records, returning how many were new"""
        return sum(1 for record in records if self.add(record))

    def values(self) -> List[Dict[str, Any]]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records
