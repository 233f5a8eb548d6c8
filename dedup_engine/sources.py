"""Where candidate and batch records come from.

The engine does not own CRM data; it asks a ``RecordSource`` for the
records to compare against and for the records a batch job should scan.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

Record = Dict[str, Any]


@runtime_checkable
class RecordSource(Protocol):
    async def get_candidate_records(
        self, record: Mapping[str, Any], record_type: str, source_system: str
    ) -> List[Record]:
        ...

    async def get_records_for_batch(
        self, record_type: str, source_system: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Record]:
        ...


class InMemoryRecordSource:
    """Record pool indexed by record type.

    Each stored record remembers the system it came from under
    ``_source_system``; candidates for a record are every other record of
    the same type.
    """

    SYSTEM_FIELD = "_source_system"

    def __init__(self, records: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None):
        self._pools: Dict[str, List[Record]] = {}
        self._lock = asyncio.Lock()
        for record_type, items in (records or {}).items():
            for item in items:
                self._add(record_type, item, item.get(self.SYSTEM_FIELD, "default"))

    def _add(self, record_type: str, record: Mapping[str, Any], source_system: str) -> Record:
        stored = dict(record)
        stored.setdefault(self.SYSTEM_FIELD, source_system)
        pool = self._pools.setdefault(record_type, [])
        pool[:] = [
            r
            for r in pool
            if not (r.get("id") == stored.get("id") and r[self.SYSTEM_FIELD] == stored[self.SYSTEM_FIELD])
        ]
        pool.append(stored)
        return stored

    async def add_record(self, record_type: str, record: Mapping[str, Any], source_system: str = "default") -> Record:
        async with self._lock:
            return self._add(record_type, record, source_system)

    async def add_records(
        self, record_type: str, records: Iterable[Mapping[str, Any]], source_system: str = "default"
    ) -> int:
        count = 0
        async with self._lock:
            for record in records:
                self._add(record_type, record, source_system)
                count += 1
        return count

    async def get_candidate_records(
        self, record: Mapping[str, Any], record_type: str, source_system: str
    ) -> List[Record]:
        async with self._lock:
            return [
                dict(r)
                for r in self._pools.get(record_type, [])
                if not (r.get("id") == record.get("id") and r[self.SYSTEM_FIELD] == source_system)
            ]

    async def get_records_for_batch(
        self, record_type: str, source_system: str, filters: Optional[Mapping[str, Any]] = None
    ) -> List[Record]:
        async with self._lock:
            records = [
                dict(r)
                for r in self._pools.get(record_type, [])
                if r[self.SYSTEM_FIELD] == source_system
            ]
        if filters:
            records = [r for r in records if all(r.get(k) == v for k, v in filters.items())]
        return records

    def count(self, record_type: Optional[str] = None) -> int:
        if record_type is not None:
            return len(self._pools.get(record_type, []))
        return sum(len(pool) for pool in self._pools.values())
