"""Persistence and manual review of ``DuplicateRecord``s."""

from __future__ import annotations

import copy
from datetime import datetime
from typing import List, Optional

from dedup_engine.errors import DuplicateNotFound, InvalidTransition
from dedup_engine.events import EventBus, EventType
from dedup_engine.models import (
    REVIEW_TRANSITIONS,
    DuplicateFilters,
    DuplicateRecord,
    DuplicateStatus,
)
from dedup_engine.store import DUPLICATE_NS, RecordStore, make_key
from dedup_engine.utils.logger import log_info
from dedup_engine.utils.thread_safe import KeyedLock


class DuplicateRepository:
    """Store-backed collection of duplicates.

    ``locks`` serializes status transitions per duplicate id and is shared
    with the merge engine so a review and a merge cannot interleave.
    """

    def __init__(self, store: RecordStore, events: EventBus, ttl_seconds: int = 0):
        self.store = store
        self.events = events
        self.ttl_seconds = ttl_seconds
        self.locks = KeyedLock()

    async def save(self, duplicate: DuplicateRecord) -> DuplicateRecord:
        await self.store.put(make_key(DUPLICATE_NS, duplicate.id), duplicate, self.ttl_seconds)
        return duplicate

    async def get(self, duplicate_id: str) -> Optional[DuplicateRecord]:
        return await self.store.get(make_key(DUPLICATE_NS, duplicate_id))

    async def require(self, duplicate_id: str) -> DuplicateRecord:
        duplicate = await self.get(duplicate_id)
        if duplicate is None:
            raise DuplicateNotFound(f"Duplicate record not found: {duplicate_id}", duplicate_id=duplicate_id)
        return duplicate

    async def list(self, filters: Optional[DuplicateFilters] = None) -> List[DuplicateRecord]:
        """Duplicates matching ``filters``, newest first."""
        duplicates = await self.store.load_namespace(DUPLICATE_NS)
        if filters is not None:
            duplicates = [d for d in duplicates if filters.matches(d)]
        return sorted(duplicates, key=lambda d: d.created_at, reverse=True)

    async def update_status(
        self,
        duplicate_id: str,
        status: DuplicateStatus,
        reviewed_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> DuplicateRecord:
        """Apply a manual review decision.

        Raises:
            DuplicateNotFound: Unknown id.
            InvalidTransition: The move is not a review transition; in
                particular ``merged`` is only reachable by merging.
        """
        status = DuplicateStatus(status)
        async with self.locks.acquire(duplicate_id):
            current = await self.require(duplicate_id)
            allowed = REVIEW_TRANSITIONS.get(current.status, set())
            if status not in allowed:
                raise InvalidTransition(
                    f"Cannot move duplicate from {current.status.value} to {status.value}",
                    duplicate_id=duplicate_id,
                )

            duplicate = copy.deepcopy(current)
            previous = duplicate.status
            duplicate.status = status
            duplicate.reviewed_by = reviewed_by
            duplicate.reviewed_at = datetime.now()
            if notes:
                duplicate.metadata["review_notes"] = notes
            duplicate.append_audit(
                "reviewed", from_status=previous.value, to_status=status.value, reviewed_by=reviewed_by
            )
            duplicate.touch()
            await self.save(duplicate)

        log_info("Duplicate reviewed", duplicate_id=duplicate_id, status=status.value)
        self.events.publish(
            EventType.DUPLICATE_REVIEWED,
            duplicate_id=duplicate_id,
            status=status.value,
            reviewed_by=reviewed_by,
        )
        return duplicate
