"""Merge strategy engine.

Collapses the two records of a detected duplicate using the strategy for
its record type. Field rules run in ascending priority; fields whose
conflict resolution requires approval are never merged automatically and
are reported as deferred. The ``pending -> merged`` transition happens under
a per-duplicate lock with a status re-check, so concurrent merge attempts
on one duplicate yield exactly one merge.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from dedup_engine import metrics
from dedup_engine.dedup.result import MergeReceipt
from dedup_engine.dedup.strategies import (
    AutomaticRule,
    DeduplicationStrategy,
    MergeRule,
    MergeStrategyType,
)
from dedup_engine.errors import (
    DuplicateNotFound,
    MergeFailure,
    StrategyNotFound,
)
from dedup_engine.events import EventBus, EventType
from dedup_engine.models import DuplicateRecord, DuplicateStatus
from dedup_engine.store import BACKUP_NS, make_key
from dedup_engine.utils.logger import log_error, log_info, log_merge_operation

CustomMergeFn = Callable[[Any, Any, Mapping[str, Any], Mapping[str, Any]], Any]

TIMESTAMP_FIELDS = ("updated_at", "updatedAt", "modified_at", "lastModified", "created_at", "createdAt")

MERGE_SEPARATOR = "; "

# Epoch values above this are milliseconds (1e11 seconds is the year 5138)
EPOCH_MILLIS_THRESHOLD = 1e11


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_timestamp(record: Mapping[str, Any]) -> Optional[datetime]:
    """Best-effort last-modified time of a CRM record, as naive UTC.

    Accepts datetimes, ISO strings and epoch numbers in seconds or
    milliseconds (values above ``EPOCH_MILLIS_THRESHOLD``). Unparseable
    values are skipped in favour of the next timestamp field.
    """
    for key in TIMESTAMP_FIELDS:
        value = record.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, datetime):
            return _naive_utc(value)
        try:
            if isinstance(value, (int, float)):
                seconds = value / 1000 if abs(value) > EPOCH_MILLIS_THRESHOLD else value
                return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
            return _naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
        except (ValueError, OverflowError, OSError):
            continue
    return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict, set, tuple)) and len(value) == 0)


def union_values(source_value: Any, target_value: Any) -> Any:
    """``merge`` strategy: union for collections, concatenation for text."""
    if _is_empty(source_value):
        return target_value
    if _is_empty(target_value) or source_value == target_value:
        return source_value
    if isinstance(source_value, dict) and isinstance(target_value, dict):
        return {**target_value, **source_value}
    if isinstance(source_value, (list, tuple, set)) or isinstance(target_value, (list, tuple, set)):
        merged: List[Any] = []
        for item in _as_list(source_value) + _as_list(target_value):
            if item not in merged:
                merged.append(item)
        return merged
    parts = [str(source_value)]
    for part in str(target_value).split(MERGE_SEPARATOR):
        if part and part not in parts and part not in str(source_value).split(MERGE_SEPARATOR):
            parts.append(part)
    return MERGE_SEPARATOR.join(parts)


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _prefer_non_empty(source_value, target_value, source, target):
    return target_value if _is_empty(source_value) else source_value


def _max_value(source_value, target_value, source, target):
    present = [v for v in (source_value, target_value) if v is not None]
    return max(present) if present else None


def _min_value(source_value, target_value, source, target):
    present = [v for v in (source_value, target_value) if v is not None]
    return min(present) if present else None


BUILTIN_CUSTOM_MERGES: Dict[str, CustomMergeFn] = {
    "prefer_non_empty": _prefer_non_empty,
    "max_value": _max_value,
    "min_value": _min_value,
}


class MergeStrategyEngine:
    """Apply deduplication strategies to pending duplicates.

    Args:
        registry: ``RuleRegistry`` used to find the strategy for a type.
        repository: ``DuplicateRepository`` holding the duplicates.
        store: ``RecordStore`` for pre-merge backups.
        events: Event bus for ``duplicate_merged`` / ``merge_error``.
        backup_ttl_seconds: Lifetime of backup snapshots.
    """

    def __init__(self, registry, repository, store, events: EventBus, backup_ttl_seconds: int = 86400):
        self.registry = registry
        self.repository = repository
        self.store = store
        self.events = events
        self.backup_ttl_seconds = backup_ttl_seconds
        self._locks = repository.locks
        self._custom_merges: Dict[str, CustomMergeFn] = dict(BUILTIN_CUSTOM_MERGES)

    def register_custom_merge(self, name: str, fn: CustomMergeFn) -> None:
        """Register a named function for ``custom`` merge rules.

        ``fn(source_value, target_value, source_record, target_record)``
        returns the merged value.
        """
        self._custom_merges[name] = fn

    async def merge_duplicate(self, duplicate_id: str) -> Optional[MergeReceipt]:
        """Merge the two records of a pending duplicate.

        Returns the receipt, or ``None`` when the duplicate is no longer
        pending (another caller merged or reviewed it first).

        Raises:
            DuplicateNotFound: Unknown duplicate id.
            StrategyNotFound: No strategy for the type and no universal one.
            MergeFailure: Applying the strategy or persisting the result failed;
                the duplicate stays ``pending``.
        """
        async with self._locks.acquire(duplicate_id):
            try:
                duplicate = await self.repository.require(duplicate_id)
                if duplicate.status != DuplicateStatus.PENDING:
                    log_info(
                        "Merge skipped, duplicate no longer pending",
                        duplicate_id=duplicate_id,
                        status=duplicate.status.value,
                    )
                    return None

                strategy = await self.registry.find_strategy(duplicate.record_type)
                if strategy is None:
                    raise StrategyNotFound(
                        f"No deduplication strategy found for: {duplicate.record_type}",
                        record_type=duplicate.record_type,
                    )
                receipt = await self._merge(duplicate, strategy)
            except (DuplicateNotFound, StrategyNotFound, MergeFailure) as exc:
                self._emit_error(duplicate_id, exc)
                raise
            except Exception as exc:
                self._emit_error(duplicate_id, exc)
                raise MergeFailure(f"Merge failed: {exc}", duplicate_id=duplicate_id) from exc

        metrics.incr("duplicates.merged", record_type=duplicate.record_type)
        self.events.publish(
            EventType.DUPLICATE_MERGED,
            duplicate_id=duplicate.id,
            merge_result=receipt.to_dict(),
        )
        return receipt

    async def _merge(self, duplicate: DuplicateRecord, strategy: DeduplicationStrategy) -> MergeReceipt:
        backup_key = None
        if strategy.backup_before_merge:
            backup_key = await self._create_backup(duplicate)

        receipt = self.merge_records(
            duplicate.source_record or {"id": duplicate.source_record_id},
            duplicate.candidate_record or {"id": duplicate.duplicate_record_id},
            strategy,
        )
        receipt.duplicate_id = duplicate.id
        receipt.merged_record_id = duplicate.source_record_id
        receipt.removed_record_id = duplicate.duplicate_record_id
        receipt.backup_key = backup_key

        # The stored duplicate is only replaced once the merged copy is saved
        merged = copy.deepcopy(duplicate)
        merged.status = DuplicateStatus.MERGED
        merged.merge_strategy = strategy.name or strategy.id
        merged.metadata["merge_result"] = receipt.to_dict()
        if strategy.preserve_audit_trail:
            merged.append_audit(
                "merged",
                strategy=strategy.id,
                merged_fields=receipt.merged_fields,
                deferred_fields=receipt.deferred_fields,
            )
        merged.touch()
        await self.repository.save(merged)

        log_merge_operation(
            "merged",
            duplicate.id,
            strategy=strategy.id,
            merged_fields=receipt.merged_fields,
            deferred_fields=receipt.deferred_fields,
        )
        return receipt

    async def _create_backup(self, duplicate: DuplicateRecord) -> str:
        timestamp = datetime.now()
        key = make_key(BACKUP_NS, duplicate.id, int(timestamp.timestamp() * 1000))
        await self.store.put(
            key,
            {"duplicate": duplicate.to_dict(), "timestamp": timestamp.isoformat()},
            ttl=self.backup_ttl_seconds,
        )
        return key

    def merge_records(
        self,
        source: Mapping[str, Any],
        target: Mapping[str, Any],
        strategy: DeduplicationStrategy,
    ) -> MergeReceipt:
        """Pure merge of two records under ``strategy``.

        The surviving record starts from the source, with gaps filled from
        the target, then merge rules and automatic conflict policies apply.
        """
        merged: Dict[str, Any] = dict(target)
        merged.update({k: v for k, v in source.items() if v is not None})

        approval_fields = strategy.approval_fields()
        merged_fields: List[str] = []
        deferred_fields: List[str] = []

        for rule in strategy.ordered_rules():
            name = rule.field_name
            if name not in source and name not in target:
                continue
            if name in approval_fields:
                if name not in deferred_fields:
                    deferred_fields.append(name)
                continue
            merged[name] = self._apply_rule(rule, source, target)
            merged_fields.append(name)

        for resolution in strategy.conflict_resolution:
            name = resolution.field_name
            if (
                name in merged_fields
                or name in approval_fields
                or resolution.resolution_type != "automatic"
                or resolution.automatic_rule is None
            ):
                continue
            if source.get(name) is None or target.get(name) is None or source[name] == target[name]:
                continue
            merged[name] = self._apply_automatic(resolution.automatic_rule, name, source, target)
            merged_fields.append(name)

        return MergeReceipt(
            duplicate_id="",
            merged_record_id=str(source.get("id", "")),
            removed_record_id=str(target.get("id", "")),
            merged_fields=merged_fields,
            deferred_fields=deferred_fields,
            strategy=strategy.name or strategy.id,
            merged_record=merged,
        )

    def _apply_rule(self, rule: MergeRule, source: Mapping[str, Any], target: Mapping[str, Any]) -> Any:
        name = rule.field_name
        source_value = source.get(name)
        target_value = target.get(name)

        if rule.strategy == MergeStrategyType.KEEP_SOURCE:
            return source_value if name in source else target_value
        if rule.strategy == MergeStrategyType.KEEP_TARGET:
            return target_value if name in target else source_value
        if rule.strategy in (MergeStrategyType.NEWEST, MergeStrategyType.OLDEST):
            newest = rule.strategy == MergeStrategyType.NEWEST
            preferred, other = self._by_recency(source, target, newest)
            return preferred.get(name) if preferred.get(name) is not None else other.get(name)
        if rule.strategy == MergeStrategyType.LONGEST:
            if source_value is None:
                return target_value
            if target_value is None:
                return source_value
            return target_value if len(str(target_value)) > len(str(source_value)) else source_value
        if rule.strategy == MergeStrategyType.MERGE:
            return union_values(source_value, target_value)

        fn = self._custom_merges.get(rule.custom_function or "")
        if fn is None:
            raise MergeFailure(
                f"Unknown custom merge function: {rule.custom_function}",
                field=name,
            )
        return fn(source_value, target_value, source, target)

    def _apply_automatic(
        self, policy: AutomaticRule, name: str, source: Mapping[str, Any], target: Mapping[str, Any]
    ) -> Any:
        if policy == AutomaticRule.SOURCE_WINS:
            return source[name]
        if policy == AutomaticRule.TARGET_WINS:
            return target[name]
        if policy == AutomaticRule.MOST_RECENT:
            preferred, _ = self._by_recency(source, target, newest=True)
            return preferred[name]
        populated = lambda record: sum(1 for v in record.values() if not _is_empty(v))
        return target[name] if populated(target) > populated(source) else source[name]

    @staticmethod
    def _by_recency(source: Mapping[str, Any], target: Mapping[str, Any], newest: bool) -> tuple:
        source_ts = record_timestamp(source)
        target_ts = record_timestamp(target)
        if source_ts is None and target_ts is None:
            return source, target
        if source_ts is None:
            return target, source
        if target_ts is None:
            return source, target
        target_first = target_ts > source_ts if newest else target_ts < source_ts
        return (target, source) if target_first else (source, target)

    def _emit_error(self, duplicate_id: str, exc: Exception) -> None:
        log_error("Merge failed", duplicate_id=duplicate_id, error=str(exc))
        metrics.incr("merge.errors")
        self.events.publish(EventType.MERGE_ERROR, duplicate_id=duplicate_id, error=str(exc))
