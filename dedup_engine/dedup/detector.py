"""Detection pipeline.

For an incoming record: pick the matching rule, fetch candidates, drop
excluded pairs, score the rest and persist every pair that clears the
rule's ignore floor as a pending ``DuplicateRecord``. Optionally merges
auto-merge pairs straight away.
"""

from __future__ import annotations

import copy
import time
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from dedup_engine import metrics
from dedup_engine.dedup.result import DuplicateScore, Recommendation
from dedup_engine.errors import DedupEngineError
from dedup_engine.events import EventBus, EventType
from dedup_engine.matching.algorithms import ALGORITHM_KINDS, canonical_name
from dedup_engine.matching.rules import MatchingRule
from dedup_engine.matching.scoring import calculate_duplicate_score
from dedup_engine.models import (
    DetectionMethod,
    DuplicateRecord,
    MatchedField,
    generate_id,
)
from dedup_engine.utils.logger import log_debug, log_duplicate_detection, log_error, log_warning

SYSTEM_FIELDS = ("_source_system", "source_system", "sourceSystem")


@dataclass
class DetectionOptions:
    """Per-call detection switches.

    Attributes:
        rule_id: Use this rule instead of the type's first active rule.
        real_time: Publish ``duplicate_detected`` for every stored duplicate.
        auto_merge: Merge pairs whose recommendation is ``auto_merge``.
        auto_merge_threshold: Replace the rule's auto-merge threshold.
    """

    rule_id: Optional[str] = None
    real_time: bool = False
    auto_merge: bool = False
    auto_merge_threshold: Optional[float] = None


@dataclass
class DetectionSample:
    at: datetime
    duration_ms: float
    duplicates_found: int


def detection_method(score: DuplicateScore) -> DetectionMethod:
    """Tag a pair by the family of algorithms that won its fields."""
    kinds = {ALGORITHM_KINDS.get(canonical_name(f.algorithm), "fuzzy") for f in score.field_scores}
    if len(kinds) == 1:
        return DetectionMethod(kinds.pop())
    return DetectionMethod.HYBRID


def candidate_system(candidate: Mapping[str, Any], default: str) -> str:
    for name in SYSTEM_FIELDS:
        if candidate.get(name):
            return str(candidate[name])
    return default


class DetectionPipeline:
    """Runs duplicate detection for single records.

    Args:
        registry: ``RuleRegistry`` for rule lookup.
        repository: ``DuplicateRepository`` where results are stored.
        merge_engine: ``MergeStrategyEngine`` used for auto-merge.
        record_source: ``RecordSource`` supplying candidates.
        events: Event bus.
        history_size: Detection samples kept for latency metrics.
    """

    def __init__(self, registry, repository, merge_engine, record_source, events: EventBus, history_size: int = 10000):
        self.registry = registry
        self.repository = repository
        self.merge_engine = merge_engine
        self.record_source = record_source
        self.events = events
        self.samples: Deque[DetectionSample] = deque(maxlen=history_size)

    async def detect(
        self,
        record: Mapping[str, Any],
        record_type: str,
        source_system: str,
        options: Optional[DetectionOptions] = None,
    ) -> List[DuplicateRecord]:
        """Detect duplicates of ``record``.

        Returns the stored duplicates, in candidate order.

        Raises:
            RuleNotFound: No rule for the record type.
            PersistenceFailure: A duplicate could not be stored.
        """
        options = options or DetectionOptions()
        started = time.perf_counter()
        try:
            rule = await self.registry.find_active_rule(record_type, options.rule_id)
            candidates = await self.record_source.get_candidate_records(record, record_type, source_system)
            log_debug(
                "Scoring candidates",
                record_id=record.get("id"),
                rule_id=rule.id,
                candidate_count=len(candidates),
            )

            scored: List[Tuple[Mapping[str, Any], DuplicateScore]] = []
            for candidate in candidates:
                exclusion = rule.find_exclusion(record, candidate)
                if exclusion is not None:
                    log_debug(
                        "Pair excluded",
                        exclusion_id=exclusion.id,
                        candidate_id=candidate.get("id"),
                    )
                    continue
                score = calculate_duplicate_score(record, candidate, rule, options.auto_merge_threshold)
                if score.total_score >= rule.thresholds.ignore:
                    scored.append((candidate, score))

            elapsed_ms = (time.perf_counter() - started) * 1000
            duplicates = []
            for candidate, score in scored:
                duplicate = self._build_duplicate(record, candidate, record_type, source_system, rule, score, elapsed_ms)
                await self.repository.save(duplicate)
                metrics.incr("duplicates.detected", record_type=record_type)
                log_duplicate_detection(
                    score.total_score,
                    duplicate.id,
                    record_type=record_type,
                    recommendation=score.recommendation.value,
                )

                if options.auto_merge and score.recommendation == Recommendation.AUTO_MERGE:
                    duplicate = await self._auto_merge(duplicate)

                if options.real_time:
                    self.events.publish(
                        EventType.DUPLICATE_DETECTED,
                        duplicate_id=duplicate.id,
                        record_type=record_type,
                        confidence_score=duplicate.confidence_score,
                        recommendation=score.recommendation.value,
                        status=duplicate.status.value,
                    )
                duplicates.append(duplicate)
        except Exception as exc:
            log_error(
                "Duplicate detection failed",
                record_id=record.get("id"),
                record_type=record_type,
                error=str(exc),
            )
            self.events.publish(
                EventType.DETECTION_ERROR,
                record=dict(record),
                record_type=record_type,
                source_system=source_system,
                error=str(exc),
            )
            raise

        self.samples.append(
            DetectionSample(
                at=datetime.now(),
                duration_ms=(time.perf_counter() - started) * 1000,
                duplicates_found=len(duplicates),
            )
        )
        return duplicates

    def _build_duplicate(
        self,
        record: Mapping[str, Any],
        candidate: Mapping[str, Any],
        record_type: str,
        source_system: str,
        rule: MatchingRule,
        score: DuplicateScore,
        elapsed_ms: float,
    ) -> DuplicateRecord:
        matched = [
            MatchedField(
                field_name=f.field_name,
                source_value=f.details.get("source_value"),
                duplicate_value=f.details.get("candidate_value"),
                similarity=f.similarity,
                algorithm=f.algorithm,
                weight=f.weight,
                is_exact_match=f.similarity >= 1.0,
            )
            for f in score.field_scores
        ]
        return DuplicateRecord(
            id=generate_id("dup"),
            source_record_id=str(record.get("id", "")),
            duplicate_record_id=str(candidate.get("id", "")),
            record_type=record_type,
            source_system=source_system,
            duplicate_system=candidate_system(candidate, source_system),
            confidence_score=score.total_score,
            matched_fields=matched,
            detection_method=detection_method(score),
            metadata={
                "rule_id": rule.id,
                "recommendation": score.recommendation.value,
                "confidence": score.confidence.value,
                "algorithm_scores": dict(score.algorithm_scores),
                "detection_time_ms": round(elapsed_ms, 3),
            },
            source_record=copy.deepcopy(dict(record)),
            candidate_record=copy.deepcopy(dict(candidate)),
        )

    async def _auto_merge(self, duplicate: DuplicateRecord) -> DuplicateRecord:
        try:
            receipt = await self.merge_engine.merge_duplicate(duplicate.id)
        except DedupEngineError as exc:
            log_warning("Auto-merge failed, duplicate left pending", duplicate_id=duplicate.id, error=str(exc))
            return await self.repository.get(duplicate.id) or duplicate
        if receipt is None:
            log_debug("Auto-merge skipped", duplicate_id=duplicate.id)
        return await self.repository.get(duplicate.id) or duplicate

    def stats_for(self, day: date) -> Dict[str, Any]:
        """Detection counts and mean latency for one calendar day."""
        samples = [s for s in self.samples if s.at.date() == day]
        return {
            "records_processed": len(samples),
            "duplicates_found": sum(s.duplicates_found for s in samples),
            "average_detection_time": (
                sum(s.duration_ms for s in samples) / len(samples) if samples else 0.0
            ),
        }
