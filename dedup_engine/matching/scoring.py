"""Duplicate scoring engine.

Applies a ``MatchingRule`` to a (source, candidate) pair: every configured
field present on both sides is compared with each of its algorithms, the
best similarity is kept, fields under their minimum similarity are dropped,
and the rest are combined into a weighted 0-100 score.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from dedup_engine.dedup.result import Confidence, DuplicateScore, FieldScore, Recommendation
from dedup_engine.errors import RecordFieldMissing
from dedup_engine.matching.algorithms import normalize_value, resolve_algorithm
from dedup_engine.matching.rules import FieldMatchingConfig, MatchingRule, Thresholds
from dedup_engine.utils.logger import log_debug

# Scores are rounded so that threshold ties are not lost to float noise
SCORE_PRECISION = 6


def confidence_bucket(score: float) -> Confidence:
    if score >= 90:
        return Confidence.VERY_HIGH
    if score >= 75:
        return Confidence.HIGH
    if score >= 50:
        return Confidence.MEDIUM
    return Confidence.LOW


def recommend(score: float, thresholds: Thresholds, auto_merge_override: Optional[float] = None) -> Recommendation:
    """Three-tier decision; ties go to the higher tier."""
    auto_merge = thresholds.auto_merge if auto_merge_override is None else auto_merge_override
    if score >= auto_merge:
        return Recommendation.AUTO_MERGE
    if score >= thresholds.human_review:
        return Recommendation.REVIEW
    return Recommendation.IGNORE


def _field_values(
    source: Mapping[str, Any], candidate: Mapping[str, Any], field_name: str
) -> tuple:
    source_value = source.get(field_name)
    candidate_value = candidate.get(field_name)
    if source_value is None or candidate_value is None:
        raise RecordFieldMissing("Field missing on one side", field=field_name)
    return source_value, candidate_value


def score_field(
    config: FieldMatchingConfig,
    source_value: Any,
    candidate_value: Any,
    algorithm_scores: Optional[Dict[str, float]] = None,
) -> tuple:
    """Return ``(best_similarity, best_algorithm)`` for one field."""
    left = normalize_value(source_value, config)
    right = normalize_value(candidate_value, config)

    best_similarity = -1.0
    best_algorithm = config.algorithms[0]
    for name in config.algorithms:
        value = resolve_algorithm(name)(left, right)
        if algorithm_scores is not None:
            algorithm_scores[name] = algorithm_scores.get(name, 0.0) + value
        if value > best_similarity:
            best_similarity = value
            best_algorithm = name
    return max(best_similarity, 0.0), best_algorithm


def calculate_duplicate_score(
    source: Mapping[str, Any],
    candidate: Mapping[str, Any],
    rule: MatchingRule,
    auto_merge_override: Optional[float] = None,
) -> DuplicateScore:
    """Score a pair against ``rule``. Pure; neither record is modified."""
    field_scores: List[FieldScore] = []
    algorithm_scores: Dict[str, float] = {}
    total_contribution = 0.0
    total_weight = 0.0

    for config in rule.fields:
        try:
            source_value, candidate_value = _field_values(source, candidate, config.field_name)
        except RecordFieldMissing:
            continue

        similarity, algorithm = score_field(config, source_value, candidate_value, algorithm_scores)
        if similarity < config.minimum_similarity:
            log_debug(
                "Field below minimum similarity",
                field=config.field_name,
                similarity=round(similarity, 4),
                minimum=config.minimum_similarity,
            )
            continue

        contribution = similarity * config.weight
        field_scores.append(
            FieldScore(
                field_name=config.field_name,
                similarity=similarity,
                weight=config.weight,
                contribution=contribution,
                algorithm=algorithm,
                details={
                    "source_value": source_value,
                    "candidate_value": candidate_value,
                    "normalized": config.normalize_before_match,
                },
            )
        )
        total_contribution += contribution
        total_weight += config.weight

    total_score = (total_contribution / total_weight) * 100 if total_weight > 0 else 0.0
    total_score = round(total_score, SCORE_PRECISION)

    return DuplicateScore(
        total_score=total_score,
        field_scores=field_scores,
        algorithm_scores=algorithm_scores,
        weighted_score=total_contribution,
        confidence=confidence_bucket(total_score),
        recommendation=recommend(total_score, rule.thresholds, auto_merge_override),
    )
