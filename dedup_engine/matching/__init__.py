"""Similarity algorithms, matching rules and pair scoring."""

from dedup_engine.matching.algorithms import ALGORITHMS, normalize_value, similarity
from dedup_engine.matching.rules import (
    DataType,
    ExclusionRule,
    FieldMatchingConfig,
    MatchingRule,
    Thresholds,
    default_matching_rules,
)
from dedup_engine.matching.scoring import calculate_duplicate_score, recommend

__all__ = [
    "ALGORITHMS",
    "normalize_value",
    "similarity",
    "DataType",
    "ExclusionRule",
    "FieldMatchingConfig",
    "MatchingRule",
    "Thresholds",
    "default_matching_rules",
    "calculate_duplicate_score",
    "recommend",
]
