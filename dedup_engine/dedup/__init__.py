"""Result types and merge strategies for duplicate resolution.

The detection pipeline and merge engine live in ``dedup_engine.dedup.detector``
and ``dedup_engine.dedup.merge``.
"""

from dedup_engine.dedup.result import Confidence, DuplicateScore, FieldScore, MergeReceipt, Recommendation
from dedup_engine.dedup.strategies import (
    ConflictResolution,
    DeduplicationStrategy,
    MergeRule,
    MergeStrategyType,
    default_strategies,
)

__all__ = [
    "Confidence",
    "DuplicateScore",
    "FieldScore",
    "MergeReceipt",
    "Recommendation",
    "ConflictResolution",
    "DeduplicationStrategy",
    "MergeRule",
    "MergeStrategyType",
    "default_strategies",
]
