"""Data classes for scoring and merge results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Recommendation(str, Enum):
    IGNORE = "ignore"
    REVIEW = "review"
    AUTO_MERGE = "auto_merge"


@dataclass
class FieldScore:
    """Best similarity achieved for one field.

    Attributes:
        field_name: Record field that was compared.
        similarity: Best similarity across the configured algorithms (0-1).
        weight: Field weight from the matching rule.
        contribution: ``similarity * weight``.
        algorithm: Algorithm that produced ``similarity``.
        details: Raw values and normalization flag, for review screens.
    """

    field_name: str
    similarity: float
    weight: float
    contribution: float
    algorithm: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def score(self) -> float:
        """Similarity on the 0-100 scale."""
        return self.similarity * 100


@dataclass
class DuplicateScore:
    """Outcome of scoring one (source, candidate) pair against a rule.

    Attributes:
        total_score: Weighted confidence on the 0-100 scale.
        field_scores: Fields that met their minimum similarity.
        algorithm_scores: Running total of every similarity each algorithm
            produced, including fields that were later dropped.
        weighted_score: Sum of field contributions.
        confidence: Coarse bucket of ``total_score``.
        recommendation: Decision against the rule's thresholds.
    """

    total_score: float
    field_scores: List[FieldScore]
    algorithm_scores: Dict[str, float]
    weighted_score: float
    confidence: Confidence
    recommendation: Recommendation


@dataclass
class MergeReceipt:
    """What a merge did; stored on the duplicate's metadata."""

    duplicate_id: str
    merged_record_id: str
    removed_record_id: str
    merged_fields: List[str]
    deferred_fields: List[str]
    strategy: str
    merged_record: Dict[str, Any]
    backup_key: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data
