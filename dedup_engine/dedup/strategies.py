"""Deduplication strategy model.

A ``DeduplicationStrategy`` says how two records collapse into one: an
ordered list of per-field ``MergeRule``s plus ``ConflictResolution``
policies. Exactly one strategy per record type may be the default; the
``universal`` strategy is the fallback when a type has none.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field, model_validator

UNIVERSAL_RECORD_TYPE = "universal"


class MergeStrategyType(str, Enum):
    KEEP_SOURCE = "keep_source"
    KEEP_TARGET = "keep_target"
    MERGE = "merge"
    NEWEST = "newest"
    OLDEST = "oldest"
    LONGEST = "longest"
    CUSTOM = "custom"


class AutomaticRule(str, Enum):
    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    MOST_RECENT = "most_recent"
    MOST_COMPLETE = "most_complete"


class MergeRule(BaseModel):
    field_name: str = Field(..., min_length=1)
    strategy: MergeStrategyType
    custom_function: Optional[str] = None
    priority: int = 0

    @model_validator(mode="after")
    def check_custom(self) -> "MergeRule":
        if self.strategy == MergeStrategyType.CUSTOM and not self.custom_function:
            raise ValueError(f"merge rule for {self.field_name} needs a custom_function")
        return self


class ConflictResolution(BaseModel):
    field_name: str = Field(..., min_length=1)
    resolution_type: str = Field("automatic", pattern="^(manual|automatic)$")
    automatic_rule: Optional[AutomaticRule] = None
    requires_approval: bool = False


class DeduplicationStrategy(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    record_type: str = Field(..., min_length=1)
    merge_rules: List[MergeRule] = Field(default_factory=list)
    conflict_resolution: List[ConflictResolution] = Field(default_factory=list)
    preserve_audit_trail: bool = True
    backup_before_merge: bool = True
    is_default: bool = False

    def ordered_rules(self) -> List[MergeRule]:
        return sorted(self.merge_rules, key=lambda rule: rule.priority)

    def approval_fields(self) -> Set[str]:
        return {c.field_name for c in self.conflict_resolution if c.requires_approval}


def default_strategies() -> List[DeduplicationStrategy]:
    """Standard contact strategy and the universal fallback."""
    contact = DeduplicationStrategy(
        id="contact_merge_strategy",
        name="Standard Contact Merge",
        record_type="contact",
        merge_rules=[
            MergeRule(field_name="email", strategy=MergeStrategyType.KEEP_SOURCE, priority=1),
            MergeRule(field_name="firstName", strategy=MergeStrategyType.LONGEST, priority=2),
            MergeRule(field_name="lastName", strategy=MergeStrategyType.LONGEST, priority=3),
            MergeRule(field_name="phone", strategy=MergeStrategyType.NEWEST, priority=4),
            MergeRule(field_name="company", strategy=MergeStrategyType.MERGE, priority=5),
        ],
        conflict_resolution=[
            ConflictResolution(field_name="email", resolution_type="manual", requires_approval=True),
            ConflictResolution(
                field_name="phone",
                resolution_type="automatic",
                automatic_rule=AutomaticRule.MOST_RECENT,
            ),
        ],
        is_default=True,
    )
    universal = DeduplicationStrategy(
        id="universal_merge_strategy",
        name="Universal Merge",
        record_type=UNIVERSAL_RECORD_TYPE,
        conflict_resolution=[],
        is_default=True,
    )
    return [contact, universal]
