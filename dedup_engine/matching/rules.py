"""Matching rule model.

A ``MatchingRule`` declares, per record type, which fields to compare, with
which algorithms and weights, the three decision thresholds, and exclusion
rules that veto otherwise-matching pairs. Rules are validated before they
can be activated and are read-only while scoring.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from dedup_engine.errors import ExpressionError
from dedup_engine.matching.algorithms import ALGORITHMS, canonical_name
from dedup_engine.matching.expressions import compile_expression
from dedup_engine.utils.logger import log_warning

UNIVERSAL_RECORD_TYPE = "universal"


class DataType(str, Enum):
    STRING = "string"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


class FieldMatchingConfig(BaseModel):
    """How one field is compared and how much it counts."""

    field_name: str = Field(..., min_length=1)
    data_type: DataType = DataType.STRING
    weight: float = Field(..., ge=0.0, description="Importance weight for this field")
    algorithms: List[str] = Field(..., min_length=1, description="Algorithms to try, best wins")
    normalize_before_match: bool = True
    case_sensitive: bool = False
    ignore_special_chars: bool = False
    minimum_similarity: float = Field(0.0, ge=0.0, le=1.0)

    @field_validator("algorithms", mode="after")
    @classmethod
    def canonicalize_algorithms(cls, v: List[str]) -> List[str]:
        return [canonical_name(name) for name in v]


class Thresholds(BaseModel):
    """Decision thresholds on the 0-100 confidence scale."""

    auto_merge: float = Field(..., ge=0.0, le=100.0)
    human_review: float = Field(..., ge=0.0, le=100.0)
    ignore: float = Field(..., ge=0.0, le=100.0)

    @model_validator(mode="after")
    def check_order(self) -> "Thresholds":
        if not (self.auto_merge >= self.human_review >= self.ignore):
            raise ValueError("thresholds must satisfy auto_merge >= human_review >= ignore")
        return self


class AlgorithmDescriptor(BaseModel):
    name: str
    kind: str = Field("fuzzy", pattern="^(exact|fuzzy|phonetic|semantic)$")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    applicable_data_types: List[str] = Field(default_factory=list)
    is_default: bool = False


class ExclusionCondition(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    REGEX = "regex"
    CUSTOM = "custom"


class ExclusionRule(BaseModel):
    """Removes a pair from consideration when either record satisfies it.

    ``custom`` conditions hold a sandboxed expression evaluated with the
    record's fields as names plus ``value`` bound to ``field_name``.
    """

    id: str
    field_name: str
    condition: ExclusionCondition
    value: Any = None
    description: str = ""
    is_active: bool = True

    @model_validator(mode="after")
    def check_value(self) -> "ExclusionRule":
        if self.condition == ExclusionCondition.REGEX:
            try:
                re.compile(str(self.value))
            except re.error as exc:
                raise ValueError(f"invalid regex for exclusion {self.id}: {exc}")
        elif self.condition == ExclusionCondition.CUSTOM:
            try:
                compile_expression(str(self.value or ""))
            except ExpressionError as exc:
                raise ValueError(f"invalid expression for exclusion {self.id}: {exc}")
        return self

    def matches(self, record: Mapping[str, Any]) -> bool:
        if not self.is_active:
            return False

        field_value = record.get(self.field_name)
        if self.condition == ExclusionCondition.CUSTOM:
            try:
                return compile_expression(str(self.value)).evaluate({**record, "value": field_value})
            except ExpressionError as exc:
                log_warning("Exclusion expression failed, not excluding", exclusion_id=self.id, error=str(exc))
                return False
        if field_value is None:
            return False

        text = str(field_value).lower()
        expected = "" if self.value is None else str(self.value).lower()
        if self.condition == ExclusionCondition.EQUALS:
            return text == expected
        if self.condition == ExclusionCondition.NOT_EQUALS:
            return text != expected
        if self.condition == ExclusionCondition.CONTAINS:
            return expected in text
        return re.search(str(self.value), str(field_value)) is not None


class MatchingRule(BaseModel):
    """Declarative duplicate-matching configuration for one record type."""

    id: str = Field(..., min_length=1)
    name: str = ""
    record_type: str = Field(..., min_length=1)
    is_active: bool = True
    fields: List[FieldMatchingConfig] = Field(..., min_length=1)
    thresholds: Thresholds
    algorithms: List[AlgorithmDescriptor] = Field(default_factory=list)
    exclude_rules: List[ExclusionRule] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def check_fields(self) -> "MatchingRule":
        if sum(f.weight for f in self.fields) <= 0:
            raise ValueError("at least one field must carry a positive weight")
        names = [f.field_name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError("field names must be unique within a rule")
        return self

    def applies_to(self, record_type: str) -> bool:
        return self.record_type in (record_type, UNIVERSAL_RECORD_TYPE)

    def find_exclusion(
        self, source: Mapping[str, Any], candidate: Mapping[str, Any]
    ) -> Optional[ExclusionRule]:
        for exclusion in self.exclude_rules:
            if exclusion.matches(source) or exclusion.matches(candidate):
                return exclusion
        return None

    def unknown_algorithms(self) -> List[str]:
        return sorted(
            {name for f in self.fields for name in f.algorithms if name not in ALGORITHMS}
        )


def _contact_fields() -> List[FieldMatchingConfig]:
    name_algorithms = ["exact", "levenshtein", "jaro_winkler", "soundex"]
    return [
        FieldMatchingConfig(
            field_name="email", data_type=DataType.EMAIL, weight=40,
            algorithms=["exact", "email"], minimum_similarity=0.9,
        ),
        FieldMatchingConfig(
            field_name="firstName", weight=20, algorithms=name_algorithms,
            ignore_special_chars=True, minimum_similarity=0.8,
        ),
        FieldMatchingConfig(
            field_name="lastName", weight=25, algorithms=name_algorithms,
            ignore_special_chars=True, minimum_similarity=0.8,
        ),
        FieldMatchingConfig(
            field_name="phone", data_type=DataType.PHONE, weight=15,
            algorithms=["exact", "phone"], ignore_special_chars=True,
            minimum_similarity=0.9,
        ),
    ]


def default_matching_rules() -> List[MatchingRule]:
    """Standard contact and lead rules seeded into an empty store."""
    algorithms = [
        AlgorithmDescriptor(
            name="exact", kind="exact", is_default=True,
            applicable_data_types=["string", "email", "phone", "number"],
        ),
        AlgorithmDescriptor(
            name="levenshtein", kind="fuzzy", parameters={"maxDistance": 3},
            applicable_data_types=["string"],
        ),
        AlgorithmDescriptor(
            name="jaro_winkler", kind="fuzzy", parameters={"threshold": 0.7},
            applicable_data_types=["string"],
        ),
    ]
    exclusions = [
        ExclusionRule(
            id="exclude_test_contacts", field_name="email",
            condition=ExclusionCondition.CONTAINS, value="test@",
            description="Exclude test contacts",
        )
    ]
    contact = MatchingRule(
        id="contact_standard",
        name="Standard Contact Matching",
        record_type="contact",
        fields=_contact_fields(),
        thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
        algorithms=algorithms,
        exclude_rules=exclusions,
        metadata={"description": "Standard matching rules for contact records", "version": "1.0"},
    )
    # Leads are noisier, so the thresholds sit a little lower
    lead = contact.model_copy(
        update={
            "id": "lead_standard",
            "name": "Standard Lead Matching",
            "record_type": "lead",
            "fields": _contact_fields(),
            "thresholds": Thresholds(auto_merge=85, human_review=65, ignore=45),
        },
        deep=True,
    )
    return [contact, lead]
