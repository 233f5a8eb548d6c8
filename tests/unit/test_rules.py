"""Unit tests for the matching rule model."""

import pytest
from pydantic import ValidationError

from dedup_engine.matching.rules import (
    ExclusionCondition,
    ExclusionRule,
    FieldMatchingConfig,
    MatchingRule,
    Thresholds,
    default_matching_rules,
)


def _rule(**overrides):
    data = {
        "id": "r1",
        "record_type": "contact",
        "fields": [{"field_name": "email", "weight": 1, "algorithms": ["exact"]}],
        "thresholds": {"auto_merge": 90, "human_review": 70, "ignore": 50},
    }
    data.update(overrides)
    return MatchingRule.model_validate(data)


class TestRuleValidation:
    """Test rule validation before activation."""

    def test_valid_rule(self):
        rule = _rule()
        assert rule.is_active
        assert rule.fields[0].algorithms == ["exact"]

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            Thresholds(auto_merge=60, human_review=70, ignore=50)

    def test_equal_thresholds_allowed(self):
        thresholds = Thresholds(auto_merge=80, human_review=80, ignore=80)
        assert thresholds.ignore == 80

    def test_thresholds_in_range(self):
        with pytest.raises(ValidationError):
            Thresholds(auto_merge=120, human_review=70, ignore=50)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            FieldMatchingConfig(field_name="x", weight=-1, algorithms=["exact"])

    def test_needs_a_field(self):
        with pytest.raises(ValidationError):
            _rule(fields=[])

    def test_needs_positive_total_weight(self):
        with pytest.raises(ValidationError):
            _rule(fields=[{"field_name": "email", "weight": 0, "algorithms": ["exact"]}])

    def test_duplicate_field_names(self):
        field = {"field_name": "email", "weight": 1, "algorithms": ["exact"]}
        with pytest.raises(ValidationError):
            _rule(fields=[field, field])

    def test_algorithms_required(self):
        with pytest.raises(ValidationError):
            FieldMatchingConfig(field_name="x", weight=1, algorithms=[])

    def test_unknown_algorithms_reported(self):
        rule = _rule(fields=[{"field_name": "email", "weight": 1, "algorithms": ["exact", "metaphone"]}])
        assert rule.unknown_algorithms() == ["metaphone"]

    def test_applies_to_universal(self):
        assert _rule(record_type="universal").applies_to("lead")
        assert not _rule().applies_to("lead")


class TestExclusionRules:
    """Test exclusion conditions."""

    @pytest.mark.parametrize(
        "condition,value,record,expected",
        [
            (ExclusionCondition.EQUALS, "Test", {"name": "test"}, True),
            (ExclusionCondition.EQUALS, "test", {"name": "tester"}, False),
            (ExclusionCondition.NOT_EQUALS, "active", {"name": "deleted"}, True),
            (ExclusionCondition.CONTAINS, "test@", {"name": "qa.test@acme.com"}, True),
            (ExclusionCondition.REGEX, r"^noreply", {"name": "noreply@acme.com"}, True),
            (ExclusionCondition.REGEX, r"^noreply", {"name": "john@acme.com"}, False),
        ],
    )
    def test_conditions(self, condition, value, record, expected):
        exclusion = ExclusionRule(id="x", field_name="name", condition=condition, value=value)
        assert exclusion.matches(record) is expected

    def test_missing_field_never_matches(self):
        exclusion = ExclusionRule(id="x", field_name="name", condition=ExclusionCondition.NOT_EQUALS, value="a")
        assert exclusion.matches({}) is False

    def test_inactive(self):
        exclusion = ExclusionRule(
            id="x", field_name="name", condition=ExclusionCondition.EQUALS, value="a", is_active=False
        )
        assert exclusion.matches({"name": "a"}) is False

    def test_custom_expression(self):
        exclusion = ExclusionRule(
            id="x", field_name="status", condition=ExclusionCondition.CUSTOM,
            value="value == 'deleted' or internal == True",
        )
        assert exclusion.matches({"status": "deleted"}) is True
        assert exclusion.matches({"status": "active", "internal": True}) is True
        assert exclusion.matches({"status": "active"}) is False

    def test_custom_expression_error_does_not_exclude(self):
        exclusion = ExclusionRule(
            id="x", field_name="score", condition=ExclusionCondition.CUSTOM, value="value > 5"
        )
        assert exclusion.matches({}) is False

    def test_invalid_regex_rejected(self):
        with pytest.raises(ValidationError):
            ExclusionRule(id="x", field_name="n", condition=ExclusionCondition.REGEX, value="([")

    def test_unsafe_custom_rejected(self):
        with pytest.raises(ValidationError):
            ExclusionRule(
                id="x", field_name="n", condition=ExclusionCondition.CUSTOM, value="__import__('os')"
            )

    def test_pair_excluded_when_either_side_matches(self):
        rule = default_matching_rules()[0]
        source = {"email": "john@acme.com"}
        candidate = {"email": "test@acme.com"}
        assert rule.find_exclusion(source, candidate).id == "exclude_test_contacts"
        assert rule.find_exclusion(source, source) is None


class TestDefaultRules:
    """Test the seeded rules."""

    def test_contact_and_lead(self):
        contact, lead = default_matching_rules()
        assert contact.id == "contact_standard"
        assert (contact.thresholds.auto_merge, contact.thresholds.human_review, contact.thresholds.ignore) == (90, 70, 50)
        assert lead.id == "lead_standard"
        assert lead.record_type == "lead"
        assert lead.thresholds.auto_merge == 85
        assert [f.field_name for f in contact.fields] == ["email", "firstName", "lastName", "phone"]
