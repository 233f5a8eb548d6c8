"""Unit tests for weighted duplicate scoring."""

import copy

import pytest

from dedup_engine.dedup.result import Confidence, Recommendation
from dedup_engine.matching.rules import FieldMatchingConfig, MatchingRule, Thresholds, default_matching_rules
from dedup_engine.matching.scoring import calculate_duplicate_score, confidence_bucket, recommend


def _two_field_rule(weight_a, weight_b):
    return MatchingRule(
        id="two_field",
        record_type="person",
        fields=[
            FieldMatchingConfig(field_name="a", weight=weight_a, algorithms=["exact"]),
            FieldMatchingConfig(field_name="b", weight=weight_b, algorithms=["exact"]),
        ],
        thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
    )


class TestThresholds:
    """Test the three-tier decision at its boundaries."""

    def test_exactly_auto_merge_threshold(self, weighted_rule):
        score = calculate_duplicate_score({"a": "x", "b": "1"}, {"a": "x", "b": "2"}, weighted_rule)
        assert score.total_score == 90.0
        assert score.recommendation == Recommendation.AUTO_MERGE

    def test_just_below_auto_merge(self):
        rule = _two_field_rule(8999, 1001)
        score = calculate_duplicate_score({"a": "x", "b": "1"}, {"a": "x", "b": "2"}, rule)
        assert score.total_score == pytest.approx(89.99)
        assert score.recommendation == Recommendation.REVIEW

    def test_ignore_floor(self):
        rule = _two_field_rule(1, 1)
        score = calculate_duplicate_score({"a": "x", "b": "1"}, {"a": "x", "b": "2"}, rule)
        assert score.total_score == 50.0
        assert score.recommendation == Recommendation.IGNORE

    def test_below_floor(self):
        rule = _two_field_rule(1, 3)
        score = calculate_duplicate_score({"a": "x", "b": "1"}, {"a": "x", "b": "2"}, rule)
        assert score.total_score == 25.0

    def test_levenshtein_tie(self, name_rule):
        score = calculate_duplicate_score({"name": "abcdefghij"}, {"name": "abcdefghiz"}, name_rule)
        assert score.total_score == 90.0
        assert score.recommendation == Recommendation.AUTO_MERGE

    def test_override(self, weighted_rule):
        thresholds = weighted_rule.thresholds
        assert recommend(85, thresholds) == Recommendation.REVIEW
        assert recommend(85, thresholds, auto_merge_override=80) == Recommendation.AUTO_MERGE

    @pytest.mark.parametrize(
        "value,expected",
        [(95, Confidence.VERY_HIGH), (90, Confidence.VERY_HIGH), (75, Confidence.HIGH), (50, Confidence.MEDIUM), (10, Confidence.LOW)],
    )
    def test_confidence_bucket(self, value, expected):
        assert confidence_bucket(value) == expected


class TestFieldHandling:
    """Test field inclusion rules."""

    def test_missing_field_ignored(self, weighted_rule):
        score = calculate_duplicate_score({"a": "x"}, {"a": "x", "b": "2"}, weighted_rule)
        assert score.total_score == 100.0
        assert [f.field_name for f in score.field_scores] == ["a"]

    def test_no_comparable_fields(self, weighted_rule):
        score = calculate_duplicate_score({"c": 1}, {"c": 1}, weighted_rule)
        assert score.total_score == 0.0
        assert score.field_scores == []
        assert score.recommendation == Recommendation.IGNORE

    def test_minimum_similarity_drops_field(self):
        rule = MatchingRule(
            id="min",
            record_type="person",
            fields=[
                FieldMatchingConfig(field_name="a", weight=1, algorithms=["exact"]),
                FieldMatchingConfig(field_name="b", weight=1, algorithms=["levenshtein"], minimum_similarity=0.9),
            ],
            thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
        )
        score = calculate_duplicate_score({"a": "x", "b": "abcd"}, {"a": "x", "b": "abzz"}, rule)
        # b drops out entirely instead of dragging the score down
        assert score.total_score == 100.0
        assert "levenshtein" in score.algorithm_scores

    def test_best_algorithm_wins(self):
        rule = MatchingRule(
            id="best",
            record_type="person",
            fields=[FieldMatchingConfig(field_name="n", weight=1, algorithms=["exact", "soundex"])],
            thresholds=Thresholds(auto_merge=90, human_review=70, ignore=50),
        )
        score = calculate_duplicate_score({"n": "Robert"}, {"n": "Rupert"}, rule)
        assert score.field_scores[0].algorithm == "soundex"
        assert score.total_score == 100.0

    def test_score_in_range(self, name_rule):
        for left, right in [("", ""), ("a", ""), ("abc", "xyz"), ("same", "same")]:
            score = calculate_duplicate_score({"name": left}, {"name": right}, name_rule)
            assert 0.0 <= score.total_score <= 100.0


class TestDefaultContactRule:
    """Test scoring with the seeded contact rule."""

    def test_same_person(self, sample_contacts):
        rule = default_matching_rules()[0]
        c1, c2, _ = sample_contacts
        score = calculate_duplicate_score(c1, c2, rule)
        assert score.total_score == pytest.approx(98.5)
        assert score.recommendation == Recommendation.AUTO_MERGE
        by_field = {f.field_name: f for f in score.field_scores}
        assert by_field["phone"].similarity == pytest.approx(0.9)
        assert by_field["firstName"].algorithm == "soundex"

    def test_different_people(self, sample_contacts):
        rule = default_matching_rules()[0]
        c1, _, c3 = sample_contacts
        score = calculate_duplicate_score(c1, c3, rule)
        assert score.total_score < rule.thresholds.ignore

    def test_inputs_untouched_and_repeatable(self, sample_contacts):
        rule = default_matching_rules()[0]
        c1, c2, _ = sample_contacts
        before = copy.deepcopy((c1, c2))
        first = calculate_duplicate_score(c1, c2, rule)
        second = calculate_duplicate_score(c1, c2, rule)
        assert (c1, c2) == before
        assert first.total_score == second.total_score
