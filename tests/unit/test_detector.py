"""Unit tests for the detection pipeline."""

from datetime import date
from unittest.mock import AsyncMock

import pytest

from dedup_engine.dedup.detector import DetectionOptions, DetectionPipeline, detection_method
from dedup_engine.dedup.result import Confidence, DuplicateScore, FieldScore, Recommendation
from dedup_engine.errors import RuleNotFound
from dedup_engine.events import EventType
from dedup_engine.models import DetectionMethod, DuplicateStatus


def _score(*algorithms):
    return DuplicateScore(
        total_score=80,
        field_scores=[FieldScore(f"f{i}", 1.0, 1.0, 1.0, name) for i, name in enumerate(algorithms)],
        algorithm_scores={},
        weighted_score=1.0,
        confidence=Confidence.HIGH,
        recommendation=Recommendation.REVIEW,
    )


class TestDetectionMethod:
    """Test tagging a pair by its winning algorithms."""

    def test_single_family(self):
        assert detection_method(_score("exact", "exact")) == DetectionMethod.EXACT
        assert detection_method(_score("soundex")) == DetectionMethod.PHONETIC
        assert detection_method(_score("levenshtein", "jaro_winkler")) == DetectionMethod.FUZZY

    def test_mixed_is_hybrid(self):
        assert detection_method(_score("exact", "soundex")) == DetectionMethod.HYBRID
        assert detection_method(_score()) == DetectionMethod.HYBRID


class TestDetect:
    """Test detection of a single record."""

    @pytest.mark.asyncio
    async def test_detects_and_persists(self, engine, sample_contacts):
        duplicates = await engine.detect_duplicates(sample_contacts[0], "contact", "hubspot")

        assert len(duplicates) == 1
        duplicate = duplicates[0]
        assert duplicate.source_record_id == "c1"
        assert duplicate.duplicate_record_id == "c2"
        assert duplicate.duplicate_system == "hubspot"
        assert duplicate.status == DuplicateStatus.PENDING
        assert duplicate.confidence_score == pytest.approx(98.5)
        assert duplicate.metadata["rule_id"] == "contact_standard"
        assert duplicate.metadata["recommendation"] == "auto_merge"
        assert duplicate.detection_method == DetectionMethod.HYBRID
        assert {f.field_name for f in duplicate.matched_fields} == {"email", "firstName", "lastName", "phone"}

        stored = await engine.get_duplicate(duplicate.id)
        assert stored is not None
        assert stored.source_record["firstName"] == "John"

    @pytest.mark.asyncio
    async def test_snapshot_is_independent(self, engine, sample_contacts):
        record = dict(sample_contacts[0])
        duplicates = await engine.detect_duplicates(record, "contact", "hubspot")
        record["firstName"] = "Changed"
        assert duplicates[0].source_record["firstName"] == "John"

    @pytest.mark.asyncio
    async def test_repeat_detection_scores_identically(self, engine, sample_contacts):
        first = await engine.detect_duplicates(sample_contacts[0], "contact", "hubspot")
        second = await engine.detect_duplicates(sample_contacts[0], "contact", "hubspot")

        assert [d.confidence_score for d in first] == [d.confidence_score for d in second]
        assert [
            sorted((f.field_name, f.similarity) for f in d.matched_fields) for d in first
        ] == [
            sorted((f.field_name, f.similarity) for f in d.matched_fields) for d in second
        ]

    @pytest.mark.asyncio
    async def test_excluded_pairs_not_stored(self, engine, record_source):
        await record_source.add_record(
            "contact", {"id": "t1", "email": "qa.test@acme.com", "firstName": "John", "lastName": "Smith"}, "hubspot"
        )
        probe = {"id": "t2", "email": "qa.test@acme.com", "firstName": "John", "lastName": "Smith"}
        duplicates = await engine.detect_duplicates(probe, "contact", "salesforce")
        assert all(d.duplicate_record_id != "t1" for d in duplicates)

    @pytest.mark.asyncio
    async def test_no_candidates(self, engine):
        duplicates = await engine.detect_duplicates({"id": "l1", "email": "a@b.com"}, "lead", "hubspot")
        assert duplicates == []

    @pytest.mark.asyncio
    async def test_unknown_record_type(self, engine):
        with pytest.raises(RuleNotFound):
            await engine.detect_duplicates({"id": "x"}, "invoice", "hubspot")

    @pytest.mark.asyncio
    async def test_auto_merge(self, engine, sample_contacts):
        subscription = engine.events.subscribe([EventType.DUPLICATE_MERGED])
        duplicates = await engine.detect_duplicates(
            sample_contacts[0], "contact", "hubspot", DetectionOptions(auto_merge=True)
        )
        assert duplicates[0].status == DuplicateStatus.MERGED
        assert duplicates[0].metadata["merge_result"]["merged_fields"] == ["firstName", "lastName", "phone"]
        assert subscription.get_nowait().payload["duplicate_id"] == duplicates[0].id

    @pytest.mark.asyncio
    async def test_auto_merge_with_epoch_millis_timestamps(self, engine, record_source, sample_contacts):
        source, candidate = (dict(c) for c in sample_contacts[:2])
        source["updated_at"] = 1735725600000
        candidate["updated_at"] = 1740823200000
        await record_source.add_record("contact", candidate, "hubspot")

        duplicates = await engine.detect_duplicates(
            source, "contact", "hubspot", DetectionOptions(auto_merge=True, auto_merge_threshold=50)
        )

        merged = [d for d in duplicates if d.duplicate_record_id == "c2"][0]
        assert merged.status == DuplicateStatus.MERGED
        assert merged.metadata["merge_result"]["merged_record"]["phone"] == "555-123-4567"

    @pytest.mark.asyncio
    async def test_auto_merge_threshold_override(self, engine, sample_contacts):
        duplicates = await engine.detect_duplicates(
            sample_contacts[0],
            "contact",
            "hubspot",
            DetectionOptions(auto_merge=True, auto_merge_threshold=99),
        )
        assert duplicates[0].metadata["recommendation"] == "review"
        assert duplicates[0].status == DuplicateStatus.PENDING

    @pytest.mark.asyncio
    async def test_real_time_events(self, engine, sample_contacts):
        subscription = engine.events.subscribe([EventType.DUPLICATE_DETECTED])
        await engine.detect_duplicates(sample_contacts[0], "contact", "hubspot")
        assert subscription.drain() == []

        await engine.detect_duplicates(
            sample_contacts[0], "contact", "hubspot", DetectionOptions(real_time=True)
        )
        event = subscription.get_nowait()
        assert event.payload["record_type"] == "contact"
        assert event.payload["recommendation"] == "auto_merge"

    @pytest.mark.asyncio
    async def test_explicit_rule(self, engine, sample_contacts, name_rule):
        rule = name_rule.model_copy(update={"record_type": "contact", "is_active": False})
        rule.fields[0].field_name = "lastName"
        await engine.save_matching_rule(rule)
        duplicates = await engine.detect_duplicates(
            sample_contacts[0], "contact", "hubspot", DetectionOptions(rule_id="name_rule")
        )
        assert [d.metadata["rule_id"] for d in duplicates] == ["name_rule"]

    @pytest.mark.asyncio
    async def test_stats(self, engine, sample_contacts):
        await engine.detect_duplicates(sample_contacts[0], "contact", "hubspot")
        await engine.detect_duplicates(sample_contacts[2], "contact", "hubspot")
        stats = engine.pipeline.stats_for(date.today())
        assert stats["records_processed"] == 2
        assert stats["duplicates_found"] == 1
        assert stats["average_detection_time"] >= 0


class TestDetectionErrors:
    """Test error propagation."""

    @pytest.mark.asyncio
    async def test_source_failure_publishes_event(self, engine, sample_contacts):
        source = AsyncMock()
        source.get_candidate_records.side_effect = ConnectionError("crm unavailable")
        pipeline = DetectionPipeline(engine.registry, engine.repository, engine.merge_engine, source, engine.events)
        subscription = engine.events.subscribe([EventType.DETECTION_ERROR])

        with pytest.raises(ConnectionError):
            await pipeline.detect(sample_contacts[0], "contact", "hubspot")

        event = subscription.get_nowait()
        assert event.payload["record"]["id"] == "c1"
        assert event.payload["error"] == "crm unavailable"
        assert await engine.list_duplicates() == []

    @pytest.mark.asyncio
    async def test_failed_auto_merge_leaves_pending(self, engine, sample_contacts):
        await engine.delete_strategy("contact_merge_strategy")
        await engine.delete_strategy("universal_merge_strategy")
        duplicates = await engine.detect_duplicates(
            sample_contacts[0], "contact", "hubspot", DetectionOptions(auto_merge=True)
        )
        assert duplicates[0].status == DuplicateStatus.PENDING
