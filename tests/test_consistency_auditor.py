import pytest
from unittest.mock import Mock

from autocorrector.agents.consistency_auditor import (
    NO_PRIOR_CONTEXT,
    CharacterReport,
    ConsistencyAuditor,
    EntityReport,
    EntityState,
    LocationReport,
    TimelineEvent,
    build_summary,
    compute_consistency_score
)
from autocorrector.agents.mock_agent import MockInferenceService
from autocorrector.core.errors import ExternalCallError
from autocorrector.core.schema import Chapter, Violation

from conftest import audit_payload, make_chapters, violation


def report(characters=(), locations=(), timeline=()):
    return EntityReport(characters=list(characters), locations=list(locations), timeline=list(timeline))


class TestEntityMerge:
    def test_new_character_defaults_to_alive(self):
        state = EntityState().merge(report([CharacterReport("Marta", first_appearance=1, last_appearance=2)]))
        assert state.characters["Marta"].status == "alive"
        assert state.characters["Marta"].first_appearance == 1

    def test_merge_is_idempotent_for_characters_and_locations(self):
        batch = report(
            [CharacterReport("Marta", "alive", 1, 3, ["broken arm"])],
            [LocationReport("Harbour", 1, ["foggy"])]
        )
        once = EntityState().merge(batch).to_lists()
        twice = EntityState().merge(batch).merge(batch).to_lists()

        assert once["characters"] == twice["characters"]
        assert once["locations"] == twice["locations"]

    def test_dead_is_sticky(self):
        state = EntityState()
        state.merge(report([CharacterReport("Tomas", "dead", 1, 4)]))
        state.merge(report([CharacterReport("Tomas", "alive", 5, 6)]))
        state.merge(report([CharacterReport("Tomas", "unknown", 7, 7)]))

        assert state.characters["Tomas"].status == "dead"
        assert state.characters["Tomas"].last_appearance == 7

    def test_last_appearance_takes_maximum(self):
        state = EntityState()
        state.merge(report([CharacterReport("Marta", "alive", 1, 9)]))
        state.merge(report([CharacterReport("Marta", "alive", 2, 4)]))
        assert state.characters["Marta"].last_appearance == 9
        assert state.characters["Marta"].first_appearance == 1

    def test_injuries_are_an_ordered_union(self):
        state = EntityState()
        state.merge(report([CharacterReport("Marta", injuries=["broken arm", "cut lip"])]))
        state.merge(report([CharacterReport("Marta", injuries=["cut lip", "burned hand"])]))
        assert state.characters["Marta"].injuries == ["broken arm", "cut lip", "burned hand"]

    def test_first_location_mention_wins(self):
        state = EntityState()
        state.merge(report(locations=[LocationReport("Harbour", 2, ["foggy"])]))
        state.merge(report(locations=[LocationReport("Harbour", 5, ["sunny"])]))
        assert state.locations["Harbour"].first_mention == 2
        assert state.locations["Harbour"].characteristics == ["foggy"]

    def test_timeline_appended_in_batch_order(self):
        state = EntityState()
        state.merge(report(timeline=[TimelineEvent("storm", 1, "high")]))
        state.merge(report(timeline=[TimelineEvent("shipwreck", 3, "high"), TimelineEvent("funeral", 4, "medium")]))
        assert [e.event for e in state.timeline] == ["storm", "shipwreck", "funeral"]

    def test_summary_lists_status_and_injuries(self):
        state = EntityState().merge(report(
            [CharacterReport("Marta", "alive", injuries=["broken arm"]), CharacterReport("Tomas", "dead")],
            [LocationReport("Harbour")]
        ))
        summary = state.summarize()
        assert "- Marta: alive (injuries: broken arm)" in summary
        assert "- Tomas: dead" in summary
        assert "- Harbour" in summary

    def test_entity_report_drops_unusable_entries(self):
        parsed = EntityReport.from_payload({
            "characters": [{"name": "Marta", "status": "DEAD"}, {"status": "alive"}, "garbage"],
            "locations": "not a list",
            "timeline": [{"event": "storm", "chapter": "2", "importance": "urgent"}]
        })
        assert [c.name for c in parsed.characters] == ["Marta"]
        assert parsed.characters[0].status == "dead"
        assert parsed.locations == []
        assert parsed.timeline[0].chapter == 2
        assert parsed.timeline[0].importance == "medium"


class TestScoring:
    def test_weighted_score(self):
        assert compute_consistency_score(critical=2, major=1, minor=1) == 4.5

    def test_score_floor_is_one(self):
        assert compute_consistency_score(critical=6, major=3, minor=0) == 1.0

    def test_clean_score(self):
        assert compute_consistency_score(0, 0, 0) == 10.0

    def test_summary_breakdown(self):
        violations = [
            Violation(1, "character_resurrection", "critical", "Tomas is back"),
            Violation(2, "ignored_injury", "major", "arm healed"),
            Violation(3, "ignored_injury", "minor", "limp gone")
        ]
        summary = build_summary(violations)
        assert "3 continuity violations" in summary
        assert "1 critical, 1 major, 1 minor" in summary
        assert "ignored_injury: 2" in summary
        assert "URGENT" in summary

    def test_summary_without_violations(self):
        assert "No continuity violations" in build_summary([])


class TestConsistencyAuditor:
    def test_batches_are_sequential_and_carry_context(self):
        inference = MockInferenceService(responses=[
            audit_payload(characters=[{"name": "Marta", "status": "alive", "injuries": ["broken arm"],
                                       "firstAppearance": 1, "lastAppearance": 8}]),
            audit_payload([violation(9, "major")])
        ])
        auditor = ConsistencyAuditor(inference, batch_size=8)

        result = auditor.audit(make_chapters(10), "thriller", "en")

        assert inference.call_count == 2
        first, second = inference.prompts
        assert NO_PRIOR_CONTEXT in first
        assert "BATCH: 1/2" in first
        assert "- Marta: alive (injuries: broken arm)" in second
        assert "=== CHAPTER 9: Chapter 9 ===" in second
        assert "=== CHAPTER 8:" not in second
        assert result.total_issues == 1
        assert result.entities["characters"][0]["name"] == "Marta"

    def test_chapters_are_ordered_and_truncated(self):
        inference = MockInferenceService(responses=[audit_payload()])
        chapters = [Chapter(2, "Two", "b" * 50), Chapter(1, "One", "a" * 50)]
        ConsistencyAuditor(inference, batch_size=8, chapter_char_cap=20).audit(chapters, "drama", "es")

        prompt = inference.prompts[0]
        assert prompt.index("CHAPTER 1") < prompt.index("CHAPTER 2")
        assert "a" * 20 in prompt
        assert "a" * 21 not in prompt
        assert "LANGUAGE: es" in prompt

    def test_malformed_batch_is_skipped(self):
        inference = MockInferenceService(responses=[
            "I could not find any problems, sorry!",
            audit_payload([violation(3, "critical", "CHARACTER_RESURRECTION")])
        ])
        logger = Mock()
        auditor = ConsistencyAuditor(inference, logger=logger, batch_size=2)

        result = auditor.audit(make_chapters(4), "thriller", "en")

        assert result.failed_batches == 1
        assert [v.chapter_number for v in result.violations] == [3]
        logger.log_audit_batch.assert_any_call(1, 2, "malformed", {"error": "no JSON object in model response"})

    def test_invalid_violation_entries_are_dropped(self):
        inference = MockInferenceService(responses=[audit_payload([
            violation(1, "critical", "CHARACTER_RESURRECTION"),
            violation(1, "catastrophic"),
            violation(1, "minor", "SPELLING")
        ])])
        result = ConsistencyAuditor(inference).audit(make_chapters(1), "thriller", "en")

        assert len(result.violations) == 1
        assert result.violations[0].type == "character_resurrection"
        assert result.critical_issues == 1

    def test_score_and_token_usage(self):
        inference = MockInferenceService(responses=[audit_payload([
            violation(1, "critical"), violation(1, "critical"), violation(2, "major"), violation(3, "minor")
        ])])
        result = ConsistencyAuditor(inference).audit(make_chapters(3), "thriller", "en")

        assert result.consistency_score == 4.5
        assert result.overall_score == 45.0
        assert result.token_usage.input_tokens > 0
        assert result.token_usage.output_tokens > 0

    def test_inference_failure_propagates(self):
        inference = MockInferenceService(responses=[ExternalCallError("model offline")])
        with pytest.raises(ExternalCallError):
            ConsistencyAuditor(inference).audit(make_chapters(2), "thriller", "en")

    def test_rejects_zero_batch_size(self):
        with pytest.raises(ValueError):
            ConsistencyAuditor(MockInferenceService(), batch_size=0)


def test_mock_backend_payload_audits_clean():
    result = ConsistencyAuditor(MockInferenceService(), batch_size=2).audit(make_chapters(3), "mystery", "en")

    assert result.failed_batches == 0
    assert result.violations == []
    assert result.consistency_score == 10.0
    assert result.entities == {"characters": [], "locations": [], "timeline": []}
