"""Tests for prompt building, structuring and match scoring."""
from __future__ import annotations

import json

import pytest

from sanctuary.errors import ParseError, UpstreamUnavailableError
from sanctuary.prompts import (
    ScoringCandidate,
    build_batch_matching_prompt,
    build_bottleneck_structuring_prompt,
    build_experience_structuring_prompt,
    build_matching_prompt,
)
from sanctuary.schemas import (
    BottleneckInput,
    ExperienceInput,
    MatchReasoning,
    StructuredBottleneck,
    StructuredExperience,
)
from sanctuary.scorer import match_batch, match_single, parse_batch_results
from sanctuary.structurer import structure_bottleneck, structure_experience
from sanctuary.tests.fakes import (
    FakeLLM,
    bottleneck_payload,
    candidates_in_prompt,
    experience_payload,
    match_item,
    match_score_payload,
    reasoning_payload,
)


@pytest.fixture()
def bottleneck() -> StructuredBottleneck:
    return StructuredBottleneck.model_validate(bottleneck_payload())


@pytest.fixture()
def experience() -> StructuredExperience:
    return StructuredExperience.model_validate(experience_payload())


def _candidates(experience, n: int = 3) -> list[ScoringCandidate]:
    return [
        ScoringCandidate(mentor_id=10 + i, mentor_name=f"Mentor {i}", experience_id=100 + i, experience=experience)
        for i in range(n)
    ]


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_bottleneck_round_trips_camel_case(self, bottleneck):
        wire = bottleneck.to_wire()
        assert wire["signals"]["isGTMProblem"] is True
        assert wire["stageContext"]["monthsOfRunway"] == 6
        assert StructuredBottleneck.model_validate(wire) == bottleneck

    def test_experience_stage_range_is_a_pair(self, experience):
        assert experience.applicability.stage_range == ("PRE_SEED", "SERIES_A")

    def test_unknown_archetype_rejected(self):
        payload = bottleneck_payload()
        payload["problemArchetype"]["category"] = "WORLD_DOMINATION"
        with pytest.raises(ValueError):
            StructuredBottleneck.model_validate(payload)

    def test_key_alignments_truncated_to_three(self):
        payload = reasoning_payload()
        payload["keyAlignments"] = ["a", "b", "c", "d"]
        assert MatchReasoning.model_validate(payload).key_alignments == ["a", "b", "c"]

    def test_weights_must_sum_to_one(self):
        payload = reasoning_payload()
        payload["weights"]["recency"] = 0.5
        with pytest.raises(ValueError, match="sum to 1.0"):
            MatchReasoning.model_validate(payload)

    def test_dimension_scores_bounded(self):
        payload = reasoning_payload({"problemShapeSimilarity": 120, "constraintAlignment": 0,
                                     "stageRelevance": 0, "experienceDepth": 0, "recency": 0})
        with pytest.raises(ValueError):
            MatchReasoning.model_validate(payload)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestPrompts:
    def test_bottleneck_prompt_embeds_raw_fields_and_context(self):
        prompt = build_bottleneck_structuring_prompt(
            "Blocked on sales", "Cold email", "Five pilots", stage="SEED", team_size=6,
        )
        assert "Blocked on sales" in prompt.user
        assert "**Stage:** SEED" in prompt.user
        assert "**Team Size:** 6" in prompt.user
        assert "Product Maturity" not in prompt.user
        assert "FIRST_CUSTOMERS" in prompt.system

    def test_experience_prompt_omits_missing_context(self):
        prompt = build_experience_structuring_prompt("p" * 20, "c" * 20, "s" * 20, "o" * 10)
        assert "Year this occurred" not in prompt.user
        assert "timeSensitivity" in prompt.user

    def test_single_matching_prompt_names_mentor(self, bottleneck, experience):
        prompt = build_matching_prompt(bottleneck, experience, "Ada Mentor")
        assert "**Mentor:** Ada Mentor" in prompt.user
        assert bottleneck.problem_statement in prompt.user

    def test_batch_prompt_lists_candidates_in_order(self, bottleneck, experience):
        candidates = _candidates(experience, 3)
        prompt = build_batch_matching_prompt(bottleneck, candidates, min_score=40)
        assert candidates_in_prompt(prompt.user) == [(10, 100), (11, 101), (12, 102)]
        assert prompt.user.count("\n---\n") == 2
        assert "score >= 40" in prompt.user
        assert "below 40" in prompt.system


# ---------------------------------------------------------------------------
# Structuring
# ---------------------------------------------------------------------------


class TestStructuring:
    @pytest.mark.asyncio
    async def test_structure_bottleneck(self):
        llm = FakeLLM(bottleneck_payload())
        data = BottleneckInput(raw_blocker="Blocked", raw_attempts="Tried", raw_success_criteria="Win")
        result = await structure_bottleneck(data, llm)
        assert result.problem_archetype.category == "FIRST_CUSTOMERS"
        assert llm.calls[0]["max_tokens"] == 4096
        assert llm.calls[0]["json_array"] is False

    @pytest.mark.asyncio
    async def test_structure_experience(self):
        llm = FakeLLM(experience_payload())
        data = ExperienceInput(raw_problem="p", raw_context="c", raw_solution="s", raw_outcomes="o")
        result = await structure_experience(data, llm)
        assert result.successful_approach.key_actions[0] == "Narrow ICP"

    @pytest.mark.asyncio
    async def test_missing_required_field_is_parse_error(self):
        payload = bottleneck_payload()
        del payload["urgency"]
        data = BottleneckInput(raw_blocker="Blocked", raw_attempts="Tried", raw_success_criteria="Win")
        with pytest.raises(ParseError, match="structured bottleneck"):
            await structure_bottleneck(data, FakeLLM(payload))

    @pytest.mark.asyncio
    async def test_array_reply_is_parse_error(self):
        data = ExperienceInput(raw_problem="p", raw_context="c", raw_solution="s", raw_outcomes="o")
        with pytest.raises(ParseError):
            await structure_experience(data, FakeLLM([experience_payload()]))

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates(self):
        data = BottleneckInput(raw_blocker="Blocked", raw_attempts="Tried", raw_success_criteria="Win")
        with pytest.raises(UpstreamUnavailableError):
            await structure_bottleneck(data, FakeLLM(UpstreamUnavailableError("down")))

    def test_raw_fields_must_be_non_empty(self):
        with pytest.raises(ValueError):
            BottleneckInput(raw_blocker="", raw_attempts="Tried", raw_success_criteria="Win")


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestMatchSingle:
    @pytest.mark.asyncio
    async def test_returns_validated_score(self, bottleneck, experience):
        llm = FakeLLM(match_score_payload(score=81, confidence="HIGH"))
        result = await match_single(bottleneck, experience, "Ada", llm)
        assert result.score == 81
        assert result.confidence == "HIGH"
        assert result.reasoning.scores.problem_shape_similarity == 80
        assert llm.calls[0]["max_tokens"] == 4096

    @pytest.mark.asyncio
    async def test_score_out_of_range_is_parse_error(self, bottleneck, experience):
        with pytest.raises(ParseError):
            await match_single(bottleneck, experience, "Ada", FakeLLM(match_score_payload(score=140)))


class TestParseBatchResults:
    def test_subset_in_reply_order(self, experience):
        candidates = _candidates(experience, 3)
        raw = [match_item(12, 102, 90), match_item(10, 100, 55)]
        items = parse_batch_results(raw, candidates)
        assert [(i.mentor_id, i.experience_id) for i in items] == [(12, 102), (10, 100)]

    def test_single_object_is_wrapped(self, experience):
        items = parse_batch_results(match_item(10, 100, 70), _candidates(experience, 1))
        assert len(items) == 1

    def test_empty_array(self, experience):
        assert parse_batch_results([], _candidates(experience, 2)) == []

    def test_longer_than_input_rejected(self, experience):
        raw = [match_item(10, 100, 70), match_item(10, 100, 71)]
        with pytest.raises(ParseError, match="2 items returned for 1"):
            parse_batch_results(raw, _candidates(experience, 1))

    def test_unknown_pair_rejected(self, experience):
        with pytest.raises(ParseError, match="unknown pair"):
            parse_batch_results([match_item(11, 100, 70)], _candidates(experience, 2))

    def test_duplicate_pair_rejected(self, experience):
        raw = [match_item(10, 100, 70), match_item(10, 100, 71)]
        with pytest.raises(ParseError, match="scored twice"):
            parse_batch_results(raw, _candidates(experience, 2))

    def test_non_array_rejected(self, experience):
        with pytest.raises(ParseError, match="expected a JSON array"):
            parse_batch_results("nope", _candidates(experience, 1))

    def test_invalid_item_rejected(self, experience):
        item = match_item(10, 100, 70)
        del item["reasoning"]
        with pytest.raises(ParseError, match="item 0"):
            parse_batch_results([item], _candidates(experience, 1))


class TestMatchBatch:
    @pytest.mark.asyncio
    async def test_empty_candidates_skip_the_call(self, bottleneck):
        llm = FakeLLM()
        assert await match_batch(bottleneck, [], llm) == []
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_requests_array_with_batch_token_budget(self, bottleneck, experience):
        candidates = _candidates(experience, 2)
        llm = FakeLLM([match_item(10, 100, 66)])
        items = await match_batch(bottleneck, candidates, llm, min_score=55)
        assert [i.score for i in items] == [66]
        call = llm.calls[0]
        assert call["json_array"] is True
        assert call["max_tokens"] == 8192
        assert "below 55" in call["system"]
        assert json.loads(json.dumps(items[0].to_wire()))["mentorId"] == 10
