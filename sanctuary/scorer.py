"""Match scoring: one bottleneck against one or a batch of experiences.

The LLM returns a confidence-adjusted 0-100 score, a short explanation and a
five-dimension :class:`~sanctuary.schemas.MatchReasoning`. Batch mode asks the
model to drop anything under the score threshold itself; the orchestrator
filters again on its side.
"""
from __future__ import annotations

import logging
from typing import Any, Sequence

from pydantic import ValidationError

from sanctuary.config import get_settings
from sanctuary.errors import ParseError
from sanctuary.llm import LLMClient
from sanctuary.prompts import ScoringCandidate, build_batch_matching_prompt, build_matching_prompt
from sanctuary.schemas import BatchMatchItem, MatchScore, StructuredBottleneck, StructuredExperience
from sanctuary.structurer import validate_payload

log = logging.getLogger(__name__)


async def match_single(
    bottleneck: StructuredBottleneck,
    experience: StructuredExperience,
    mentor_name: str,
    client: LLMClient,
) -> MatchScore:
    """Score one bottleneck/experience pair. Used for ad hoc scoring only."""
    prompt = build_matching_prompt(bottleneck, experience, mentor_name)
    raw = await client.call(
        prompt.system, prompt.user, max_tokens=get_settings().single_match_max_tokens,
    )
    return validate_payload(MatchScore, raw, "match result")


def parse_batch_results(raw: Any, candidates: Sequence[ScoringCandidate]) -> list[BatchMatchItem]:
    """Validate a batch reply against the candidates that were sent.

    The reply may not be longer than the input, and every item must name a
    (mentorId, experienceId) pair from the input, at most once.
    """
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise ParseError(f"Failed to parse batch match results: expected a JSON array, got {type(raw).__name__}")
    if len(raw) > len(candidates):
        raise ParseError(
            f"Failed to parse batch match results: {len(raw)} items returned for {len(candidates)} experiences"
        )

    sent = {(c.mentor_id, c.experience_id) for c in candidates}
    seen: set[tuple[int, int]] = set()
    items: list[BatchMatchItem] = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ParseError(f"Failed to parse batch match results: item {idx} is not an object")
        try:
            item = BatchMatchItem.model_validate(entry)
        except ValidationError as exc:
            raise ParseError(f"Failed to parse batch match results: item {idx}: {exc}") from exc
        key = (item.mentor_id, item.experience_id)
        if key not in sent:
            raise ParseError(
                f"Failed to parse batch match results: item {idx} refers to unknown pair {key}"
            )
        if key in seen:
            raise ParseError(f"Failed to parse batch match results: pair {key} scored twice")
        seen.add(key)
        items.append(item)
    return items


async def match_batch(
    bottleneck: StructuredBottleneck,
    candidates: Sequence[ScoringCandidate],
    client: LLMClient,
    min_score: float | None = None,
) -> list[BatchMatchItem]:
    """Score up to ``batch_size`` experiences against a bottleneck in one call."""
    if not candidates:
        return []
    settings = get_settings()
    if min_score is None:
        min_score = settings.min_score_threshold
    prompt = build_batch_matching_prompt(bottleneck, candidates, min_score=min_score)
    raw = await client.call(
        prompt.system, prompt.user,
        max_tokens=settings.batch_match_max_tokens, json_array=True,
    )
    items = parse_batch_results(raw, candidates)
    log.debug("Batch of %d experiences returned %d scored matches", len(candidates), len(items))
    return items
