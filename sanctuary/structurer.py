"""Structuring: raw founder/mentor text to typed records via one LLM call each."""
from __future__ import annotations

import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from sanctuary.config import get_settings
from sanctuary.errors import ParseError
from sanctuary.llm import LLMClient
from sanctuary.prompts import (
    Prompt,
    build_bottleneck_structuring_prompt,
    build_experience_structuring_prompt,
)
from sanctuary.schemas import (
    BottleneckInput,
    ExperienceInput,
    StructuredBottleneck,
    StructuredExperience,
)

log = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def validate_payload(model: type[T], raw: object, label: str) -> T:
    """Validate an LLM payload against *model*, raising ParseError on mismatch."""
    if not isinstance(raw, dict):
        raise ParseError(f"Failed to parse {label}: expected a JSON object, got {type(raw).__name__}")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise ParseError(f"Failed to parse {label}: {exc.error_count()} invalid field(s): {exc}") from exc


async def _structure(client: LLMClient, prompt: Prompt, model: type[T], label: str) -> T:
    raw = await client.call(
        prompt.system, prompt.user, max_tokens=get_settings().structuring_max_tokens,
    )
    return validate_payload(model, raw, label)


async def structure_bottleneck(data: BottleneckInput, client: LLMClient) -> StructuredBottleneck:
    """Turn a founder's raw submission into a :class:`StructuredBottleneck`."""
    prompt = build_bottleneck_structuring_prompt(
        raw_blocker=data.raw_blocker,
        raw_attempts=data.raw_attempts,
        raw_success_criteria=data.raw_success_criteria,
        stage=data.stage,
        team_size=data.team_size,
        product_maturity=data.product_maturity,
    )
    structured = await _structure(client, prompt, StructuredBottleneck, "structured bottleneck")
    log.info(
        "Structured bottleneck as %s (%s)",
        structured.problem_archetype.category, structured.urgency,
    )
    return structured


async def structure_experience(data: ExperienceInput, client: LLMClient) -> StructuredExperience:
    """Turn a mentor's raw narrative into a :class:`StructuredExperience`."""
    prompt = build_experience_structuring_prompt(
        raw_problem=data.raw_problem,
        raw_context=data.raw_context,
        raw_solution=data.raw_solution,
        raw_outcomes=data.raw_outcomes,
        year_occurred=data.year_occurred,
        company_stage=data.company_stage,
    )
    structured = await _structure(client, prompt, StructuredExperience, "structured experience")
    log.info("Structured experience as %s", structured.problem_archetype.category)
    return structured
