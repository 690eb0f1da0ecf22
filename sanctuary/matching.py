"""Matching pipeline: score a bottleneck against every eligible experience.

Flow for :func:`generate_matches`:

1. Load the structured bottleneck and every structured experience owned by an
   active mentor (ordered by experience id).
2. No candidates: return ``[]`` without touching the bottleneck's status.
3. Mark the bottleneck ``MATCHING`` and commit, so other readers see it.
4. Score candidates in consecutive batches of ``batch_size``, one LLM call at
   a time.
5. Keep results scoring at least ``min_score_threshold``. The batch prompt
   already asks the model to omit those, so this filter normally removes
   nothing; it stays as a guard against replies that ignore the instruction.
6. Sort by score, descending. The sort is stable: equal scores keep the order
   in which their batches came back.
7. Upsert one ``Match`` per (bottleneck, experience). New rows start
   ``PENDING``; existing rows follow the configured ``rematch_policy``.
8. Mark the bottleneck ``MATCHED`` and return the top
   ``top_matches_to_return`` results (every qualified match is persisted).

Any failure propagates and leaves the bottleneck in the last status reached.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from sanctuary.config import RematchPolicy, Settings, get_settings
from sanctuary.errors import NotFoundError, NotStructuredError, ParseError
from sanctuary.llm import LLMClient
from sanctuary.models import (
    MATCHABLE_STATUSES,
    Bottleneck,
    BottleneckStatus,
    Experience,
    Match,
    MatchAuditLog,
    MatchStatus,
    Mentor,
)
from sanctuary.prompts import ScoringCandidate
from sanctuary.schemas import BatchMatchItem, MatchReasoning, StructuredBottleneck, StructuredExperience
from sanctuary.scorer import match_batch
from sanctuary.utils import chunked

log = logging.getLogger(__name__)

UNKNOWN_MENTOR = "Unknown"


@dataclass
class MatchResult:
    match_id: int | None
    mentor_id: int
    mentor_name: str
    experience_id: int
    score: float
    confidence: str
    explanation: str
    reasoning: MatchReasoning

    def to_dict(self) -> dict:
        return {
            "match_id": self.match_id,
            "mentor_id": self.mentor_id,
            "mentor_name": self.mentor_name,
            "experience_id": self.experience_id,
            "score": self.score,
            "confidence": self.confidence,
            "explanation": self.explanation,
            "reasoning": self.reasoning.to_wire(),
        }


@dataclass
class _Scored:
    item: BatchMatchItem
    mentor_name: str


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_structured_bottleneck(session: Session, bottleneck_id: int) -> tuple[Bottleneck, StructuredBottleneck]:
    """Fetch a bottleneck that is ready for matching, with its parsed payload."""
    bottleneck = session.get(Bottleneck, bottleneck_id)
    if bottleneck is None:
        raise NotFoundError(f"Bottleneck not found: {bottleneck_id}")
    if not bottleneck.structured_json or bottleneck.status not in MATCHABLE_STATUSES:
        raise NotStructuredError(f"Bottleneck not structured yet: {bottleneck_id}")
    try:
        structured = StructuredBottleneck.model_validate_json(bottleneck.structured_json)
    except ValidationError as exc:
        raise ParseError(f"Stored structured bottleneck {bottleneck_id} is invalid: {exc}") from exc
    return bottleneck, structured


def load_candidates(session: Session) -> list[ScoringCandidate]:
    """All structured experiences whose mentor is active, in experience-id order."""
    rows = session.execute(
        select(Experience, Mentor)
        .join(Mentor, Experience.mentor_id == Mentor.id)
        .where(Experience.structured_json.is_not(None), Mentor.is_active.is_(True))
        .order_by(Experience.id)
    ).all()
    candidates: list[ScoringCandidate] = []
    for exp, mentor in rows:
        try:
            structured = StructuredExperience.model_validate_json(exp.structured_json)
        except ValidationError as exc:
            log.warning("Skipping experience %s: stored payload is invalid (%s)", exp.id, exc.error_count())
            continue
        candidates.append(ScoringCandidate(
            mentor_id=mentor.id, mentor_name=mentor.name,
            experience_id=exp.id, experience=structured,
        ))
    return candidates


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


async def _score_in_batches(
    structured: StructuredBottleneck,
    candidates: Sequence[ScoringCandidate],
    client: LLMClient,
    settings: Settings,
) -> list[_Scored]:
    scored: list[_Scored] = []
    batches = chunked(list(candidates), settings.batch_size)
    for idx, batch in enumerate(batches, start=1):
        items = await match_batch(structured, batch, client, min_score=settings.min_score_threshold)
        names = {c.experience_id: c.mentor_name for c in batch}
        for item in items:
            scored.append(_Scored(item=item, mentor_name=names.get(item.experience_id, UNKNOWN_MENTOR)))
        log.info("Batch %d/%d: %d of %d experiences scored", idx, len(batches), len(items), len(batch))
    return scored


def rank_matches(scored: list[_Scored], threshold: float) -> list[_Scored]:
    qualified = [s for s in scored if s.item.score >= threshold]
    qualified.sort(key=lambda s: s.item.score, reverse=True)
    return qualified


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _refresh(match: Match, item: BatchMatchItem) -> None:
    match.score = item.score
    match.confidence = item.confidence
    match.reasoning_json = item.reasoning.model_dump_json(by_alias=True)
    match.explanation = item.explanation


def upsert_matches(
    session: Session,
    bottleneck_id: int,
    qualified: list[_Scored],
    policy: RematchPolicy,
) -> list[MatchResult]:
    """Insert or refresh one Match per (bottleneck, experience); caller commits."""
    existing = {
        m.experience_id: m
        for m in session.execute(select(Match).where(Match.bottleneck_id == bottleneck_id)).scalars()
    }
    stored: list[tuple[Match, _Scored]] = []
    for s in qualified:
        item = s.item
        match = existing.get(item.experience_id)
        if match is None:
            match = Match(
                bottleneck_id=bottleneck_id,
                experience_id=item.experience_id,
                mentor_id=item.mentor_id,
                status=MatchStatus.PENDING,
            )
            _refresh(match, item)
            session.add(match)
            existing[item.experience_id] = match
        else:
            decided = match.status != MatchStatus.PENDING
            if decided and policy == "never_if_decided":
                log.info("Keeping decided match %s (%s) unchanged on rematch", match.id, match.status)
                continue
            if decided and policy == "always_with_audit_log":
                session.add(MatchAuditLog(
                    match_id=match.id, status=match.status,
                    previous_score=match.score, new_score=item.score,
                    previous_confidence=match.confidence, new_confidence=item.confidence,
                ))
            _refresh(match, item)
        stored.append((match, s))

    session.flush()
    return [
        MatchResult(
            match_id=match.id,
            mentor_id=s.item.mentor_id,
            mentor_name=s.mentor_name,
            experience_id=s.item.experience_id,
            score=s.item.score,
            confidence=s.item.confidence,
            explanation=s.item.explanation,
            reasoning=s.item.reasoning,
        )
        for match, s in stored
    ]


def _set_status(session: Session, bottleneck: Bottleneck, status: BottleneckStatus) -> None:
    bottleneck.status = status
    session.commit()
    log.info("Bottleneck %s -> %s", bottleneck.id, status)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


async def generate_matches(
    session: Session,
    bottleneck_id: int,
    client: LLMClient,
    settings: Settings | None = None,
) -> list[MatchResult]:
    """Score, persist and return the top matches for a structured bottleneck."""
    settings = settings or get_settings()
    bottleneck, structured = load_structured_bottleneck(session, bottleneck_id)

    candidates = load_candidates(session)
    if not candidates:
        log.info("Bottleneck %s: no structured experiences from active mentors", bottleneck_id)
        return []

    _set_status(session, bottleneck, BottleneckStatus.MATCHING)

    scored = await _score_in_batches(structured, candidates, client, settings)
    qualified = rank_matches(scored, settings.min_score_threshold)
    results = upsert_matches(session, bottleneck_id, qualified, settings.rematch_policy)

    _set_status(session, bottleneck, BottleneckStatus.MATCHED)
    log.info(
        "Bottleneck %s matched: %d candidates, %d scored, %d qualified",
        bottleneck_id, len(candidates), len(scored), len(qualified),
    )
    return results[:settings.top_matches_to_return]
