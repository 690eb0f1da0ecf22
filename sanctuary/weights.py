"""Feedback-driven dimension weights.

Reporting only: the adjusted weights are shown on the operator analytics page
and are never sent back to the scoring prompt.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from sanctuary.config import Settings, get_settings
from sanctuary.models import Feedback, FeedbackRating, utcnow
from sanctuary.schemas import DIMENSIONS
from sanctuary.utils import json_parse

log = logging.getLogger(__name__)

BASELINE_WEIGHTS: dict[str, float] = {
    "problemShapeSimilarity": 0.40,
    "constraintAlignment": 0.25,
    "stageRelevance": 0.20,
    "experienceDepth": 0.10,
    "recency": 0.05,
}


def _cohort_average(cohort: list[Mapping[str, float] | None]) -> dict[str, float]:
    # Rows without stored scores still count toward the denominator, contributing 0.
    totals = dict.fromkeys(DIMENSIONS, 0.0)
    for scores in cohort:
        if not scores:
            continue
        for dim in DIMENSIONS:
            value = scores.get(dim)
            totals[dim] += float(value) if isinstance(value, (int, float)) else 0.0
    return {dim: total / len(cohort) for dim, total in totals.items()}


def adjust_weights(
    useful: list[Mapping[str, float] | None],
    not_useful: list[Mapping[str, float] | None],
    max_adjustment: float = 0.05,
) -> dict[str, float]:
    """Shift each baseline weight by the useful-vs-not-useful score gap, then renormalise.

    *useful* and *not_useful* hold the per-dimension scores (camelCase keys)
    of the matches in each feedback cohort. Each dimension moves by
    ``clamp(diff / 100, -max_adjustment, +max_adjustment)``.
    """
    if not useful or not not_useful:
        return dict(BASELINE_WEIGHTS)

    useful_avg = _cohort_average(useful)
    not_useful_avg = _cohort_average(not_useful)

    adjusted: dict[str, float] = {}
    for dim in DIMENSIONS:
        diff = useful_avg[dim] - not_useful_avg[dim]
        shift = max(-max_adjustment, min(max_adjustment, diff / 100))
        adjusted[dim] = BASELINE_WEIGHTS[dim] + shift

    total = sum(adjusted.values())
    return {dim: weight / total for dim, weight in adjusted.items()}


def _scores_of(feedback: Feedback) -> Mapping[str, float] | None:
    reasoning = json_parse(feedback.match.reasoning_json if feedback.match else None)
    scores = reasoning.get("scores") if isinstance(reasoning, dict) else None
    return scores if isinstance(scores, dict) else None


def recent_feedback(session: Session, settings: Settings, now: datetime | None = None) -> list[Feedback]:
    cutoff = (now or utcnow()) - timedelta(days=settings.feedback_window_days)
    stmt = (
        select(Feedback)
        .options(joinedload(Feedback.match))
        .where(Feedback.created_at >= cutoff)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .limit(settings.feedback_sample_limit)
    )
    return list(session.execute(stmt).scalars())


def weights_from_feedback(rows: Iterable[Feedback], settings: Settings | None = None) -> dict[str, float]:
    settings = settings or get_settings()
    rows = list(rows)
    if len(rows) < settings.min_feedback_for_adjustment:
        return dict(BASELINE_WEIGHTS)
    useful = [_scores_of(f) for f in rows if f.rating == FeedbackRating.HIGHLY_USEFUL]
    not_useful = [_scores_of(f) for f in rows if f.rating == FeedbackRating.NOT_USEFUL]
    return adjust_weights(useful, not_useful, settings.max_weight_adjustment)


def get_adjusted_weights(
    session: Session,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict[str, float]:
    """Current weights derived from the last 90 days of feedback (newest 100 rows)."""
    settings = settings or get_settings()
    rows = recent_feedback(session, settings, now)
    weights = weights_from_feedback(rows, settings)
    log.debug("Adjusted weights from %d feedback rows: %s", len(rows), weights)
    return weights
