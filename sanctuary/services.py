"""Shared business logic for the Sanctuary API and CLI."""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sanctuary.errors import (
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    NotStructuredError,
    ParseError,
    UpstreamUnavailableError,
)
from sanctuary.llm import LLMClient
from sanctuary.matching import load_structured_bottleneck
from sanctuary.models import (
    Bottleneck,
    BottleneckStatus,
    Experience,
    Feedback,
    FeedbackRating,
    Match,
    MatchStatus,
    Mentor,
    Startup,
    utcnow,
)
from sanctuary.schemas import (
    BottleneckInput,
    BottleneckSubmission,
    ExperienceInput,
    ExperienceSubmission,
    FeedbackSubmission,
    MentorCreate,
    OperatorDecision,
    StartupCreate,
    StructuredExperience,
)
from sanctuary.scorer import match_single
from sanctuary.structurer import structure_bottleneck, structure_experience
from sanctuary.tasks import MatchingQueue
from sanctuary.utils import json_parse
from sanctuary.weights import get_adjusted_weights

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

MENTOR_UPDATABLE_FIELDS = ("name", "bio", "linkedin_url", "is_active")

# Bottlenecks still waiting on structuring or a matching run.
AWAITING_MATCH_STATUSES = (
    BottleneckStatus.PENDING, BottleneckStatus.STRUCTURED, BottleneckStatus.MATCHING,
)

DASHBOARD_PENDING_LIMIT = 20
DASHBOARD_FEEDBACK_LIMIT = 10
STARTUP_RECENT_BOTTLENECKS = 10

BOTTLENECK_SUBMITTED = "Bottleneck submitted. Matching in progress."
BOTTLENECK_NEEDS_REVIEW = "Bottleneck submitted but structuring failed. An operator will review."
EXPERIENCE_SUBMITTED = "Experience submitted and structured successfully."
EXPERIENCE_NEEDS_REVIEW = "Experience submitted but structuring failed. An operator will review."

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime | None) -> str | None:
    """ISO-8601 in UTC; SQLite returns stored timestamps without tzinfo."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def startup_summary(startup: Startup) -> dict:
    return {
        "id": startup.id, "name": startup.name, "founder_name": startup.founder_name,
        "email": startup.email, "stage": startup.stage, "team_size": startup.team_size,
        "product_maturity": startup.product_maturity, "created_at": _iso(startup.created_at),
    }


def startup_detail(session: Session, startup: Startup) -> dict:
    recent = session.execute(
        select(Bottleneck)
        .where(Bottleneck.startup_id == startup.id)
        .order_by(Bottleneck.created_at.desc(), Bottleneck.id.desc())
        .limit(STARTUP_RECENT_BOTTLENECKS)
    ).scalars().all()
    return {**startup_summary(startup), "bottlenecks": [bottleneck_summary(b) for b in recent]}


def mentor_summary(mentor: Mentor) -> dict:
    return {
        "id": mentor.id, "name": mentor.name, "email": mentor.email, "bio": mentor.bio,
        "linkedin_url": mentor.linkedin_url, "is_active": mentor.is_active,
        "experience_count": len(mentor.experiences),
    }


def mentor_detail(mentor: Mentor) -> dict:
    experiences = sorted(mentor.experiences, key=lambda e: (e.created_at, e.id), reverse=True)
    return {**mentor_summary(mentor), "experiences": [experience_summary(e) for e in experiences]}


def bottleneck_summary(b: Bottleneck) -> dict:
    return {
        "id": b.id, "startup_id": b.startup_id, "status": b.status,
        "raw_blocker": b.raw_blocker, "raw_attempts": b.raw_attempts,
        "raw_success_criteria": b.raw_success_criteria,
        "structured": json_parse(b.structured_json, None),
        "created_at": _iso(b.created_at), "updated_at": _iso(b.updated_at),
    }


def bottleneck_detail(b: Bottleneck) -> dict:
    matches = sorted(b.matches, key=lambda m: m.score, reverse=True)
    return {
        **bottleneck_summary(b),
        "startup_name": b.startup.name if b.startup else None,
        "matches": [match_summary(m) for m in matches],
    }


def experience_summary(e: Experience) -> dict:
    return {
        "id": e.id, "mentor_id": e.mentor_id,
        "mentor_name": e.mentor.name if e.mentor else None,
        "raw_problem": e.raw_problem, "raw_context": e.raw_context,
        "raw_solution": e.raw_solution, "raw_outcomes": e.raw_outcomes,
        "year_occurred": e.year_occurred, "company_stage": e.company_stage,
        "structured": json_parse(e.structured_json, None),
        "created_at": _iso(e.created_at),
    }


def feedback_summary(f: Feedback) -> dict:
    return {
        "id": f.id, "match_id": f.match_id, "rating": f.rating,
        "was_relevant": f.was_relevant, "was_actionable": f.was_actionable,
        "would_recommend": f.would_recommend,
        "founder_notes": f.founder_notes, "operator_notes": f.operator_notes,
        "created_at": _iso(f.created_at),
    }


def match_summary(m: Match) -> dict:
    return {
        "id": m.id, "bottleneck_id": m.bottleneck_id, "experience_id": m.experience_id,
        "mentor_id": m.mentor_id, "mentor_name": m.mentor.name if m.mentor else "Unknown",
        "score": m.score, "confidence": m.confidence, "explanation": m.explanation,
        "reasoning": json_parse(m.reasoning_json), "status": m.status,
        "operator_id": m.operator_id, "operator_notes": m.operator_notes,
        "intro_sent_at": _iso(m.intro_sent_at),
        "feedback": feedback_summary(m.feedback) if m.feedback else None,
    }


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def _get(session: Session, model, entity_id: int, label: str):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def create_startup(session: Session, body: StartupCreate) -> Startup:
    startup = Startup(
        name=body.name, founder_name=body.founder_name, email=body.email,
        stage=body.stage, team_size=body.team_size, product_maturity=body.product_maturity,
    )
    session.add(startup)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateError("A startup with this email already exists") from exc
    log.info("Registered startup %s (%s)", startup.id, startup.name)
    return startup


def create_mentor(session: Session, body: MentorCreate) -> Mentor:
    mentor = Mentor(name=body.name, email=body.email, bio=body.bio, linkedin_url=body.linkedin_url)
    session.add(mentor)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateError("A mentor with this email already exists") from exc
    log.info("Registered mentor %s (%s)", mentor.id, mentor.name)
    return mentor


def list_active_mentors(session: Session) -> list[Mentor]:
    return list(session.execute(
        select(Mentor).where(Mentor.is_active.is_(True)).order_by(Mentor.name)
    ).scalars())


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


async def submit_bottleneck(
    session: Session, body: BottleneckSubmission, client: LLMClient, queue: MatchingQueue,
) -> dict:
    """Persist, structure and queue matching for a founder's bottleneck.

    The record is committed as PENDING before the LLM is called. If
    structuring fails it stays PENDING and the response carries
    ``needs_review``; the submission itself never fails on the LLM.
    """
    startup = _get(session, Startup, body.startup_id, "Startup")
    bottleneck = Bottleneck(
        startup_id=startup.id,
        raw_blocker=body.raw_blocker,
        raw_attempts=body.raw_attempts,
        raw_success_criteria=body.raw_success_criteria,
        status=BottleneckStatus.PENDING,
    )
    session.add(bottleneck)
    session.commit()

    data = BottleneckInput(
        raw_blocker=body.raw_blocker,
        raw_attempts=body.raw_attempts,
        raw_success_criteria=body.raw_success_criteria,
        stage=body.stage or startup.stage,
        team_size=body.team_size or startup.team_size,
        product_maturity=body.product_maturity or startup.product_maturity or None,
    )
    try:
        structured = await structure_bottleneck(data, client)
    except (ParseError, UpstreamUnavailableError) as exc:
        log.warning("Structuring failed for bottleneck %s: %s", bottleneck.id, exc)
        return {
            "id": bottleneck.id, "status": bottleneck.status, "structured": None,
            "needs_review": True, "matching_queued": False, "message": BOTTLENECK_NEEDS_REVIEW,
        }

    bottleneck.structured_json = structured.model_dump_json(by_alias=True)
    bottleneck.status = BottleneckStatus.STRUCTURED
    session.commit()

    queued = queue.submit(bottleneck.id)
    return {
        "id": bottleneck.id, "status": bottleneck.status, "structured": structured.to_wire(),
        "needs_review": False, "matching_queued": queued, "message": BOTTLENECK_SUBMITTED,
    }


async def submit_experience(session: Session, body: ExperienceSubmission, client: LLMClient) -> dict:
    """Persist and structure a mentor's experience; unstructured on LLM failure."""
    mentor = _get(session, Mentor, body.mentor_id, "Mentor")
    experience = Experience(
        mentor_id=mentor.id,
        raw_problem=body.raw_problem,
        raw_context=body.raw_context,
        raw_solution=body.raw_solution,
        raw_outcomes=body.raw_outcomes,
        year_occurred=body.year_occurred,
        company_stage=body.company_stage or "",
    )
    session.add(experience)
    session.commit()

    data = ExperienceInput(
        raw_problem=body.raw_problem,
        raw_context=body.raw_context,
        raw_solution=body.raw_solution,
        raw_outcomes=body.raw_outcomes,
        year_occurred=body.year_occurred,
        company_stage=body.company_stage,
    )
    try:
        structured = await structure_experience(data, client)
    except (ParseError, UpstreamUnavailableError) as exc:
        log.warning("Structuring failed for experience %s: %s", experience.id, exc)
        return {
            "id": experience.id, "status": "UNSTRUCTURED", "structured": None,
            "needs_review": True, "matching_queued": False, "message": EXPERIENCE_NEEDS_REVIEW,
        }

    experience.structured_json = structured.model_dump_json(by_alias=True)
    session.commit()
    return {
        "id": experience.id, "status": "STRUCTURED", "structured": structured.to_wire(),
        "needs_review": False, "matching_queued": False, "message": EXPERIENCE_SUBMITTED,
    }


async def score_pair(session: Session, bottleneck_id: int, experience_id: int, client: LLMClient) -> dict:
    """Ad hoc single-pair score. Nothing is persisted."""
    _, structured = load_structured_bottleneck(session, bottleneck_id)
    experience = _get(session, Experience, experience_id, "Experience")
    if not experience.structured_json:
        raise NotStructuredError(f"Experience not structured yet: {experience_id}")
    mentor_name = experience.mentor.name if experience.mentor else "Unknown"
    result = await match_single(
        structured, StructuredExperience.model_validate_json(experience.structured_json),
        mentor_name, client,
    )
    return {
        "bottleneck_id": bottleneck_id, "experience_id": experience_id,
        "mentor_id": experience.mentor_id, "mentor_name": mentor_name,
        **result.to_wire(),
    }


# ---------------------------------------------------------------------------
# Match lifecycle
# ---------------------------------------------------------------------------


def _require_status(match: Match, allowed: tuple[MatchStatus, ...], action: str) -> None:
    if match.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {action} match {match.id} in status {match.status}"
        )


def _decide(session: Session, match_id: int, decision: OperatorDecision, target: MatchStatus, action: str) -> Match:
    match = _get(session, Match, match_id, "Match")
    _require_status(match, (MatchStatus.PENDING,), action)
    match.status = target
    match.operator_id = decision.operator_id
    match.operator_notes = decision.operator_notes
    session.commit()
    log.info("Match %s %s by %r", match.id, target, decision.operator_id)
    return match


def approve_match(session: Session, match_id: int, decision: OperatorDecision) -> Match:
    return _decide(session, match_id, decision, MatchStatus.APPROVED, "approve")


def reject_match(session: Session, match_id: int, decision: OperatorDecision) -> Match:
    return _decide(session, match_id, decision, MatchStatus.REJECTED, "reject")


def mark_intro_sent(session: Session, match_id: int) -> Match:
    match = _get(session, Match, match_id, "Match")
    _require_status(match, (MatchStatus.APPROVED,), "mark intro sent for")
    match.status = MatchStatus.INTRO_SENT
    match.intro_sent_at = utcnow()
    session.commit()
    log.info("Match %s intro sent", match.id)
    return match


def submit_feedback(session: Session, match_id: int, body: FeedbackSubmission) -> Feedback:
    """Record the founder's feedback and complete the match."""
    match = _get(session, Match, match_id, "Match")
    if match.feedback is not None:
        raise DuplicateError("Feedback already submitted for this match")
    _require_status(match, (MatchStatus.INTRO_SENT,), "record feedback for")

    feedback = Feedback(
        match_id=match.id, rating=body.rating,
        was_relevant=body.was_relevant, was_actionable=body.was_actionable,
        would_recommend=body.would_recommend,
        founder_notes=body.founder_notes, operator_notes=body.operator_notes,
    )
    session.add(feedback)
    match.status = MatchStatus.COMPLETED
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateError("Feedback already submitted for this match") from exc
    log.info("Feedback %s recorded for match %s", body.rating, match.id)
    return feedback


# ---------------------------------------------------------------------------
# Operator views
# ---------------------------------------------------------------------------


def _pending_match_row(m: Match) -> dict:
    bottleneck = m.bottleneck
    return {
        **match_summary(m),
        "startup_name": bottleneck.startup.name if bottleneck and bottleneck.startup else None,
        "raw_blocker": bottleneck.raw_blocker if bottleneck else None,
        "raw_problem": m.experience.raw_problem if m.experience else None,
    }


def _feedback_row(f: Feedback) -> dict:
    m = f.match
    return {
        **feedback_summary(f),
        "match_score": m.score if m else None,
        "mentor_name": m.mentor.name if m and m.mentor else None,
        "startup_name": m.bottleneck.startup.name if m and m.bottleneck and m.bottleneck.startup else None,
    }


def compute_dashboard(session: Session) -> dict:
    pending = session.execute(
        select(Match)
        .where(Match.status == MatchStatus.PENDING)
        .order_by(Match.score.desc(), Match.created_at.asc(), Match.id.asc())
        .limit(DASHBOARD_PENDING_LIMIT)
    ).scalars().all()
    recent = session.execute(
        select(Feedback).order_by(Feedback.created_at.desc(), Feedback.id.desc()).limit(DASHBOARD_FEEDBACK_LIMIT)
    ).scalars().all()

    by_status: Counter[str] = Counter(dict(
        session.execute(select(Match.status, func.count(Match.id)).group_by(Match.status)).all()
    ))
    by_rating: Counter[str] = Counter(dict(
        session.execute(select(Feedback.rating, func.count(Feedback.id)).group_by(Feedback.rating)).all()
    ))
    pending_bottlenecks = session.execute(
        select(func.count(Bottleneck.id)).where(Bottleneck.status.in_(AWAITING_MATCH_STATUSES))
    ).scalar_one()

    return {
        "pending_matches": [_pending_match_row(m) for m in pending],
        "recent_feedback": [_feedback_row(f) for f in recent],
        "stats": {
            "total_matches": sum(by_status.values()),
            "approved_matches": by_status[MatchStatus.APPROVED],
            "completed_matches": by_status[MatchStatus.COMPLETED],
            "pending_bottlenecks": pending_bottlenecks,
            "match_quality": {
                "highly_useful": by_rating[FeedbackRating.HIGHLY_USEFUL],
                "somewhat_useful": by_rating[FeedbackRating.SOMEWHAT_USEFUL],
                "not_useful": by_rating[FeedbackRating.NOT_USEFUL],
            },
        },
    }


def compute_analytics(session: Session) -> dict:
    by_confidence = session.execute(
        select(Match.confidence, func.avg(Match.score), func.count(Match.id))
        .group_by(Match.confidence)
        .order_by(Match.confidence)
    ).all()

    totals: dict[str, list[float]] = defaultdict(list)
    rows = session.execute(
        select(Feedback.rating, Match.score).join(Match, Feedback.match_id == Match.id)
    ).all()
    for rating, score in rows:
        totals[rating].append(score)

    return {
        "current_weights": get_adjusted_weights(session),
        "matches_by_confidence": [
            {"confidence": confidence, "avg_score": avg, "count": count}
            for confidence, avg, count in by_confidence
        ],
        "scores_by_rating": [
            {"rating": rating, "avg_score": sum(scores) / len(scores), "count": len(scores)}
            for rating, scores in sorted(totals.items())
        ],
    }
