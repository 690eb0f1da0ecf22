from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sanctuary import services
from sanctuary.config import get_settings
from sanctuary.db import get_session, init_db
from sanctuary.errors import NotFoundError, RateLimitExceededError, SanctuaryError
from sanctuary.llm import LLMClient
from sanctuary.models import Bottleneck, Experience, Match, Mentor, Startup
from sanctuary.ratelimit import api_limiter, build_store, submit_limiter, sweep_forever
from sanctuary.schemas import (
    BottleneckSubmission,
    ExperienceSubmission,
    FeedbackOut,
    FeedbackSubmission,
    MatchOut,
    MentorCreate,
    MentorOut,
    MentorUpdate,
    OperatorDecision,
    RematchResult,
    StartupCreate,
    StartupOut,
    SubmissionResult,
)
from sanctuary.tasks import MatchingQueue

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db()
    app.state.rate_limit_store = build_store(settings)
    app.state.matching_queue = MatchingQueue(settings=settings)
    sweeper = asyncio.create_task(
        sweep_forever(app.state.rate_limit_store, settings.rate_limit_sweep_seconds)
    )
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.matching_queue.cancel_all()
    await app.state.rate_limit_store.close()


app = FastAPI(
    title="Sanctuary",
    version="0.1.0",
    description=(
        "Founder-mentor matching API. Founders submit bottlenecks, mentors submit "
        "past experiences; both are structured by an LLM and scored against each "
        "other. Operators review matches before introductions. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Startups", "description": "Register founders' startups."},
        {"name": "Mentors", "description": "Register and manage mentors."},
        {"name": "Bottlenecks", "description": "Submit bottlenecks and inspect their matches. Requires an LLM key."},
        {"name": "Experiences", "description": "Submit mentor experiences. Requires an LLM key."},
        {"name": "Matches", "description": "Operator review, introductions and founder feedback."},
        {"name": "Operator", "description": "Dashboard and match quality analytics."},
    ],
)


@app.exception_handler(SanctuaryError)
async def sanctuary_error_handler(request: Request, exc: SanctuaryError):
    headers = exc.headers if isinstance(exc, RateLimitExceededError) else None
    return JSONResponse({"error": exc.message}, status_code=exc.status_code, headers=headers)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def llm_client() -> LLMClient:
    return LLMClient()


def matching_queue(request: Request) -> MatchingQueue:
    return request.app.state.matching_queue


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    return obj


api = APIRouter(prefix="/api", dependencies=[Depends(api_limiter())])
limit_submissions = Depends(submit_limiter())


@api.get("/health", tags=["Operator"], summary="Liveness check")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Routes: Startups
# ---------------------------------------------------------------------------


@api.post("/startups", response_model=StartupOut, status_code=201,
          tags=["Startups"], summary="Register a startup (409 on duplicate email)")
async def create_startup(body: StartupCreate, session: Session = Depends(db_session)):
    return services.startup_summary(services.create_startup(session, body))


@api.get("/startups/{startup_id}", response_model=StartupOut,
         tags=["Startups"], summary="Get a startup with its 10 most recent bottlenecks")
async def get_startup(startup_id: int, session: Session = Depends(db_session)):
    return services.startup_detail(session, _get_or_404(session, Startup, startup_id, "Startup"))


# ---------------------------------------------------------------------------
# Routes: Mentors
# ---------------------------------------------------------------------------


@api.post("/mentors", response_model=MentorOut, status_code=201,
          tags=["Mentors"], summary="Register a mentor (409 on duplicate email)")
async def create_mentor(body: MentorCreate, session: Session = Depends(db_session)):
    return services.mentor_summary(services.create_mentor(session, body))


@api.get("/mentors", response_model=list[MentorOut],
         tags=["Mentors"], summary="List active mentors by name")
async def list_mentors(session: Session = Depends(db_session)):
    return [services.mentor_summary(m) for m in services.list_active_mentors(session)]


@api.get("/mentors/{mentor_id}", response_model=MentorOut,
         tags=["Mentors"], summary="Get a mentor with their experiences")
async def get_mentor(mentor_id: int, session: Session = Depends(db_session)):
    return services.mentor_detail(_get_or_404(session, Mentor, mentor_id, "Mentor"))


@api.put("/mentors/{mentor_id}", response_model=MentorOut,
         tags=["Mentors"], summary="Update mentor fields (partial update, null fields ignored)")
async def update_mentor(mentor_id: int, body: MentorUpdate, session: Session = Depends(db_session)):
    mentor = _get_or_404(session, Mentor, mentor_id, "Mentor")
    services.apply_updates(mentor, body.model_dump(), services.MENTOR_UPDATABLE_FIELDS)
    session.commit()
    return services.mentor_detail(mentor)


# ---------------------------------------------------------------------------
# Routes: Bottlenecks
# ---------------------------------------------------------------------------


@api.post("/bottlenecks", response_model=SubmissionResult, status_code=201,
          dependencies=[limit_submissions],
          tags=["Bottlenecks"], summary="Submit a bottleneck; structures it and queues matching")
async def submit_bottleneck(
    body: BottleneckSubmission,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
    queue: MatchingQueue = Depends(matching_queue),
):
    return await services.submit_bottleneck(session, body, client, queue)


@api.get("/bottlenecks/{bottleneck_id}",
         tags=["Bottlenecks"], summary="Get a bottleneck with its startup and matches")
async def get_bottleneck(bottleneck_id: int, session: Session = Depends(db_session)):
    return services.bottleneck_detail(_get_or_404(session, Bottleneck, bottleneck_id, "Bottleneck"))


@api.get("/bottlenecks/{bottleneck_id}/matches", response_model=list[MatchOut],
         tags=["Bottlenecks"], summary="List a bottleneck's matches by score")
async def list_bottleneck_matches(bottleneck_id: int, session: Session = Depends(db_session)):
    bottleneck = _get_or_404(session, Bottleneck, bottleneck_id, "Bottleneck")
    return [services.match_summary(m) for m in sorted(bottleneck.matches, key=lambda m: m.score, reverse=True)]


@api.post("/bottlenecks/{bottleneck_id}/rematch", response_model=RematchResult,
          tags=["Bottlenecks"], summary="Re-run matching synchronously and return the top matches")
async def rematch(
    bottleneck_id: int,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
    queue: MatchingQueue = Depends(matching_queue),
):
    results = await queue.run_now(bottleneck_id, session, client)
    return {
        "message": "Matching complete",
        "match_count": len(results),
        "matches": [r.to_dict() for r in results],
    }


@api.post("/bottlenecks/{bottleneck_id}/score/{experience_id}",
          tags=["Bottlenecks"], summary="Score one experience against a bottleneck (not persisted)")
async def score_pair(
    bottleneck_id: int,
    experience_id: int,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    return await services.score_pair(session, bottleneck_id, experience_id, client)


# ---------------------------------------------------------------------------
# Routes: Experiences
# ---------------------------------------------------------------------------


@api.post("/experiences", response_model=SubmissionResult, status_code=201,
          dependencies=[limit_submissions],
          tags=["Experiences"], summary="Submit a mentor experience and structure it")
async def submit_experience(
    body: ExperienceSubmission,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    return await services.submit_experience(session, body, client)


@api.get("/experiences/{experience_id}",
         tags=["Experiences"], summary="Get an experience with its structured payload")
async def get_experience(experience_id: int, session: Session = Depends(db_session)):
    return services.experience_summary(_get_or_404(session, Experience, experience_id, "Experience"))


# ---------------------------------------------------------------------------
# Routes: Matches
# ---------------------------------------------------------------------------


@api.get("/matches/{match_id}", response_model=MatchOut,
         tags=["Matches"], summary="Get a match with its reasoning and feedback")
async def get_match(match_id: int, session: Session = Depends(db_session)):
    return services.match_summary(_get_or_404(session, Match, match_id, "Match"))


@api.post("/matches/{match_id}/approve", response_model=MatchOut,
          tags=["Matches"], summary="Approve a pending match")
async def approve_match(match_id: int, body: OperatorDecision | None = None,
                        session: Session = Depends(db_session)):
    return services.match_summary(services.approve_match(session, match_id, body or OperatorDecision()))


@api.post("/matches/{match_id}/reject", response_model=MatchOut,
          tags=["Matches"], summary="Reject a pending match")
async def reject_match(match_id: int, body: OperatorDecision | None = None,
                       session: Session = Depends(db_session)):
    return services.match_summary(services.reject_match(session, match_id, body or OperatorDecision()))


@api.post("/matches/{match_id}/intro-sent", response_model=MatchOut,
          tags=["Matches"], summary="Mark the introduction for an approved match as sent")
async def mark_intro_sent(match_id: int, session: Session = Depends(db_session)):
    return services.match_summary(services.mark_intro_sent(session, match_id))


@api.post("/matches/{match_id}/feedback", response_model=FeedbackOut, status_code=201,
          tags=["Matches"], summary="Record founder feedback and complete the match")
async def submit_feedback(match_id: int, body: FeedbackSubmission, session: Session = Depends(db_session)):
    return services.feedback_summary(services.submit_feedback(session, match_id, body))


# ---------------------------------------------------------------------------
# Routes: Operator
# ---------------------------------------------------------------------------


@api.get("/operator/dashboard", tags=["Operator"],
         summary="Pending matches, recent feedback and pipeline counts")
async def dashboard(session: Session = Depends(db_session)):
    return services.compute_dashboard(session)


@api.get("/operator/analytics", tags=["Operator"],
         summary="Current dimension weights and score breakdowns")
async def analytics(session: Session = Depends(db_session)):
    return services.compute_analytics(session)


app.include_router(api)


def main():
    import uvicorn

    settings = get_settings()
    uvicorn.run("sanctuary.app:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
