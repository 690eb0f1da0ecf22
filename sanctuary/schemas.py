"""Pydantic schemas: structured LLM records plus API request/response bodies.

The structured records (bottleneck, experience, match reasoning) travel to and
from the LLM as camelCase JSON; they are validated strictly so a malformed
reply is rejected instead of being stored.
"""
from __future__ import annotations

import math
import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from sanctuary.models import FeedbackRating

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
WEIGHT_SUM_TOLERANCE = 1e-6
MIN_EXPERIENCE_YEAR = 1990


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ArchetypeCategory(StrEnum):
    FINDING_PMF = "FINDING_PMF"
    FIRST_CUSTOMERS = "FIRST_CUSTOMERS"
    SCALING_SALES = "SCALING_SALES"
    HIRING_KEY_ROLE = "HIRING_KEY_ROLE"
    TEAM_DYNAMICS = "TEAM_DYNAMICS"
    TECHNICAL_ARCHITECTURE = "TECHNICAL_ARCHITECTURE"
    FUNDRAISING = "FUNDRAISING"
    UNIT_ECONOMICS = "UNIT_ECONOMICS"
    MARKET_POSITIONING = "MARKET_POSITIONING"
    CHANNEL_STRATEGY = "CHANNEL_STRATEGY"
    PRODUCT_PRIORITIZATION = "PRODUCT_PRIORITIZATION"
    OPERATIONAL_SCALING = "OPERATIONAL_SCALING"
    PIVOTING = "PIVOTING"
    OTHER = "OTHER"


class ConstraintType(StrEnum):
    BUDGET = "BUDGET"
    TIME = "TIME"
    TEAM_SIZE = "TEAM_SIZE"
    TECHNICAL_DEBT = "TECHNICAL_DEBT"
    MARKET_TIMING = "MARKET_TIMING"
    REGULATORY = "REGULATORY"
    GEOGRAPHIC = "GEOGRAPHIC"
    COMPETITIVE = "COMPETITIVE"
    FOUNDER_EXPERIENCE = "FOUNDER_EXPERIENCE"
    EXISTING_COMMITMENTS = "EXISTING_COMMITMENTS"
    OTHER = "OTHER"


class Severity(StrEnum):
    HARD = "HARD"
    SOFT = "SOFT"


class Urgency(StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class FundingStage(StrEnum):
    PRE_SEED = "PRE_SEED"
    SEED = "SEED"
    SERIES_A = "SERIES_A"
    SERIES_B_PLUS = "SERIES_B_PLUS"
    GROWTH = "GROWTH"


class Confidence(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TimeSensitivity(StrEnum):
    EVERGREEN = "EVERGREEN"
    DATED = "DATED"
    CONTEXT_DEPENDENT = "CONTEXT_DEPENDENT"


# ---------------------------------------------------------------------------
# Structured records (LLM wire format)
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ProblemArchetype(_Wire):
    category: ArchetypeCategory
    sub_pattern: str
    shape_description: str


class Constraint(_Wire):
    type: ConstraintType
    description: str
    severity: Severity


class StageContext(_Wire):
    stage: FundingStage
    team_size: int | None = None
    months_of_runway: float | None = None
    has_product: bool
    has_revenue: bool
    has_funding: bool


class AttemptedSolution(_Wire):
    description: str
    outcome: str
    why_it_failed: str | None = None


class SuccessCriteria(_Wire):
    description: str
    timeframe: str
    measurable: bool


class BottleneckSignals(_Wire):
    has_product_market_fit: bool | None = None
    has_revenue: bool | None = None
    is_technical_problem: bool
    is_gtm_problem: bool = Field(alias="isGTMProblem")
    is_people_problem: bool
    is_operational_problem: bool
    is_fundraising_problem: bool


class StructuredBottleneck(_Wire):
    problem_archetype: ProblemArchetype
    problem_statement: str = Field(min_length=1)
    constraints: list[Constraint] = []
    urgency: Urgency
    stage_context: StageContext
    attempted_solutions: list[AttemptedSolution] = []
    success_criteria: SuccessCriteria
    signals: BottleneckSignals


class ExperienceContext(_Wire):
    stage: FundingStage
    team_size: int | None = None
    year_occurred: int
    company_type: str
    role: str
    had_funding: bool
    had_revenue: bool


class FailedApproach(_Wire):
    description: str
    why_it_failed: str
    lesson_learned: str


class SuccessfulApproach(_Wire):
    description: str
    key_actions: list[str] = []
    why_it_worked: str
    time_to_results: str


class Outcome(_Wire):
    metric: str
    before: str
    after: str
    timeframe: str


class Insight(_Wire):
    insight: str
    when_applicable: str
    when_not_applicable: str


class Applicability(_Wire):
    stage_range: tuple[FundingStage, FundingStage]
    industry_specific: bool
    industries: list[str] = []
    time_sensitivity: TimeSensitivity


class StructuredExperience(_Wire):
    problem_archetype: ProblemArchetype
    problem_statement: str = Field(min_length=1)
    context: ExperienceContext
    constraints: list[Constraint] = []
    failed_approaches: list[FailedApproach] = []
    successful_approach: SuccessfulApproach
    outcomes: list[Outcome] = []
    insights: list[Insight] = []
    applicability: Applicability


# ---------------------------------------------------------------------------
# Match reasoning
# ---------------------------------------------------------------------------

DIMENSIONS: tuple[str, ...] = (
    "problemShapeSimilarity",
    "constraintAlignment",
    "stageRelevance",
    "experienceDepth",
    "recency",
)


class DimensionScores(_Wire):
    problem_shape_similarity: float = Field(ge=0, le=100)
    constraint_alignment: float = Field(ge=0, le=100)
    stage_relevance: float = Field(ge=0, le=100)
    experience_depth: float = Field(ge=0, le=100)
    recency: float = Field(ge=0, le=100)


class DimensionWeights(_Wire):
    problem_shape_similarity: float = Field(ge=0, le=1)
    constraint_alignment: float = Field(ge=0, le=1)
    stage_relevance: float = Field(ge=0, le=1)
    experience_depth: float = Field(ge=0, le=1)
    recency: float = Field(ge=0, le=1)

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> DimensionWeights:
        total = sum(self.to_wire().values())
        if not math.isclose(total, 1.0, abs_tol=WEIGHT_SUM_TOLERANCE):
            raise ValueError(f"dimension weights must sum to 1.0, got {total:.6f}")
        return self


class DimensionReasoning(_Wire):
    problem_shape_similarity: str
    constraint_alignment: str
    stage_relevance: str
    experience_depth: str
    recency: str


class ConfidenceFactors(_Wire):
    data_quality: Confidence
    archetype_clarity: Confidence
    constraint_overlap: Confidence


class MatchReasoning(_Wire):
    scores: DimensionScores
    weights: DimensionWeights
    component_reasoning: DimensionReasoning
    key_alignments: list[str] = []
    concerns: list[str] = []
    confidence_factors: ConfidenceFactors

    @field_validator("key_alignments")
    @classmethod
    def keep_top_three(cls, v: list[str]) -> list[str]:
        return v[:3]


class MatchScore(_Wire):
    score: float = Field(ge=0, le=100)
    confidence: Confidence
    explanation: str = Field(min_length=1)
    reasoning: MatchReasoning


class BatchMatchItem(MatchScore):
    mentor_id: int
    experience_id: int


# ---------------------------------------------------------------------------
# Structuring inputs
# ---------------------------------------------------------------------------


class BottleneckInput(BaseModel):
    raw_blocker: str = Field(min_length=1)
    raw_attempts: str = Field(min_length=1)
    raw_success_criteria: str = Field(min_length=1)
    stage: str | None = None
    team_size: int | None = None
    product_maturity: str | None = None


class ExperienceInput(BaseModel):
    raw_problem: str = Field(min_length=1)
    raw_context: str = Field(min_length=1)
    raw_solution: str = Field(min_length=1)
    raw_outcomes: str = Field(min_length=1)
    year_occurred: int | None = None
    company_stage: str | None = None


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class _EmailMixin(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_RE.match(v):
            raise ValueError("email must be a valid email address")
        return v


class StartupCreate(_EmailMixin):
    name: str = Field(min_length=1, max_length=200)
    founder_name: str = Field(min_length=1, max_length=200)
    stage: FundingStage = FundingStage.PRE_SEED
    team_size: int | None = Field(None, ge=1, le=10000)
    product_maturity: str = ""


class MentorCreate(_EmailMixin):
    name: str = Field(min_length=1, max_length=200)
    bio: str = ""
    linkedin_url: str = ""


class MentorUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    bio: str | None = None
    linkedin_url: str | None = None
    is_active: bool | None = None


class BottleneckSubmission(BaseModel):
    startup_id: int
    raw_blocker: str = Field(min_length=5, max_length=10000)
    raw_attempts: str = Field(min_length=5, max_length=10000)
    raw_success_criteria: str = Field(min_length=5, max_length=5000)
    stage: FundingStage | None = None
    team_size: int | None = Field(None, ge=1, le=10000)
    product_maturity: str | None = None


class ExperienceSubmission(BaseModel):
    mentor_id: int
    raw_problem: str = Field(min_length=20, max_length=10000)
    raw_context: str = Field(min_length=20, max_length=10000)
    raw_solution: str = Field(min_length=20, max_length=10000)
    raw_outcomes: str = Field(min_length=10, max_length=10000)
    year_occurred: int | None = None
    company_stage: FundingStage | None = None

    @field_validator("year_occurred")
    @classmethod
    def year_in_range(cls, v: int | None) -> int | None:
        if v is None:
            return v
        current = datetime.now(UTC).year
        if not MIN_EXPERIENCE_YEAR <= v <= current:
            raise ValueError(f"year_occurred must be between {MIN_EXPERIENCE_YEAR} and {current}")
        return v


class OperatorDecision(BaseModel):
    operator_id: str = ""
    operator_notes: str = ""


class FeedbackSubmission(BaseModel):
    rating: FeedbackRating
    was_relevant: bool | None = None
    was_actionable: bool | None = None
    would_recommend: bool | None = None
    founder_notes: str = ""
    operator_notes: str = ""


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class StartupOut(BaseModel):
    id: int
    name: str
    founder_name: str
    email: str
    stage: str
    team_size: int | None = None
    product_maturity: str
    created_at: str
    bottlenecks: list[dict[str, Any]] = []


class MentorOut(BaseModel):
    id: int
    name: str
    email: str
    bio: str
    linkedin_url: str
    is_active: bool
    experience_count: int = 0
    experiences: list[dict[str, Any]] = []


class SubmissionResult(BaseModel):
    id: int
    status: str
    structured: dict[str, Any] | None = None
    needs_review: bool = False
    matching_queued: bool = False
    message: str


class FeedbackOut(BaseModel):
    id: int
    match_id: int
    rating: str
    was_relevant: bool | None = None
    was_actionable: bool | None = None
    would_recommend: bool | None = None
    founder_notes: str
    operator_notes: str
    created_at: str


class MatchOut(BaseModel):
    id: int
    bottleneck_id: int
    experience_id: int
    mentor_id: int
    mentor_name: str
    score: float
    confidence: str
    explanation: str
    reasoning: dict[str, Any]
    status: str
    operator_id: str
    operator_notes: str
    intro_sent_at: str | None = None
    feedback: FeedbackOut | None = None


class MatchResultOut(BaseModel):
    match_id: int | None = None
    mentor_id: int
    mentor_name: str
    experience_id: int
    score: float
    confidence: str
    explanation: str
    reasoning: dict[str, Any]


class RematchResult(BaseModel):
    message: str
    match_count: int
    matches: list[MatchResultOut]
