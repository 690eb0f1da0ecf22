"""Instruction templates for structuring and scoring.

Each builder returns a :class:`Prompt` holding a fixed system instruction and
a per-call user instruction. Structured records are embedded as pretty-printed
camelCase JSON, the same shape the model is asked to return.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Sequence

from sanctuary.schemas import StructuredBottleneck, StructuredExperience


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


@dataclass(frozen=True)
class ScoringCandidate:
    """One experience offered to the batch scorer, with its owning mentor."""
    mentor_id: int
    mentor_name: str
    experience_id: int
    experience: StructuredExperience


ARCHETYPE_GUIDE = """\
- FINDING_PMF: still searching for product-market fit; validating the core value proposition
- FIRST_CUSTOMERS: landing the first 1-10 paying customers
- SCALING_SALES: moving from early customers to a repeatable sales motion
- HIRING_KEY_ROLE: recruiting a critical position (first engineer, first sales hire, ...)
- TEAM_DYNAMICS: co-founder conflict, team alignment, culture
- TECHNICAL_ARCHITECTURE: scalability, tech debt, build vs. buy
- FUNDRAISING: raising capital, investor relations, term negotiation
- UNIT_ECONOMICS: pricing, margins, CAC/LTV, path to profitability
- MARKET_POSITIONING: differentiation, competitive strategy, messaging
- CHANNEL_STRATEGY: distribution, growth channels, go-to-market
- PRODUCT_PRIORITIZATION: what to build next, scope, roadmap
- OPERATIONAL_SCALING: processes, systems, operational efficiency
- PIVOTING: major strategic change, market shift
- OTHER: only when nothing above fits"""

CONSTRAINT_TYPES = (
    "BUDGET, TIME, TEAM_SIZE, TECHNICAL_DEBT, MARKET_TIMING, REGULATORY, GEOGRAPHIC, "
    "COMPETITIVE, FOUNDER_EXPERIENCE, EXISTING_COMMITMENTS, OTHER"
)

STAGES = "PRE_SEED, SEED, SERIES_A, SERIES_B_PLUS, GROWTH"


# ---------------------------------------------------------------------------
# Bottleneck structuring
# ---------------------------------------------------------------------------

BOTTLENECK_STRUCTURING_SYSTEM_PROMPT = f"""\
You are a startup analyst at Sanctuary, a startup accelerator. You turn a \
founder's description of their current bottleneck into a structured record \
that can be matched against mentor experiences.

For every submission:
1. Identify the problem archetype: the underlying shape of the problem
2. Extract the constraints that decide which solutions are viable
3. Assess urgency and stage context
4. Record what the founder has already tried
5. Pin down what success looks like

Principles:

PROBLEM SHAPE OVER KEYWORDS
"We can't close enterprise deals" and "our sales cycles are too long" can be \
the same problem. Two problems share a shape when the same kind of experience \
would help solve both. Look past the surface wording.

KEEP THE NUANCE
Do not flatten a situation into tags. Three months of runway is not six \
months of runway. Capture the specifics that make this case unique.

CONSTRAINTS
HARD constraints are non-negotiable ("we can't hire because of visa rules"). \
SOFT constraints are preferences ("we'd rather not raise right now"). The \
absence of a constraint is information too.

STAGE MATTERS
A pre-seed hiring problem is not a Series A hiring problem. Pre-seed problems \
need pre-seed solutions.

Problem archetype categories (pick the most specific one):
{ARCHETYPE_GUIDE}

Return a single valid JSON object matching the StructuredBottleneck schema and \
nothing else."""


BOTTLENECK_SCHEMA = f"""\
{{
  "problemArchetype": {{
    "category": "<one of the archetype categories>",
    "subPattern": "<specific pattern, e.g. enterprise sales with no track record>",
    "shapeDescription": "<what makes this problem this shape>"
  }},
  "problemStatement": "<one-sentence distillation of the core problem>",
  "constraints": [
    {{"type": "<{CONSTRAINT_TYPES}>", "description": "<text>", "severity": "HARD|SOFT"}}
  ],
  "urgency": "CRITICAL|HIGH|MEDIUM|LOW",
  "stageContext": {{
    "stage": "<{STAGES}>",
    "teamSize": <number or null>,
    "monthsOfRunway": <number or null>,
    "hasProduct": <bool>,
    "hasRevenue": <bool>,
    "hasFunding": <bool>
  }},
  "attemptedSolutions": [
    {{"description": "<text>", "outcome": "<text>", "whyItFailed": "<text or null>"}}
  ],
  "successCriteria": {{"description": "<text>", "timeframe": "<text>", "measurable": <bool>}},
  "signals": {{
    "hasProductMarketFit": <bool or null>,
    "hasRevenue": <bool or null>,
    "isTechnicalProblem": <bool>,
    "isGTMProblem": <bool>,
    "isPeopleProblem": <bool>,
    "isOperationalProblem": <bool>,
    "isFundraisingProblem": <bool>
  }}
}}"""


def _optional_lines(pairs: Sequence[tuple[str, Any]]) -> str:
    return "\n".join(f"**{label}:** {value}" for label, value in pairs if value)


def build_bottleneck_structuring_prompt(
    raw_blocker: str,
    raw_attempts: str,
    raw_success_criteria: str,
    stage: str | None = None,
    team_size: int | None = None,
    product_maturity: str | None = None,
) -> Prompt:
    context = _optional_lines([
        ("Stage", stage),
        ("Team Size", team_size),
        ("Product Maturity", product_maturity),
    ])
    user = f"""\
## FOUNDER SUBMISSION

**What is the single biggest thing blocking your progress right now?**
{raw_blocker}

**What have you already tried?**
{raw_attempts}

**What would success look like in the next 14 days?**
{raw_success_criteria}

{context}

## YOUR TASK

Analyze this submission and return a JSON object with this schema:

```json
{BOTTLENECK_SCHEMA}
```

Return ONLY the JSON object, no additional text."""
    return Prompt(system=BOTTLENECK_STRUCTURING_SYSTEM_PROMPT, user=user)


# ---------------------------------------------------------------------------
# Experience structuring
# ---------------------------------------------------------------------------

EXPERIENCE_STRUCTURING_SYSTEM_PROMPT = f"""\
You are a startup analyst at Sanctuary, a startup accelerator. You turn a \
mentor's account of a problem they solved into a structured record that can \
be matched against founder bottlenecks.

For every narrative:
1. Identify the problem archetype: the underlying shape of the problem
2. Extract the context that shaped their approach
3. Record what failed first
4. Capture what finally worked and why
5. Pull out the transferable insights

Principles:

KEEP THE STORY
The journey is the value. "We did cold outreach for three months before we \
realised we needed warm intros" is worth more than "used warm intros".

FAILED APPROACHES MATTER
What a mentor tried and abandoned shows the depth of their experience, and \
tells us which founders have already been down the same road.

CONTEXT DECIDES TRANSFERABILITY
Stage, industry, team size and constraints all change whether a solution \
carries over. Say explicitly which contexts this experience applies to.

TRANSFERABLE VS. SPECIFIC
Some insights are evergreen ("talk to customers before building"); others only \
hold in one setting ("this channel worked for B2B fintech"). Label them.

Problem archetype categories (same as for bottlenecks):
{ARCHETYPE_GUIDE}

Return a single valid JSON object matching the StructuredExperience schema and \
nothing else."""


EXPERIENCE_SCHEMA = f"""\
{{
  "problemArchetype": {{
    "category": "<one of the archetype categories>",
    "subPattern": "<specific pattern>",
    "shapeDescription": "<what makes this problem this shape>"
  }},
  "problemStatement": "<one-sentence summary of the problem they solved>",
  "context": {{
    "stage": "<{STAGES}>",
    "teamSize": <number or null>,
    "yearOccurred": <number>,
    "companyType": "<e.g. B2B SaaS, consumer marketplace>",
    "role": "<their role at the time>",
    "hadFunding": <bool>,
    "hadRevenue": <bool>
  }},
  "constraints": [
    {{"type": "<{CONSTRAINT_TYPES}>", "description": "<text>", "severity": "HARD|SOFT"}}
  ],
  "failedApproaches": [
    {{"description": "<text>", "whyItFailed": "<text>", "lessonLearned": "<text>"}}
  ],
  "successfulApproach": {{
    "description": "<text>",
    "keyActions": ["<specific action>"],
    "whyItWorked": "<text>",
    "timeToResults": "<e.g. 3 months>"
  }},
  "outcomes": [
    {{"metric": "<text>", "before": "<text>", "after": "<text>", "timeframe": "<text>"}}
  ],
  "insights": [
    {{"insight": "<text>", "whenApplicable": "<text>", "whenNotApplicable": "<text>"}}
  ],
  "applicability": {{
    "stageRange": ["<earliest stage>", "<latest stage>"],
    "industrySpecific": <bool>,
    "industries": ["<industry>"],
    "timeSensitivity": "EVERGREEN|DATED|CONTEXT_DEPENDENT"
  }}
}}"""


def build_experience_structuring_prompt(
    raw_problem: str,
    raw_context: str,
    raw_solution: str,
    raw_outcomes: str,
    year_occurred: int | None = None,
    company_stage: str | None = None,
) -> Prompt:
    context = _optional_lines([
        ("Year this occurred", year_occurred),
        ("Company stage at the time", company_stage),
    ])
    user = f"""\
## MENTOR SUBMISSION

**Describe a specific hard problem you personally solved:**
{raw_problem}

**What was the context? (Stage, constraints, what failed first)**
{raw_context}

**What finally worked?**
{raw_solution}

**What were the outcomes? (Measurable changes, lessons learned)**
{raw_outcomes}

{context}

## YOUR TASK

Analyze this narrative and return a JSON object with this schema:

```json
{EXPERIENCE_SCHEMA}
```

Return ONLY the JSON object, no additional text."""
    return Prompt(system=EXPERIENCE_STRUCTURING_SYSTEM_PROMPT, user=user)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

MATCHING_SYSTEM_PROMPT = """\
You are the matching intelligence for Sanctuary, a startup accelerator. You \
decide whether a mentor's past experience is relevant to a founder's current \
bottleneck.

You receive a structured founder bottleneck and a structured mentor \
experience. You must score the match on five dimensions, produce a \
confidence-calibrated score, write a human-readable explanation and surface \
any concerns.

## DIMENSIONS

### 1. Problem shape similarity (weight 0.40)
Are these fundamentally the same kind of problem?
- HIGH: same archetype category and a similar sub-pattern
- MEDIUM: same category, different but transferable sub-pattern
- LOW: different categories that are only tangentially related
- NONE: unrelated problems

### 2. Constraint alignment (weight 0.25)
Shared constraints raise relevance: the mentor worked under the same limits. \
Conflicting constraints lower it. Constraints missing from the experience are \
neutral. Compare budget, time pressure, team size and market/industry.

### 3. Stage relevance (weight 0.20)
Does the experience apply at the founder's stage? Adjacent stages transfer \
(seed to pre-seed), distant ones rarely do (Series B to pre-seed). A few \
experiences are stage-independent.

### 4. Experience depth (weight 0.10)
Multiple failed approaches, concrete metrics and clear lessons indicate depth. \
"We just did X" without context is shallow.

### 5. Recency (weight 0.05)
2020 or later is generally applicable. 2015-2020 depends on the domain. \
Earlier experience needs strong other dimensions to compensate.

## SCORING

1. Score each dimension from 0 to 100.
2. Combine them with the weights above.
3. Adjust for confidence: HIGH keeps the score, MEDIUM multiplies it by 0.85, \
LOW multiplies it by 0.70.
4. Confidence depends on data quality (are both records well structured?), \
archetype clarity (are both problem shapes clearly defined?) and constraint \
overlap (are there enough constraints to compare?).

## EXPLANATION

One paragraph of 2-4 sentences. Lead with the core similarity, cite concrete \
elements from both sides, write for a non-technical operator and be honest \
about limitations. "This mentor has sales experience and you have a sales \
problem" is not an explanation.

## OUTPUT FORMAT

```json
{
  "score": <number 0-100, the confidence-adjusted score>,
  "confidence": "HIGH|MEDIUM|LOW",
  "explanation": "<2-4 sentences>",
  "reasoning": {
    "scores": {
      "problemShapeSimilarity": <0-100>,
      "constraintAlignment": <0-100>,
      "stageRelevance": <0-100>,
      "experienceDepth": <0-100>,
      "recency": <0-100>
    },
    "weights": {
      "problemShapeSimilarity": 0.40,
      "constraintAlignment": 0.25,
      "stageRelevance": 0.20,
      "experienceDepth": 0.10,
      "recency": 0.05
    },
    "componentReasoning": {
      "problemShapeSimilarity": "<text>",
      "constraintAlignment": "<text>",
      "stageRelevance": "<text>",
      "experienceDepth": "<text>",
      "recency": "<text>"
    },
    "keyAlignments": ["<top 3 reasons this match works>"],
    "concerns": ["<reasons it might not>"],
    "confidenceFactors": {
      "dataQuality": "HIGH|MEDIUM|LOW",
      "archetypeClarity": "HIGH|MEDIUM|LOW",
      "constraintOverlap": "HIGH|MEDIUM|LOW"
    }
  }
}
```"""


def _pretty(payload: StructuredBottleneck | StructuredExperience) -> str:
    return json.dumps(payload.to_wire(), indent=2)


def build_matching_prompt(
    bottleneck: StructuredBottleneck,
    experience: StructuredExperience,
    mentor_name: str,
) -> Prompt:
    user = f"""\
## FOUNDER BOTTLENECK

{_pretty(bottleneck)}

## MENTOR EXPERIENCE

**Mentor:** {mentor_name}

{_pretty(experience)}

## YOUR TASK

Evaluate this match and return a JSON object with score, confidence, \
explanation and detailed reasoning.

- 70 or above: a strong match worth pursuing
- 50 to 70: a possible match that needs operator review
- below 50: a weak match that should probably be skipped

Be conservative; bad matches destroy trust.

Return ONLY the JSON object, no additional text."""
    return Prompt(system=MATCHING_SYSTEM_PROMPT, user=user)


def batch_matching_system_prompt(min_score: float) -> str:
    return f"""\
{MATCHING_SYSTEM_PROMPT}

## BATCH MODE

You are evaluating SEVERAL mentor experiences against one bottleneck. Return a \
JSON array with one match object per experience, in the order the experiences \
are given. Each object also carries the "mentorId" and "experienceId" of the \
experience it scores. Leave out experiences scoring below {min_score:g}."""


def build_batch_matching_prompt(
    bottleneck: StructuredBottleneck,
    candidates: Sequence[ScoringCandidate],
    min_score: float = 40,
) -> Prompt:
    blocks = [
        f"""\
### Experience {i}
**Mentor ID:** {c.mentor_id}
**Mentor Name:** {c.mentor_name}
**Experience ID:** {c.experience_id}

{_pretty(c.experience)}
"""
        for i, c in enumerate(candidates, start=1)
    ]
    experiences = "\n---\n".join(blocks)
    user = f"""\
## FOUNDER BOTTLENECK

{_pretty(bottleneck)}

## MENTOR EXPERIENCES TO EVALUATE

{experiences}

## YOUR TASK

Evaluate each experience against the bottleneck and return a JSON array of \
match objects. Only include experiences with score >= {min_score:g}.

```json
[
  {{
    "mentorId": <mentor id>,
    "experienceId": <experience id>,
    "score": <number>,
    "confidence": "HIGH|MEDIUM|LOW",
    "explanation": "...",
    "reasoning": {{ ... }}
  }}
]
```

Return ONLY the JSON array, no additional text."""
    return Prompt(system=batch_matching_system_prompt(min_score), user=user)
