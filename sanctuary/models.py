from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Lifecycle enums
# ---------------------------------------------------------------------------


class BottleneckStatus(StrEnum):
    PENDING = "PENDING"
    STRUCTURED = "STRUCTURED"
    MATCHING = "MATCHING"
    MATCHED = "MATCHED"


# Statuses from which matching may (re)run.
MATCHABLE_STATUSES = frozenset({
    BottleneckStatus.STRUCTURED, BottleneckStatus.MATCHING, BottleneckStatus.MATCHED,
})


class MatchStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    INTRO_SENT = "INTRO_SENT"
    COMPLETED = "COMPLETED"


class FeedbackRating(StrEnum):
    HIGHLY_USEFUL = "HIGHLY_USEFUL"
    SOMEWHAT_USEFUL = "SOMEWHAT_USEFUL"
    NOT_USEFUL = "NOT_USEFUL"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class Startup(Base):
    __tablename__ = "startups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    founder_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    stage: Mapped[str] = mapped_column(String(30), default="PRE_SEED")
    team_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    product_maturity: Mapped[str] = mapped_column(String(200), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    bottlenecks: Mapped[list[Bottleneck]] = relationship(
        "Bottleneck", back_populates="startup", cascade="all, delete-orphan",
    )


class Mentor(Base):
    __tablename__ = "mentors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    bio: Mapped[str] = mapped_column(Text, default="")
    linkedin_url: Mapped[str] = mapped_column(String(500), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    experiences: Mapped[list[Experience]] = relationship(
        "Experience", back_populates="mentor", cascade="all, delete-orphan",
    )


class Bottleneck(Base):
    __tablename__ = "bottlenecks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[int] = mapped_column(Integer, ForeignKey("startups.id"), nullable=False)
    raw_blocker: Mapped[str] = mapped_column(Text, nullable=False)
    raw_attempts: Mapped[str] = mapped_column(Text, nullable=False)
    raw_success_criteria: Mapped[str] = mapped_column(Text, nullable=False)
    structured_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=BottleneckStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    startup: Mapped[Startup] = relationship("Startup", back_populates="bottlenecks")
    matches: Mapped[list[Match]] = relationship(
        "Match", back_populates="bottleneck", cascade="all, delete-orphan",
    )


class Experience(Base):
    __tablename__ = "experiences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("mentors.id"), nullable=False)
    raw_problem: Mapped[str] = mapped_column(Text, nullable=False)
    raw_context: Mapped[str] = mapped_column(Text, nullable=False)
    raw_solution: Mapped[str] = mapped_column(Text, nullable=False)
    raw_outcomes: Mapped[str] = mapped_column(Text, nullable=False)
    year_occurred: Mapped[int | None] = mapped_column(Integer, nullable=True)
    company_stage: Mapped[str] = mapped_column(String(30), default="")
    structured_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    mentor: Mapped[Mentor] = relationship("Mentor", back_populates="experiences")


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("bottleneck_id", "experience_id", name="uq_match_bottleneck_experience"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bottleneck_id: Mapped[int] = mapped_column(Integer, ForeignKey("bottlenecks.id"), nullable=False)
    experience_id: Mapped[int] = mapped_column(Integer, ForeignKey("experiences.id"), nullable=False)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("mentors.id"), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[str] = mapped_column(String(10), nullable=False)  # HIGH | MEDIUM | LOW
    explanation: Mapped[str] = mapped_column(Text, default="")
    reasoning_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(20), default=MatchStatus.PENDING)
    operator_id: Mapped[str] = mapped_column(String(100), default="")
    operator_notes: Mapped[str] = mapped_column(Text, default="")
    intro_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    bottleneck: Mapped[Bottleneck] = relationship("Bottleneck", back_populates="matches")
    experience: Mapped[Experience] = relationship("Experience")
    mentor: Mapped[Mentor] = relationship("Mentor")
    feedback: Mapped[Feedback | None] = relationship(
        "Feedback", back_populates="match", uselist=False, cascade="all, delete-orphan",
    )
    audit_entries: Mapped[list[MatchAuditLog]] = relationship(
        "MatchAuditLog", back_populates="match", cascade="all, delete-orphan",
    )


class Feedback(Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[int] = mapped_column(Integer, ForeignKey("matches.id"), nullable=False, unique=True)
    rating: Mapped[str] = mapped_column(String(20), nullable=False)
    was_relevant: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    was_actionable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    would_recommend: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    founder_notes: Mapped[str] = mapped_column(Text, default="")
    operator_notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    match: Mapped[Match] = relationship("Match", back_populates="feedback")


class MatchAuditLog(Base):
    """Score overwrites of already-decided matches (``always_with_audit_log`` policy)."""

    __tablename__ = "match_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[int] = mapped_column(Integer, ForeignKey("matches.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_score: Mapped[float] = mapped_column(Float, nullable=False)
    new_score: Mapped[float] = mapped_column(Float, nullable=False)
    previous_confidence: Mapped[str] = mapped_column(String(10), nullable=False)
    new_confidence: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    match: Mapped[Match] = relationship("Match", back_populates="audit_entries")
