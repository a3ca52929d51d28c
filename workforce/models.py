"""SQLAlchemy models for the workforce database."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    ARRAY,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: ARRAY(String),
        list[float]: ARRAY(Float),
    }


def _uuid_pk() -> Mapped[str]:
    return mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))


# =============================================================================
# TASK HISTORY & ESCALATIONS
# =============================================================================


class TaskHistory(Base):
    """Append-only record of every terminal task outcome."""

    __tablename__ = "task_history"

    id: Mapped[str] = _uuid_pk()
    task_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status: Mapped[str] = mapped_column(String, default="completed")
    time_taken_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    estimated_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    variance_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    tools_used: Mapped[list[str] | None] = mapped_column(ARRAY(String), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


class EscalationRecord(Base):
    """Human decision queue entries."""

    __tablename__ = "escalations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[str] = mapped_column(String, nullable=False)
    task_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    task: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    reasons: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    priority: Mapped[str] = mapped_column(String, default="MEDIUM")
    status: Mapped[str] = mapped_column(String, default="pending")
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# =============================================================================
# LEARNING LOOP
# =============================================================================


class RoutingLearning(Base):
    """Aggregated routing outcomes per (role, task type)."""

    __tablename__ = "routing_learnings"
    __table_args__ = (UniqueConstraint("role", "task_type", name="uq_routing_learning"),)

    id: Mapped[str] = _uuid_pk()
    role: Mapped[str] = mapped_column(String, nullable=False)
    task_type: Mapped[str] = mapped_column(String, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PatternLog(Base):
    """Surfaced pattern findings, optionally linked to the amendment they produced."""

    __tablename__ = "pattern_log"

    id: Mapped[str] = _uuid_pk()
    role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    pattern_type: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    evidence: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    suggested_action: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_window: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amendment_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("amendments.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AmendmentRecord(Base):
    """Policy amendments; reverted rows are kept for audit."""

    __tablename__ = "amendments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    target_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String, nullable=False)
    trigger_reason: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_pattern: Mapped[str] = mapped_column(String, nullable=False)
    amendment_type: Mapped[str] = mapped_column(String, nullable=False)
    target_area: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    pattern_type: Mapped[str | None] = mapped_column(String, nullable=True)
    baseline_score: Mapped[float] = mapped_column(Float, nullable=False)
    post_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    evaluation_window: Mapped[int] = mapped_column(Integer, nullable=False)
    evaluation_status: Mapped[str] = mapped_column(String, default="evaluating")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    reverted: Mapped[bool] = mapped_column(Boolean, default=False)
    revert_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    reverted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    evaluations: Mapped[list["AmendmentEvaluation"]] = relationship(
        back_populates="amendment", cascade="all, delete-orphan"
    )


class AmendmentEvaluation(Base):
    """Per-task score observed while an amendment is being evaluated."""

    __tablename__ = "amendment_evaluations"

    id: Mapped[str] = _uuid_pk()
    amendment_id: Mapped[str] = mapped_column(
        String, ForeignKey("amendments.id", ondelete="CASCADE")
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    cos_score: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    amendment: Mapped[AmendmentRecord] = relationship(back_populates="evaluations")


class CosReviewRecord(Base):
    """One reviewer/subordinate review per cycle."""

    __tablename__ = "cos_reviews"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    reviewer_role: Mapped[str] = mapped_column(String, nullable=False)
    subordinate_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    review_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    tasks_analyzed: Mapped[int] = mapped_column(Integer, default=0)
    trend: Mapped[str | None] = mapped_column(String, nullable=True)
    trend_slope: Mapped[float | None] = mapped_column(Float, nullable=True)
    cos_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    intervention: Mapped[str | None] = mapped_column(String, nullable=True)
    amendment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RecommendationRecord(Base):
    """Validated knowledge-bot recommendations awaiting selection."""

    __tablename__ = "recommendations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    team_id: Mapped[str] = mapped_column(String, nullable=False)
    target_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SafetyEvent(Base):
    """Rejected policy violations and automatic reverts."""

    __tablename__ = "safety_log"

    id: Mapped[str] = _uuid_pk()
    role: Mapped[str] = mapped_column(String, nullable=False)
    constraint_type: Mapped[str] = mapped_column(String, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    action_taken: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
