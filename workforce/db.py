"""Async database connection and operations for the workforce scheduler."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from .config import settings
from .errors import SchemaNotInitializedError, is_schema_missing_error, schema_not_initialized_message
from .models import (
    AmendmentEvaluation,
    AmendmentRecord,
    Base,
    CosReviewRecord,
    EscalationRecord,
    PatternLog,
    RecommendationRecord,
    RoutingLearning,
    SafetyEvent,
    TaskHistory,
)

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(
                    schema_not_initialized_message(exc)
                ) from exc
            raise


# =============================================================================
# Task History
# =============================================================================


async def append_history(session: AsyncSession, **fields: Any) -> TaskHistory:
    """Append one terminal task outcome."""
    row = TaskHistory(**fields)
    session.add(row)
    await session.flush()
    return row


async def get_history(session: AsyncSession, role: str, limit: int = 20) -> list[TaskHistory]:
    """Most recent history rows for a role, newest first."""
    result = await session.execute(
        select(TaskHistory)
        .where(TaskHistory.role == role)
        .order_by(TaskHistory.completed_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Escalations
# =============================================================================


async def save_escalation(session: AsyncSession, **fields: Any) -> EscalationRecord:
    row = EscalationRecord(**fields)
    session.add(row)
    await session.flush()
    return row


async def resolve_escalation(
    session: AsyncSession, escalation_id: str, decision: dict[str, Any], resolved_at: datetime
) -> EscalationRecord | None:
    row = await session.get(EscalationRecord, escalation_id)
    if row is None:
        return None
    row.status = "resolved"
    row.decision = decision
    row.resolved_at = resolved_at
    await session.flush()
    return row


# =============================================================================
# Routing Learnings
# =============================================================================


async def upsert_learning(
    session: AsyncSession, role: str, task_type: str, total: int, successes: int
) -> RoutingLearning:
    """Insert or update a learning row; counts only ever move forward."""
    result = await session.execute(
        select(RoutingLearning).where(
            RoutingLearning.role == role, RoutingLearning.task_type == task_type
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = RoutingLearning(role=role, task_type=task_type, total_count=0, success_count=0)
        session.add(row)
    if total >= (row.total_count or 0):
        row.total_count = total
        row.success_count = successes
        row.success_rate = successes / total if total else 0.0
    await session.flush()
    return row


async def get_learnings(session: AsyncSession) -> list[RoutingLearning]:
    result = await session.execute(select(RoutingLearning))
    return list(result.scalars().all())


# =============================================================================
# Pattern Log
# =============================================================================


async def log_pattern(session: AsyncSession, **fields: Any) -> PatternLog:
    row = PatternLog(**fields)
    session.add(row)
    await session.flush()
    return row


async def link_pattern(session: AsyncSession, pattern_id: str, amendment_id: str) -> None:
    await session.execute(
        update(PatternLog).where(PatternLog.id == pattern_id).values(amendment_id=amendment_id)
    )


# =============================================================================
# Amendments
# =============================================================================


async def create_amendment(session: AsyncSession, **fields: Any) -> AmendmentRecord:
    row = AmendmentRecord(**fields)
    session.add(row)
    await session.flush()
    return row


async def update_amendment(
    session: AsyncSession, amendment_id: str, **fields: Any
) -> AmendmentRecord | None:
    row = await session.get(AmendmentRecord, amendment_id)
    if row is None:
        return None
    # The evaluation window is fixed at creation.
    fields.pop("evaluation_window", None)
    for key, value in fields.items():
        setattr(row, key, value)
    await session.flush()
    return row


async def revert_amendment(
    session: AsyncSession, amendment_id: str, reason: str
) -> AmendmentRecord | None:
    return await update_amendment(
        session,
        amendment_id,
        is_active=False,
        reverted=True,
        evaluation_status="reverted",
        revert_reason=reason,
        reverted_at=datetime.now(UTC),
    )


async def get_active_amendments(session: AsyncSession, role: str) -> list[AmendmentRecord]:
    result = await session.execute(
        select(AmendmentRecord)
        .options(selectinload(AmendmentRecord.evaluations))
        .where(AmendmentRecord.target_role == role, AmendmentRecord.is_active.is_(True))
        .order_by(AmendmentRecord.created_at)
    )
    return list(result.scalars().all())


async def record_amendment_evaluation(
    session: AsyncSession, amendment_id: str, cos_score: float
) -> AmendmentEvaluation:
    position = (
        await session.execute(
            select(func.count(AmendmentEvaluation.id)).where(
                AmendmentEvaluation.amendment_id == amendment_id
            )
        )
    ).scalar_one()
    row = AmendmentEvaluation(amendment_id=amendment_id, position=position + 1, cos_score=cos_score)
    session.add(row)
    await session.flush()
    return row


# =============================================================================
# Reviews, Recommendations, Safety Log
# =============================================================================


async def create_review(session: AsyncSession, **fields: Any) -> CosReviewRecord:
    row = CosReviewRecord(**fields)
    session.add(row)
    await session.flush()
    return row


async def complete_review(
    session: AsyncSession, review_id: str, **fields: Any
) -> CosReviewRecord | None:
    row = await session.get(CosReviewRecord, review_id)
    if row is None:
        return None
    for key, value in fields.items():
        setattr(row, key, value)
    row.status = "completed"
    row.completed_at = datetime.now(UTC)
    await session.flush()
    return row


async def save_recommendation(session: AsyncSession, **fields: Any) -> RecommendationRecord:
    row = RecommendationRecord(**fields)
    session.add(row)
    await session.flush()
    return row


async def expire_recommendations(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(
        update(RecommendationRecord)
        .where(RecommendationRecord.status == "pending", RecommendationRecord.expires_at < now)
        .values(status="expired")
    )
    return result.rowcount or 0


async def log_safety_event(session: AsyncSession, **fields: Any) -> SafetyEvent:
    row = SafetyEvent(**fields)
    session.add(row)
    await session.flush()
    return row
