"""Persistence collaborator.

Every operation returns a ``StoreResult(data, error)`` pair. Connectivity
problems become ``error="unavailable"``; nothing here raises into the
scheduler. ``ResilientStore`` mirrors every write into memory and replays
writes the primary backend missed once it is reachable again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, NamedTuple, Protocol, TypeVar
from uuid import uuid4

from .types import (
    Amendment,
    AmendmentType,
    CosReview,
    Escalation,
    EvaluationStatus,
    HistoryEntry,
    LearningRecord,
    PatternFinding,
    PatternType,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNAVAILABLE = "unavailable"
TIMEOUT = "timeout"


class StoreResult(NamedTuple):
    data: Any
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Store(Protocol):
    def is_available(self) -> bool: ...

    async def append_history(self, entry: HistoryEntry) -> StoreResult: ...

    async def fetch_history(self, role: str, limit: int = 20) -> StoreResult: ...

    async def create_amendment(self, amendment: Amendment) -> StoreResult: ...

    async def update_amendment(self, amendment: Amendment) -> StoreResult: ...

    async def revert_amendment(self, amendment_id: str, reason: str) -> StoreResult: ...

    async def list_active_amendments(self, role: str) -> StoreResult: ...

    async def record_amendment_evaluation(self, amendment_id: str, score: float) -> StoreResult: ...

    async def create_review(self, review: CosReview) -> StoreResult: ...

    async def complete_review(self, review: CosReview) -> StoreResult: ...

    async def upsert_learning(self, record: LearningRecord) -> StoreResult: ...

    async def fetch_learnings(self) -> StoreResult: ...

    async def log_pattern(
        self, role: str, finding: PatternFinding, task_window: int | None = None
    ) -> StoreResult: ...

    async def link_pattern(self, pattern_id: str, amendment_id: str) -> StoreResult: ...

    async def save_escalation(self, escalation: Escalation) -> StoreResult: ...

    async def update_escalation(self, escalation: Escalation) -> StoreResult: ...

    async def save_recommendation(self, recommendation: Any) -> StoreResult: ...

    async def expire_recommendations(self, now: datetime) -> StoreResult: ...

    async def log_safety_event(
        self, role: str, constraint_type: str, details: dict[str, Any], action_taken: str
    ) -> StoreResult: ...


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryStore:
    """In-process backend used when the database is disabled, and as a write mirror.

    With ``max_entries`` set, each collection keeps at most that many records
    and drops the oldest first. Active amendments and learnings are never dropped.
    """

    def __init__(self, *, available: bool = True, max_entries: int | None = None) -> None:
        self.available = available
        self.max_entries = max_entries
        self.history: list[HistoryEntry] = []
        self.amendments: dict[str, Amendment] = {}
        self.reviews: dict[str, CosReview] = {}
        self.learnings: dict[tuple[str, str], LearningRecord] = {}
        self.patterns: dict[str, dict[str, Any]] = {}
        self.escalations: dict[str, Escalation] = {}
        self.recommendations: dict[str, Any] = {}
        self.safety_log: list[dict[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    def _guard(self) -> StoreResult | None:
        if not self.available:
            return StoreResult(None, UNAVAILABLE)
        return None

    def _trim(self, records: dict[str, Any] | list[Any]) -> None:
        if self.max_entries is None or len(records) <= self.max_entries:
            return
        excess = len(records) - self.max_entries
        if isinstance(records, list):
            del records[:excess]
            return
        for key in list(records)[:excess]:
            del records[key]

    async def append_history(self, entry: HistoryEntry) -> StoreResult:
        if down := self._guard():
            return down
        self.history.append(entry)
        self._trim(self.history)
        return StoreResult(entry)

    async def fetch_history(self, role: str, limit: int = 20) -> StoreResult:
        if down := self._guard():
            return down
        entries = [e for e in self.history if e.role == role]
        entries.sort(key=lambda e: e.completed_at, reverse=True)
        return StoreResult(entries[:limit])

    async def create_amendment(self, amendment: Amendment) -> StoreResult:
        if down := self._guard():
            return down
        self.amendments[amendment.id] = amendment
        if self.max_entries is not None and len(self.amendments) > self.max_entries:
            inactive = [key for key, a in self.amendments.items() if not a.is_active]
            for key in inactive[: len(self.amendments) - self.max_entries]:
                del self.amendments[key]
        return StoreResult(amendment)

    async def update_amendment(self, amendment: Amendment) -> StoreResult:
        if down := self._guard():
            return down
        if amendment.id not in self.amendments:
            return StoreResult(None, f"unknown amendment {amendment.id}")
        self.amendments[amendment.id] = amendment
        return StoreResult(amendment)

    async def revert_amendment(self, amendment_id: str, reason: str) -> StoreResult:
        if down := self._guard():
            return down
        amendment = self.amendments.get(amendment_id)
        if amendment is None:
            return StoreResult(None, f"unknown amendment {amendment_id}")
        amendment.is_active = False
        amendment.reverted = True
        amendment.evaluation_status = EvaluationStatus.REVERTED
        return StoreResult(amendment)

    async def list_active_amendments(self, role: str) -> StoreResult:
        if down := self._guard():
            return down
        active = [a for a in self.amendments.values() if a.target_role == role and a.is_active]
        active.sort(key=lambda a: a.created_at)
        return StoreResult(active)

    async def record_amendment_evaluation(self, amendment_id: str, score: float) -> StoreResult:
        if down := self._guard():
            return down
        if amendment_id not in self.amendments:
            return StoreResult(None, f"unknown amendment {amendment_id}")
        return StoreResult({"amendment_id": amendment_id, "cos_score": score})

    async def create_review(self, review: CosReview) -> StoreResult:
        if down := self._guard():
            return down
        self.reviews[review.id] = review
        self._trim(self.reviews)
        return StoreResult(review)

    async def complete_review(self, review: CosReview) -> StoreResult:
        if down := self._guard():
            return down
        self.reviews[review.id] = review
        return StoreResult(review)

    async def upsert_learning(self, record: LearningRecord) -> StoreResult:
        if down := self._guard():
            return down
        existing = self.learnings.get(record.key)
        if existing is None:
            existing = LearningRecord(record.role, record.task_type)
            self.learnings[record.key] = existing
        existing.merge(record)
        return StoreResult(existing)

    async def fetch_learnings(self) -> StoreResult:
        if down := self._guard():
            return down
        return StoreResult(
            [LearningRecord(r.role, r.task_type, r.total, r.successes) for r in self.learnings.values()]
        )

    async def log_pattern(
        self, role: str, finding: PatternFinding, task_window: int | None = None
    ) -> StoreResult:
        if down := self._guard():
            return down
        if finding.id is None:
            finding.id = str(uuid4())
        self.patterns[finding.id] = {
            "role": role,
            "finding": finding,
            "task_window": task_window,
            "amendment_id": None,
        }
        self._trim(self.patterns)
        return StoreResult(finding.id)

    async def link_pattern(self, pattern_id: str, amendment_id: str) -> StoreResult:
        if down := self._guard():
            return down
        entry = self.patterns.get(pattern_id)
        if entry is None:
            return StoreResult(None, f"unknown pattern {pattern_id}")
        entry["amendment_id"] = amendment_id
        return StoreResult(entry)

    async def save_escalation(self, escalation: Escalation) -> StoreResult:
        if down := self._guard():
            return down
        self.escalations[escalation.id] = escalation
        self._trim(self.escalations)
        return StoreResult(escalation)

    async def update_escalation(self, escalation: Escalation) -> StoreResult:
        return await self.save_escalation(escalation)

    async def save_recommendation(self, recommendation: Any) -> StoreResult:
        if down := self._guard():
            return down
        self.recommendations[recommendation.id] = recommendation
        self._trim(self.recommendations)
        return StoreResult(recommendation)

    async def expire_recommendations(self, now: datetime) -> StoreResult:
        if down := self._guard():
            return down
        expired = 0
        for rec in self.recommendations.values():
            if rec.status == "pending" and rec.is_expired(now):
                rec.status = "expired"
                expired += 1
        return StoreResult(expired)

    async def log_safety_event(
        self, role: str, constraint_type: str, details: dict[str, Any], action_taken: str
    ) -> StoreResult:
        if down := self._guard():
            return down
        event = {
            "role": role,
            "constraint_type": constraint_type,
            "details": details,
            "action_taken": action_taken,
        }
        self.safety_log.append(event)
        self._trim(self.safety_log)
        return StoreResult(event)


# =============================================================================
# SQL backend
# =============================================================================


def _amendment_from_row(row: Any) -> Amendment:
    amendment = Amendment(
        id=row.id,
        target_role=row.target_role,
        created_by=row.created_by,
        trigger_reason=row.trigger_reason,
        trigger_pattern=row.trigger_pattern,
        amendment_type=AmendmentType(row.amendment_type),
        target_area=row.target_area,
        content=row.content,
        evaluation_window=row.evaluation_window,
        baseline_score=row.baseline_score,
        pattern_type=PatternType(row.pattern_type) if row.pattern_type else None,
        post_score=row.post_score,
        evaluations=[e.cos_score for e in sorted(row.evaluations, key=lambda e: e.position)],
        evaluation_status=EvaluationStatus(row.evaluation_status),
        is_active=row.is_active,
        reverted=row.reverted,
    )
    if row.created_at is not None:
        amendment.created_at = row.created_at
    return amendment


class SqlStore:
    """PostgreSQL backend built on ``db.py``; every call is bounded by a timeout."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._available = True

    def is_available(self) -> bool:
        return self._available

    async def _run(self, name: str, op: Callable[[Any], Awaitable[T]]) -> StoreResult:
        from . import db

        async def _call() -> T:
            async with db.get_session() as session:
                return await op(session)

        try:
            data = await asyncio.wait_for(_call(), timeout=self.timeout)
        except TimeoutError:
            self._available = False
            logger.warning("Store %s timed out after %.1fs", name, self.timeout)
            return StoreResult(None, TIMEOUT)
        except Exception as exc:
            self._available = False
            logger.warning("Store %s failed: %s", name, exc)
            return StoreResult(None, UNAVAILABLE)
        self._available = True
        return StoreResult(data)

    async def append_history(self, entry: HistoryEntry) -> StoreResult:
        from . import db

        fields = entry.to_dict()
        fields["due_date"] = entry.due_date
        fields["completed_at"] = entry.completed_at
        return await self._run("append_history", lambda s: db.append_history(s, **fields))

    async def fetch_history(self, role: str, limit: int = 20) -> StoreResult:
        from . import db

        async def op(session: Any) -> list[HistoryEntry]:
            rows = await db.get_history(session, role, limit)
            return [
                HistoryEntry(
                    task_id=r.task_id,
                    role=r.role,
                    success=r.success,
                    status=r.status,
                    category=r.category,
                    time_taken_seconds=r.time_taken_seconds,
                    quality_score=r.quality_score,
                    failure_reason=r.failure_reason,
                    tools_used=r.tools_used,
                    retry_count=r.retry_count,
                    due_date=r.due_date,
                    completed_at=r.completed_at,
                    estimated_seconds=r.estimated_seconds,
                    variance_percent=r.variance_percent,
                )
                for r in rows
            ]

        return await self._run("fetch_history", op)

    async def create_amendment(self, amendment: Amendment) -> StoreResult:
        from . import db

        fields = amendment.to_dict()
        fields["created_at"] = amendment.created_at
        return await self._run("create_amendment", lambda s: db.create_amendment(s, **fields))

    async def update_amendment(self, amendment: Amendment) -> StoreResult:
        from . import db

        return await self._run(
            "update_amendment",
            lambda s: db.update_amendment(
                s,
                amendment.id,
                post_score=amendment.post_score,
                evaluation_status=amendment.evaluation_status.value,
                is_active=amendment.is_active,
                reverted=amendment.reverted,
            ),
        )

    async def revert_amendment(self, amendment_id: str, reason: str) -> StoreResult:
        from . import db

        return await self._run("revert_amendment", lambda s: db.revert_amendment(s, amendment_id, reason))

    async def list_active_amendments(self, role: str) -> StoreResult:
        from . import db

        async def op(session: Any) -> list[Amendment]:
            return [_amendment_from_row(r) for r in await db.get_active_amendments(session, role)]

        return await self._run("list_active_amendments", op)

    async def record_amendment_evaluation(self, amendment_id: str, score: float) -> StoreResult:
        from . import db

        return await self._run(
            "record_amendment_evaluation",
            lambda s: db.record_amendment_evaluation(s, amendment_id, score),
        )

    async def create_review(self, review: CosReview) -> StoreResult:
        from . import db

        return await self._run(
            "create_review",
            lambda s: db.create_review(
                s,
                id=review.id,
                reviewer_role=review.reviewer_role,
                subordinate_role=review.subordinate_role,
                review_type=review.review_type,
            ),
        )

    async def complete_review(self, review: CosReview) -> StoreResult:
        from . import db

        details = review.to_dict()
        return await self._run(
            "complete_review",
            lambda s: db.complete_review(
                s,
                review.id,
                tasks_analyzed=review.tasks_analyzed,
                trend=review.trend.value,
                trend_slope=review.trend_slope,
                cos_score=review.cos_score,
                intervention=review.intervention.value,
                amendment_id=review.amendment_id,
                details=details,
            ),
        )

    async def upsert_learning(self, record: LearningRecord) -> StoreResult:
        from . import db

        return await self._run(
            "upsert_learning",
            lambda s: db.upsert_learning(s, record.role, record.task_type, record.total, record.successes),
        )

    async def fetch_learnings(self) -> StoreResult:
        from . import db

        async def op(session: Any) -> list[LearningRecord]:
            return [
                LearningRecord(r.role, r.task_type, r.total_count, r.success_count)
                for r in await db.get_learnings(session)
            ]

        return await self._run("fetch_learnings", op)

    async def log_pattern(
        self, role: str, finding: PatternFinding, task_window: int | None = None
    ) -> StoreResult:
        from . import db

        if finding.id is None:
            finding.id = str(uuid4())
        return await self._run(
            "log_pattern",
            lambda s: db.log_pattern(
                s,
                id=finding.id,
                role=role,
                pattern_type=finding.type.value,
                confidence=finding.confidence,
                evidence=finding.evidence,
                suggested_action=finding.suggested_action,
                task_window=task_window,
            ),
        )

    async def link_pattern(self, pattern_id: str, amendment_id: str) -> StoreResult:
        from . import db

        return await self._run("link_pattern", lambda s: db.link_pattern(s, pattern_id, amendment_id))

    async def save_escalation(self, escalation: Escalation) -> StoreResult:
        from . import db

        return await self._run(
            "save_escalation",
            lambda s: db.save_escalation(
                s,
                id=escalation.id,
                role=escalation.role,
                task_id=escalation.task.id,
                task=escalation.task.to_dict(),
                reasons=list(escalation.reasons),
                priority=escalation.priority.value,
                status=escalation.status.value,
                recommendation=escalation.recommendation,
            ),
        )

    async def update_escalation(self, escalation: Escalation) -> StoreResult:
        from . import db

        return await self._run(
            "update_escalation",
            lambda s: db.resolve_escalation(
                s, escalation.id, escalation.decision or {}, escalation.resolved_at
            ),
        )

    async def save_recommendation(self, recommendation: Any) -> StoreResult:
        from . import db

        return await self._run(
            "save_recommendation",
            lambda s: db.save_recommendation(
                s,
                id=recommendation.id,
                team_id=recommendation.team_id,
                target_role=recommendation.target_role,
                payload=recommendation.to_dict(),
                status=recommendation.status,
                expires_at=recommendation.expires_at,
            ),
        )

    async def expire_recommendations(self, now: datetime) -> StoreResult:
        from . import db

        return await self._run("expire_recommendations", lambda s: db.expire_recommendations(s, now))

    async def log_safety_event(
        self, role: str, constraint_type: str, details: dict[str, Any], action_taken: str
    ) -> StoreResult:
        from . import db

        return await self._run(
            "log_safety_event",
            lambda s: db.log_safety_event(
                s,
                role=role,
                constraint_type=constraint_type,
                details=details,
                action_taken=action_taken,
            ),
        )


# =============================================================================
# Mirror + replay
# =============================================================================

_WRITES = (
    "append_history",
    "create_amendment",
    "update_amendment",
    "revert_amendment",
    "record_amendment_evaluation",
    "create_review",
    "complete_review",
    "upsert_learning",
    "log_pattern",
    "link_pattern",
    "save_escalation",
    "update_escalation",
    "save_recommendation",
    "expire_recommendations",
    "log_safety_event",
)


class ResilientStore:
    """Wraps a primary store with an in-memory mirror.

    Writes always land in the mirror. Writes the primary rejects are queued
    and replayed in order on the next call once the primary answers again.
    Reads come from the primary unless it is behind (queued writes) or down.
    The mirror keeps at most ``mirror_size`` records per collection.
    """

    def __init__(
        self,
        primary: Store,
        mirror: MemoryStore | None = None,
        max_pending: int = 1000,
        mirror_size: int = 10000,
    ) -> None:
        self.primary = primary
        self.mirror = mirror or MemoryStore(max_entries=mirror_size)
        self._pending: deque[tuple[str, tuple[Any, ...], dict[str, Any]]] = deque(maxlen=max_pending)

    def is_available(self) -> bool:
        return self.primary.is_available()

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def replay(self) -> int:
        """Push queued writes to the primary; stops at the first failure."""
        replayed = 0
        while self._pending:
            name, args, kwargs = self._pending[0]
            result = await getattr(self.primary, name)(*args, **kwargs)
            if result.error in (UNAVAILABLE, TIMEOUT):
                break
            self._pending.popleft()
            replayed += 1
        if replayed:
            logger.info("Replayed %d queued store writes", replayed)
        return replayed

    async def _write(self, name: str, *args: Any, **kwargs: Any) -> StoreResult:
        mirrored = await getattr(self.mirror, name)(*args, **kwargs)
        if self._pending:
            await self.replay()
        if self._pending:
            self._pending.append((name, args, kwargs))
            return mirrored
        result = await getattr(self.primary, name)(*args, **kwargs)
        if result.error in (UNAVAILABLE, TIMEOUT):
            logger.warning("Store %s degraded to memory (%s)", name, result.error)
            self._pending.append((name, args, kwargs))
            return mirrored
        return result

    async def _read(self, name: str, *args: Any) -> StoreResult:
        if not self._pending:
            result = await getattr(self.primary, name)(*args)
            if result.ok:
                return result
        return await getattr(self.mirror, name)(*args)

    async def fetch_history(self, role: str, limit: int = 20) -> StoreResult:
        return await self._read("fetch_history", role, limit)

    async def list_active_amendments(self, role: str) -> StoreResult:
        return await self._read("list_active_amendments", role)

    async def fetch_learnings(self) -> StoreResult:
        return await self._read("fetch_learnings")

    def __getattr__(self, name: str) -> Any:
        if name in _WRITES:

            async def write(*args: Any, **kwargs: Any) -> StoreResult:
                return await self._write(name, *args, **kwargs)

            return write
        raise AttributeError(name)
