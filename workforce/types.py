"""Domain entities shared by the scheduler, router, detectors and review engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_datetime(value: Any) -> datetime | None:
    """Coerce ISO strings, dates and naive datetimes into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class Priority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Priority:
        """Unknown tiers fall back to MEDIUM."""
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.MEDIUM


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


class TaskStatus(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class ResultKind(StrEnum):
    COMPLETED = "completed"
    ESCALATE = "escalate"
    HANDOFF = "handoff"
    FAILED = "failed"


@dataclass
class HandoffRequest:
    target_role: str
    context: str
    deliverables: list[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """What a role's execution capability returns for one task."""

    analysis: str = ""
    action: str = ""
    decision: str = ""
    success: bool = True
    escalate: bool = False
    escalate_reason: str | None = None
    recommendation: str | None = None
    handoff: HandoffRequest | None = None
    quality_score: float | None = None
    tools_used: list[str] = field(default_factory=list)
    time_taken_seconds: float | None = None
    failure_reason: str | None = None

    @property
    def outcome(self) -> ResultKind:
        if not self.success:
            return ResultKind.FAILED
        if self.escalate:
            return ResultKind.ESCALATE
        if self.handoff is not None:
            return ResultKind.HANDOFF
        return ResultKind.COMPLETED

    @classmethod
    def failed(cls, reason: str) -> ExecutionResult:
        return cls(success=False, failure_reason=reason)


@dataclass
class Task:
    """A unit of work moving through the queue."""

    id: str
    content: str
    priority: Priority = Priority.MEDIUM
    assigned_role: str | None = None
    notes: str = ""
    due_date: datetime | None = None
    blocked_by: list[str] | None = None
    parent_task_id: str | None = None
    workflow: str | None = None
    category: str | None = None
    deliverables: list[str] = field(default_factory=list)
    estimated_seconds: float | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority_score: int = 0
    retry_count: int = 0
    result: ExecutionResult | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancel_requested: bool = False

    def __post_init__(self) -> None:
        self.priority = Priority.parse(self.priority)
        self.due_date = parse_datetime(self.due_date)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        blocked_by = data.get("blocked_by", data.get("blockedBy"))
        return cls(
            id=str(data.get("id") or uuid4()),
            content=str(data.get("content", "")),
            priority=Priority.parse(data.get("priority", Priority.MEDIUM)),
            assigned_role=data.get("assigned_role"),
            notes=data.get("notes") or "",
            due_date=parse_datetime(data.get("due_date")),
            blocked_by=list(blocked_by) if blocked_by is not None else None,
            parent_task_id=data.get("parent_task_id"),
            workflow=data.get("workflow"),
            category=data.get("category"),
            deliverables=list(data.get("deliverables") or []),
            estimated_seconds=data.get("estimated_seconds"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "priority": self.priority.value,
            "priority_score": self.priority_score,
            "assigned_role": self.assigned_role,
            "notes": self.notes,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "blocked_by": self.blocked_by,
            "parent_task_id": self.parent_task_id,
            "workflow": self.workflow,
            "category": self.category,
            "status": self.status.value,
            "retry_count": self.retry_count,
        }


class EscalationStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"


@dataclass
class Escalation:
    """A request for a decision above the acting role's authority."""

    role: str
    task: Task
    reasons: list[str]
    priority: Priority = Priority.MEDIUM
    id: str = field(default_factory=lambda: f"esc-{uuid4().hex[:12]}")
    status: EscalationStatus = EscalationStatus.PENDING
    recommendation: str | None = None
    decision: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "task_id": self.task.id,
            "reasons": list(self.reasons),
            "priority": self.priority.value,
            "status": self.status.value,
            "recommendation": self.recommendation,
            "decision": self.decision,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class RoutingDecision:
    task_id: str
    primary_role: str
    alternate_roles: list[str]
    confidence: float
    reasoning: str
    task_type: str = "general"
    factors: list[str] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    outcome: bool | None = None


@dataclass
class LearningRecord:
    """Accumulated routing outcomes for a (role, task type) pair."""

    role: str
    task_type: str
    total: int = 0
    successes: int = 0

    def __post_init__(self) -> None:
        if self.total < 0 or self.successes < 0 or self.successes > self.total:
            raise ValueError(
                f"invalid learning counts for {self.key}: {self.successes}/{self.total}"
            )

    @property
    def key(self) -> tuple[str, str]:
        return (self.role, self.task_type)

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0

    def record(self, success: bool) -> None:
        self.total += 1
        if success:
            self.successes += 1

    def merge(self, other: LearningRecord) -> None:
        """Keep whichever side has seen more attempts; counts never go backwards."""
        if other.total > self.total:
            self.total = other.total
            self.successes = other.successes


@dataclass
class HistoryEntry:
    """One completed (or terminally failed) task, as seen by the learning loop."""

    task_id: str
    role: str
    success: bool
    status: str = "completed"
    category: str | None = None
    time_taken_seconds: float | None = None
    quality_score: float | None = None
    failure_reason: str | None = None
    tools_used: list[str] | None = None
    retry_count: int = 0
    due_date: datetime | None = None
    completed_at: datetime = field(default_factory=utcnow)
    estimated_seconds: float | None = None
    variance_percent: float | None = None

    def __post_init__(self) -> None:
        self.due_date = parse_datetime(self.due_date)
        self.completed_at = parse_datetime(self.completed_at) or utcnow()
        if (
            self.variance_percent is None
            and self.estimated_seconds
            and self.time_taken_seconds is not None
        ):
            self.variance_percent = (
                (self.time_taken_seconds - self.estimated_seconds) / self.estimated_seconds
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        status = data.get("status") or ("completed" if data.get("success", True) else "failed")
        success = data.get("success")
        if success is None:
            success = status in ("completed", "success", "approved")
        return cls(
            task_id=str(data.get("task_id") or uuid4()),
            role=str(data.get("role", "")),
            success=bool(success),
            status=status,
            category=data.get("category"),
            time_taken_seconds=data.get("time_taken_seconds"),
            quality_score=data.get("quality_score"),
            failure_reason=data.get("failure_reason"),
            tools_used=data.get("tools_used"),
            retry_count=int(data.get("retry_count") or 0),
            due_date=data.get("due_date"),
            completed_at=data.get("completed_at") or utcnow(),
            estimated_seconds=data.get("estimated_seconds"),
            variance_percent=data.get("variance_percent"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "role": self.role,
            "success": self.success,
            "status": self.status,
            "category": self.category,
            "time_taken_seconds": self.time_taken_seconds,
            "quality_score": self.quality_score,
            "failure_reason": self.failure_reason,
            "tools_used": self.tools_used,
            "retry_count": self.retry_count,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat(),
            "estimated_seconds": self.estimated_seconds,
            "variance_percent": self.variance_percent,
        }


class PatternType(StrEnum):
    REPEATED_FAILURE = "repeated_failure"
    TIME_REGRESSION = "time_regression"
    QUALITY_DECLINE = "quality_decline"
    CATEGORY_WEAKNESS = "category_weakness"
    TOOL_INEFFICIENCY = "tool_inefficiency"


@dataclass
class PatternFinding:
    type: PatternType
    confidence: float
    evidence: dict[str, Any]
    suggested_action: str
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "confidence": round(self.confidence, 3),
            "evidence": self.evidence,
            "suggested_action": self.suggested_action,
        }


class AmendmentType(StrEnum):
    APPEND = "append"
    REPLACE = "replace"


class EvaluationStatus(StrEnum):
    PENDING = "pending"
    EVALUATING = "evaluating"
    PROVEN = "proven"
    FAILED = "failed"
    REVERTED = "reverted"


@dataclass
class Amendment:
    """A bounded, reversible change to a role's operating guidance."""

    target_role: str
    created_by: str
    trigger_reason: str
    trigger_pattern: str
    amendment_type: AmendmentType
    target_area: str
    content: str
    evaluation_window: int
    baseline_score: float
    pattern_type: PatternType | None = None
    id: str = field(default_factory=lambda: f"amd-{uuid4().hex[:12]}")
    post_score: float | None = None
    evaluations: list[float] = field(default_factory=list)
    evaluation_status: EvaluationStatus = EvaluationStatus.EVALUATING
    is_active: bool = True
    reverted: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "evaluation_window" and "evaluation_window" in self.__dict__:
            raise AttributeError("evaluation_window is fixed at creation")
        super().__setattr__(name, value)

    @property
    def window_filled(self) -> bool:
        return len(self.evaluations) >= self.evaluation_window

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_role": self.target_role,
            "created_by": self.created_by,
            "trigger_reason": self.trigger_reason,
            "trigger_pattern": self.trigger_pattern,
            "amendment_type": self.amendment_type.value,
            "target_area": self.target_area,
            "content": self.content,
            "pattern_type": self.pattern_type.value if self.pattern_type else None,
            "baseline_score": self.baseline_score,
            "post_score": self.post_score,
            "evaluation_window": self.evaluation_window,
            "evaluation_status": self.evaluation_status.value,
            "is_active": self.is_active,
            "reverted": self.reverted,
        }


class TrendDirection(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class Intervention(StrEnum):
    NONE = "none"
    AMENDMENT = "amendment"
    ESCALATION = "escalation"
    SKIPPED = "skipped"


@dataclass
class CosReview:
    """Snapshot of one reviewer looking at one subordinate in one cycle."""

    reviewer_role: str
    subordinate_role: str
    review_type: str
    tasks_analyzed: int = 0
    trend: TrendDirection = TrendDirection.STABLE
    trend_slope: float = 0.0
    variance_trend: TrendDirection = TrendDirection.STABLE
    cos_score: float | None = None
    consecutive_failures: int = 0
    intervention: Intervention = Intervention.NONE
    amendment_id: str | None = None
    escalation_reason: str | None = None
    findings: list[PatternFinding] = field(default_factory=list)
    status: str = "pending"
    message: str = ""
    id: str = field(default_factory=lambda: f"rev-{uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reviewer_role": self.reviewer_role,
            "subordinate_role": self.subordinate_role,
            "review_type": self.review_type,
            "tasks_analyzed": self.tasks_analyzed,
            "trend": self.trend.value,
            "trend_slope": round(self.trend_slope, 4),
            "variance_trend": self.variance_trend.value,
            "cos_score": self.cos_score,
            "consecutive_failures": self.consecutive_failures,
            "intervention": self.intervention.value,
            "amendment_id": self.amendment_id,
            "escalation_reason": self.escalation_reason,
            "findings": [f.to_dict() for f in self.findings],
            "status": self.status,
            "message": self.message,
        }


# =============================================================================
# Role capabilities
# =============================================================================


@runtime_checkable
class CanProcessTasks(Protocol):
    """A role's execution capability."""

    async def process(self, task: Task) -> ExecutionResult: ...


@runtime_checkable
class CanEmitEscalations(Protocol):
    """Anything that accepts escalations into the human decision queue."""

    async def handle_escalation(
        self,
        role: str,
        task: Task,
        reasons: list[str],
        priority: Priority = Priority.MEDIUM,
        recommendation: str | None = None,
    ) -> Any: ...
