"""
Task orchestrator: priority queue, dependency gating and bounded dispatch.

The orchestrator owns the queue, the in-flight set and the escalation queue.
Everything else reaches them through its public coroutines. Persistence goes
through a ``Store``; store failures are logged and never stop scheduling.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections import Counter, deque
from collections.abc import Callable, Collection, Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from .config import settings
from .errors import OperationResult, ReasonCode
from .escalation import EscalationDetector
from .events import EventBus, EventType, WorkforceEvent
from .roles import DEFAULT_ORGANIZATION, Organization
from .router import LearnedRouter
from .store import MemoryStore, Store
from .types import (
    CanProcessTasks,
    Escalation,
    EscalationStatus,
    ExecutionResult,
    HandoffRequest,
    HistoryEntry,
    Priority,
    ResultKind,
    Task,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 75,
    Priority.MEDIUM: 50,
    Priority.LOW: 25,
}
OVERDUE_BOOST = 20
DUE_TODAY_BOOST = 15
DUE_SOON_BOOST = 8
DUE_SOON_WINDOW = timedelta(days=3)
UNBLOCKED_BOOST = 10


def priority_score(task: Task, completed: Collection[str] = (), now: datetime | None = None) -> int:
    """Tier weight plus due-date urgency plus a bonus once declared blockers are done."""
    now = now or utcnow()
    score = PRIORITY_WEIGHTS.get(Priority.parse(task.priority), PRIORITY_WEIGHTS[Priority.MEDIUM])

    if task.due_date is not None:
        if task.due_date < now:
            score += OVERDUE_BOOST
        elif task.due_date.date() == now.date():
            score += DUE_TODAY_BOOST
        elif task.due_date - now <= DUE_SOON_WINDOW:
            score += DUE_SOON_BOOST

    if task.blocked_by is not None and all(b in completed for b in task.blocked_by):
        score += UNBLOCKED_BOOST
    return score


def can_dispatch(task: Task, completed: Collection[str]) -> bool:
    return not task.blocked_by or all(b in completed for b in task.blocked_by)


class Orchestrator:
    """Priority scheduler over role executors."""

    def __init__(
        self,
        executors: Mapping[str, CanProcessTasks],
        *,
        router: LearnedRouter | None = None,
        detector: EscalationDetector | None = None,
        store: Store | None = None,
        events: EventBus | None = None,
        organization: Organization = DEFAULT_ORGANIZATION,
        max_concurrent: int | None = None,
        execution_timeout: float | None = None,
        max_retries: int | None = None,
        retry_penalty: int | None = None,
        tick_interval: float | None = None,
        retain_finished: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.executors = dict(executors)
        self.store = store or MemoryStore()
        self.router = router or LearnedRouter(self.store)
        self.detector = detector or EscalationDetector()
        self.events = events or EventBus()
        self.organization = organization
        self.max_concurrent = max_concurrent or settings.max_concurrent
        self.execution_timeout = execution_timeout or settings.execution_timeout
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_penalty = settings.retry_penalty if retry_penalty is None else retry_penalty
        self.tick_interval = tick_interval or settings.tick_interval_seconds
        self.retain_finished = retain_finished or settings.finished_task_retention
        self.clock = clock

        self.tasks: dict[str, Task] = {}
        self.completed: set[str] = set()
        self.in_flight: dict[str, asyncio.Task[None]] = {}
        self.escalations: dict[str, Escalation] = {}
        self._queue: list[Task] = []
        self._sequence: dict[str, int] = {}
        self._next_seq = 0
        self._pending_by_task: dict[str, str] = {}
        self._roles: dict[str, str] = {}
        self._finished: deque[str] = deque()
        self._resolved: deque[str] = deque()

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def priority_score(self, task: Task, now: datetime | None = None) -> int:
        return priority_score(task, self.completed, now or self.clock())

    def can_dispatch(self, task: Task) -> bool:
        return can_dispatch(task, self.completed)

    @property
    def queue(self) -> list[Task]:
        return list(self._queue)

    def _sort_key(self, task: Task) -> tuple[int, int]:
        return (-task.priority_score, self._sequence[task.id])

    def _score(self, task: Task, now: datetime) -> int:
        return self.priority_score(task, now) - task.retry_count * self.retry_penalty

    def _insert(self, task: Task) -> None:
        task.priority_score = self._score(task, self.clock())
        task.status = TaskStatus.QUEUED
        bisect.insort(self._queue, task, key=self._sort_key)

    def _rescore(self) -> None:
        now = self.clock()
        for task in self._queue:
            task.priority_score = self._score(task, now)
        # list.sort is stable; equal scores keep enqueue order
        self._queue.sort(key=self._sort_key)

    async def enqueue(self, task: Task) -> OperationResult:
        if task.id in self.tasks:
            return OperationResult.failure(
                ReasonCode.DUPLICATE_TASK, f"Task {task.id} already exists"
            )

        self.tasks[task.id] = task
        self._sequence[task.id] = self._next_seq
        self._next_seq += 1
        self._insert(task)

        logger.info("Queued task %s (score: %d)", task.id, task.priority_score)
        await self._emit(EventType.TASK_QUEUED, task, data=task.to_dict())
        return OperationResult.success(task)

    async def enqueue_many(self, tasks: list[Task]) -> list[OperationResult]:
        return [await self.enqueue(task) for task in tasks]

    async def cancel(self, task_id: str) -> OperationResult:
        task = self.tasks.get(task_id)
        if task is None:
            return OperationResult.failure(ReasonCode.UNKNOWN_TASK, f"Unknown task {task_id}")
        if task.status.is_terminal:
            return OperationResult.failure(
                ReasonCode.ALREADY_RESOLVED, f"Task {task_id} is already {task.status.value}"
            )

        if task in self._queue:
            self._queue.remove(task)
            task.status = TaskStatus.CANCELLED
            task.completed_at = self.clock()
            self._retire(task)
            await self._emit(EventType.TASK_CANCELLED, task, "Removed from queue")
            return OperationResult.success(task, "removed from queue")

        if task_id in self.in_flight:
            # Cooperative: the executor may watch the flag; completion records the outcome.
            task.cancel_requested = True
            return OperationResult.success(task, "cancellation requested")

        return OperationResult.failure(
            ReasonCode.ALREADY_RESOLVED, f"Task {task_id} is {task.status.value}"
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _next_dispatchable(self) -> Task | None:
        for task in self._queue:
            if self.can_dispatch(task):
                return task
        return None

    async def tick(self) -> list[str]:
        """Fill free in-flight slots with the best dispatchable tasks."""
        self._rescore()
        dispatched: list[str] = []
        while len(self.in_flight) < self.max_concurrent:
            task = self._next_dispatchable()
            if task is None:
                break
            self._queue.remove(task)
            if await self._dispatch(task):
                dispatched.append(task.id)
        return dispatched

    def _executor_for(self, roles: list[str]) -> tuple[str, CanProcessTasks] | None:
        for role in roles:
            executor = self.executors.get(role)
            if executor is not None:
                return role, executor
        return None

    async def _dispatch(self, task: Task) -> bool:
        decision = self.router.route(task)
        picked = self._executor_for(
            [decision.primary_role, *decision.alternate_roles, self.organization.default_role]
        )
        if picked is None:
            logger.warning("No executor for %s (routed to %s)", task.id, decision.primary_role)
            task.status = TaskStatus.FAILED
            task.completed_at = self.clock()
            task.result = ExecutionResult.failed(f"No executor for role {decision.primary_role}")
            await self._record_history(task, decision.primary_role, TaskStatus.FAILED.value, success=False)
            self._retire(task)
            await self._emit(
                EventType.TASK_FAILED,
                task,
                task.result.failure_reason or "",
                role=decision.primary_role,
                data={"reason": ReasonCode.UNKNOWN_ROLE.value},
            )
            return False

        role, executor = picked
        task.status = TaskStatus.IN_PROGRESS
        task.started_at = self.clock()
        self._roles[task.id] = role
        self.router.update_load(role, 1)
        self.in_flight[task.id] = asyncio.create_task(
            self._run(task, role, executor), name=f"task-{task.id}"
        )

        logger.info("Dispatched %s to %s (%s)", task.id, role, decision.reasoning)
        await self._emit(
            EventType.TASK_DISPATCHED,
            task,
            decision.reasoning,
            role=role,
            data={"alternates": decision.alternate_roles, "confidence": decision.confidence},
        )
        return True

    async def _run(self, task: Task, role: str, executor: CanProcessTasks) -> None:
        try:
            result = await asyncio.wait_for(executor.process(task), timeout=self.execution_timeout)
        except TimeoutError:
            result = ExecutionResult.failed(f"Timed out after {self.execution_timeout:.0f}s")
        except Exception as exc:
            logger.warning("Executor %s failed on %s: %s", role, task.id, exc)
            result = ExecutionResult.failed(str(exc) or type(exc).__name__)

        try:
            await self._complete(task, role, result)
        finally:
            self.in_flight.pop(task.id, None)
            self.router.update_load(role, -1)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _complete(self, task: Task, role: str, result: ExecutionResult) -> None:
        task.result = result
        if result.time_taken_seconds is None and task.started_at is not None:
            result.time_taken_seconds = (self.clock() - task.started_at).total_seconds()

        if task.cancel_requested:
            await self._finish(task, role, TaskStatus.CANCELLED, success=False)
            await self._emit(EventType.TASK_CANCELLED, task, "Cancelled while running", role=role)
            return

        if result.outcome is ResultKind.FAILED:
            await self._handle_failure(task, role, result)
            return

        await self.router.record_outcome(task.id, True, role)

        decision = self.detector.evaluate(task, result, role)
        reasons = list(decision.reasons)
        if result.escalate:
            requested = result.escalate_reason or f"{role.upper()} requested escalation"
            if requested not in reasons:
                reasons.insert(0, requested)

        if result.outcome is ResultKind.ESCALATE:
            # The role declined to act; the task waits for the decision.
            task.status = TaskStatus.ESCALATED
        else:
            await self._finish(task, role, TaskStatus.COMPLETED, success=True)
            await self._emit(EventType.TASK_COMPLETED, task, result.decision, role=role)

        if reasons:
            await self.handle_escalation(role, task, reasons, decision.priority, result.recommendation)
        if result.handoff is not None:
            await self.handle_handoff(role, task, result.handoff)

    async def _handle_failure(self, task: Task, role: str, result: ExecutionResult) -> None:
        await self.router.record_outcome(task.id, False, role)
        task.retry_count += 1
        await self._record_history(task, role, "failed", success=False)

        if task.retry_count < self.max_retries:
            logger.info(
                "Task %s failed (%s); retry %d/%d",
                task.id,
                result.failure_reason,
                task.retry_count,
                self.max_retries,
            )
            self._insert(task)
            return

        task.status = TaskStatus.FAILED
        task.completed_at = self.clock()
        self._retire(task)
        logger.warning("Task %s failed permanently: %s", task.id, result.failure_reason)
        await self._emit(
            EventType.TASK_FAILED,
            task,
            result.failure_reason or "",
            role=role,
            data={"retry_count": task.retry_count},
        )

    async def _finish(self, task: Task, role: str, status: TaskStatus, *, success: bool) -> None:
        task.status = status
        task.completed_at = self.clock()
        if status is TaskStatus.COMPLETED:
            self.completed.add(task.id)
        await self._record_history(task, role, status.value, success=success)
        self._retire(task)

    def _retire(self, task: Task) -> None:
        """Keep the last ``retain_finished`` terminal tasks; completed ids stay for gating."""
        self._sequence.pop(task.id, None)
        self._finished.append(task.id)
        while len(self._finished) > self.retain_finished:
            old = self._finished.popleft()
            self.tasks.pop(old, None)
            self._roles.pop(old, None)

    async def _record_history(self, task: Task, role: str, status: str, *, success: bool) -> None:
        result = task.result or ExecutionResult()
        entry = HistoryEntry(
            task_id=task.id,
            role=role,
            success=success,
            status=status,
            category=task.category,
            time_taken_seconds=result.time_taken_seconds,
            quality_score=result.quality_score,
            failure_reason=result.failure_reason,
            tools_used=list(result.tools_used) or None,
            retry_count=task.retry_count,
            due_date=task.due_date,
            completed_at=self.clock(),
            estimated_seconds=task.estimated_seconds,
        )
        stored = await self.store.append_history(entry)
        if not stored.ok:
            logger.warning("History for %s kept in memory only: %s", task.id, stored.error)

    # -------------------------------------------------------------------------
    # Escalations and handoffs
    # -------------------------------------------------------------------------

    async def handle_escalation(
        self,
        role: str,
        task: Task,
        reasons: list[str],
        priority: Priority = Priority.MEDIUM,
        recommendation: str | None = None,
    ) -> OperationResult:
        """Queue a decision request; a task never has two pending escalations."""
        existing_id = self._pending_by_task.get(task.id)
        if existing_id is not None:
            existing = self.escalations[existing_id]
            for reason in reasons:
                if reason not in existing.reasons:
                    existing.reasons.append(reason)
            if Priority.parse(priority).rank > existing.priority.rank:
                existing.priority = Priority.parse(priority)
            return OperationResult.success(existing, "already pending")

        ordered: list[str] = []
        for reason in reasons:
            if reason and reason not in ordered:
                ordered.append(reason)
        escalation = Escalation(
            role=role,
            task=task,
            reasons=ordered,
            priority=Priority.parse(priority),
            recommendation=recommendation,
            created_at=self.clock(),
        )
        self.escalations[escalation.id] = escalation
        self._pending_by_task[task.id] = escalation.id

        stored = await self.store.save_escalation(escalation)
        if not stored.ok:
            logger.warning("Escalation %s kept in memory only: %s", escalation.id, stored.error)
        logger.info("Escalation %s from %s: %s", escalation.id, role, escalation.reason)
        await self._emit(
            EventType.ESCALATION_CREATED,
            task,
            escalation.reason,
            role=role,
            data=escalation.to_dict(),
        )
        return OperationResult.success(escalation)

    async def resolve_escalation(self, escalation_id: str, decision: dict[str, Any]) -> OperationResult:
        escalation = self.escalations.get(escalation_id)
        if escalation is None:
            return OperationResult.failure(
                ReasonCode.UNKNOWN_ESCALATION, f"Unknown escalation {escalation_id}"
            )
        if escalation.status is EscalationStatus.RESOLVED:
            return OperationResult.failure(
                ReasonCode.ALREADY_RESOLVED, f"Escalation {escalation_id} is already resolved"
            )

        escalation.status = EscalationStatus.RESOLVED
        escalation.decision = dict(decision)
        escalation.resolved_at = self.clock()
        self._pending_by_task.pop(escalation.task.id, None)
        self._resolved.append(escalation_id)
        while len(self._resolved) > self.retain_finished:
            self.escalations.pop(self._resolved.popleft(), None)

        stored = await self.store.update_escalation(escalation)
        if not stored.ok:
            logger.warning("Resolution of %s kept in memory only: %s", escalation_id, stored.error)

        task = escalation.task
        if task.status is TaskStatus.ESCALATED:
            role = self._roles.get(task.id, escalation.role)
            if decision.get("approved", True):
                await self._finish(task, role, TaskStatus.COMPLETED, success=True)
                await self._emit(EventType.TASK_COMPLETED, task, "Approved", role=role)
            else:
                await self._finish(task, role, TaskStatus.CANCELLED, success=False)
                await self._emit(EventType.TASK_CANCELLED, task, "Rejected", role=role)

        logger.info("Escalation %s resolved", escalation_id)
        await self._emit(
            EventType.ESCALATION_RESOLVED,
            task,
            f"Escalation {escalation_id} resolved",
            role=escalation.role,
            data=escalation.to_dict(),
        )
        return OperationResult.success(escalation)

    async def handle_handoff(
        self, source_role: str, task: Task, request: HandoffRequest
    ) -> OperationResult:
        known = self.organization.known_roles() | set(self.executors)
        if request.target_role not in known:
            return OperationResult.failure(
                ReasonCode.UNKNOWN_ROLE, f"Unknown handoff target {request.target_role}"
            )

        new_task = Task(
            id=f"handoff-{uuid4().hex[:12]}",
            content=f"Handoff from {source_role}: {request.context}",
            priority=task.priority,
            assigned_role=request.target_role,
            parent_task_id=task.id,
            workflow=task.workflow,
            category=task.category,
            deliverables=list(request.deliverables),
        )
        queued = await self.enqueue(new_task)
        if not queued.ok:
            return queued

        logger.info("Handoff from %s to %s (%s)", source_role, request.target_role, new_task.id)
        await self._emit(
            EventType.HANDOFF_CREATED,
            new_task,
            new_task.content,
            role=request.target_role,
            data={"original": task.id, "new": new_task.to_dict()},
        )
        return OperationResult.success(new_task)

    def pending_escalations(self) -> list[Escalation]:
        return [e for e in self.escalations.values() if e.status is EscalationStatus.PENDING]

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "queued": len(self._queue),
            "in_flight": len(self.in_flight),
            "completed": len(self.completed),
            "failed": sum(1 for t in self.tasks.values() if t.status is TaskStatus.FAILED),
            "pending_escalations": len(self._pending_by_task),
            "max_concurrent": self.max_concurrent,
            "executors": sorted(self.executors),
            "store_available": self.store.is_available(),
        }

    def daily_summary(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = [t for t in self.tasks.values() if t.completed_at and t.completed_at >= start]
        by_status = Counter(t.status.value for t in today)
        by_role = Counter(self._roles.get(t.id, "unassigned") for t in today)
        return {
            "date": start.date().isoformat(),
            "finished": len(today),
            "by_status": dict(by_status),
            "by_role": dict(by_role),
            "queued": len(self._queue),
            "in_flight": len(self.in_flight),
            "pending_escalations": [e.to_dict() for e in self.pending_escalations()],
        }

    async def drain(self) -> None:
        """Wait for every in-flight task to reach a recorded outcome."""
        while self.in_flight:
            await asyncio.gather(*list(self.in_flight.values()), return_exceptions=True)

    async def _emit(
        self,
        type_: EventType,
        task: Task,
        message: str = "",
        *,
        role: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.events.emit(
            WorkforceEvent(
                type=type_,
                task_id=task.id,
                role=role or task.assigned_role,
                message=message,
                data=data or {},
            )
        )
