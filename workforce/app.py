"""Composition root: builds every component from settings and the static org config."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .config import Settings, settings as default_settings
from .errors import OperationResult, ReasonCode
from .escalation import EscalationDetector
from .events import EventBus, redis_publish_handler
from .orchestrator import Orchestrator
from .patterns import PatternDetector, PatternThresholds
from .recommendations import Recommendation, validate_recommendation
from .review import ReviewEngine
from .roles import DEFAULT_ORGANIZATION, Organization
from .router import LearnedRouter
from .scheduler import DispatchWorker, ReviewWorker
from .store import MemoryStore, ResilientStore, SqlStore, Store
from .types import CanProcessTasks, ExecutionResult, Task

logger = logging.getLogger(__name__)


def build_store(config: Settings) -> Store:
    if config.database_enabled:
        return ResilientStore(
            SqlStore(timeout=config.persistence_timeout), mirror_size=config.memory_store_limit
        )
    return MemoryStore(max_entries=config.memory_store_limit)


@dataclass
class Runtime:
    config: Settings
    organization: Organization
    store: Store
    events: EventBus
    router: LearnedRouter
    detector: EscalationDetector
    patterns: PatternDetector
    orchestrator: Orchestrator
    reviews: ReviewEngine
    recommendations: list[Recommendation] = field(default_factory=list)
    stop: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def build(
        cls,
        executors: Mapping[str, CanProcessTasks],
        *,
        config: Settings | None = None,
        organization: Organization = DEFAULT_ORGANIZATION,
        store: Store | None = None,
        detector: EscalationDetector | None = None,
    ) -> Runtime:
        config = config or default_settings
        store = store or build_store(config)
        events = EventBus()
        if config.redis_events_enabled:
            events.on_event(redis_publish_handler())

        router = LearnedRouter(store, history_size=config.routing_history_size)
        detector = detector or EscalationDetector()
        patterns = PatternDetector(
            PatternThresholds(
                min_tasks=config.pattern_min_tasks,
                min_confidence=config.pattern_min_confidence,
                lookback=config.pattern_lookback,
            )
        )
        orchestrator = Orchestrator(
            executors,
            router=router,
            detector=detector,
            store=store,
            events=events,
            organization=organization,
            max_concurrent=config.max_concurrent,
            execution_timeout=config.execution_timeout,
            max_retries=config.max_retries,
            retry_penalty=config.retry_penalty,
            tick_interval=config.tick_interval_seconds,
            retain_finished=config.finished_task_retention,
        )
        reviews = ReviewEngine(
            store,
            organization,
            detector=patterns,
            events=events,
            escalations=orchestrator,
            trend_window=config.trend_window,
            evaluation_window=config.amendment_evaluation_window,
        )
        return cls(
            config=config,
            organization=organization,
            store=store,
            events=events,
            router=router,
            detector=detector,
            patterns=patterns,
            orchestrator=orchestrator,
            reviews=reviews,
        )

    async def start(self) -> None:
        loaded = await self.router.load_learnings()
        logger.info("Runtime ready: %d executors, %d learnings", len(self.orchestrator.executors), loaded)

    async def submit_recommendation(self, rec: Recommendation) -> OperationResult:
        team = next((t for t in self.organization.teams if t.team_id == rec.team_id), None)
        if team is None:
            return OperationResult.failure(ReasonCode.UNKNOWN_ROLE, f"Unknown team {rec.team_id}")
        active = await self.store.list_active_amendments(rec.target_role)
        report = validate_recommendation(rec, team, active.data or [])
        if report.valid:
            self.recommendations.append(rec)
            await self.store.save_recommendation(rec)
        else:
            logger.warning("Rejected recommendation %s: %s", rec.id, "; ".join(report.errors))
        return report.as_result(rec)

    async def run(self, duration: float | None = None) -> None:
        """Run dispatch and review workers until stopped or ``duration`` elapses."""
        await self.start()
        dispatch = DispatchWorker(self.orchestrator, self.stop)
        review = ReviewWorker(
            self.reviews,
            self.store,
            self.config.review_poll_seconds,
            self.stop,
            self.recommendations,
        )
        dispatch.install_signal_handlers()
        workers = [
            asyncio.create_task(dispatch.run_forever(), name="dispatch"),
            asyncio.create_task(review.run_forever(), name="review"),
        ]
        if duration is not None:
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=duration)
            except TimeoutError:
                self.stop.set()
        await asyncio.gather(*workers)


class DryRunExecutor:
    """Completes every task immediately; used by the CLI and examples."""

    def __init__(self, role: str) -> None:
        self.role = role

    async def process(self, task: Task) -> ExecutionResult:
        return ExecutionResult(
            analysis=f"{self.role} reviewed: {task.content}",
            action="acknowledged",
            decision="completed",
            quality_score=0.8,
        )


def dry_run_executors(organization: Organization = DEFAULT_ORGANIZATION) -> dict[str, DryRunExecutor]:
    return {role: DryRunExecutor(role) for role in sorted(organization.known_roles())}
