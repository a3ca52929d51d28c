"""
Periodic team-lead review of subordinate performance.

A review looks at a subordinate's recent history, derives a trend and a
composite score, and either does nothing, proposes an amendment, or
escalates to the team's supervisor. Active amendments are re-scored once
their evaluation window of subsequent tasks has filled and are reverted when
they did not help.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime

from .amendments import AmendmentFactory, AmendmentGuard
from .config import settings
from .errors import PolicyViolation, ReasonCode
from .events import EventBus, EventType, WorkforceEvent
from .patterns import PatternDetector, weakest_area
from .roles import DEFAULT_ORGANIZATION, SAFETY, Organization, SafetyConstraints, TeamConfig
from .store import Store
from .trends import average_cos_score, consecutive_failures, cos_score, status_trend, variance_trend
from .types import (
    Amendment,
    CanEmitEscalations,
    CosReview,
    EvaluationStatus,
    HistoryEntry,
    Intervention,
    Priority,
    Task,
    utcnow,
)

logger = logging.getLogger(__name__)


class ReviewEngine:
    def __init__(
        self,
        store: Store,
        organization: Organization = DEFAULT_ORGANIZATION,
        detector: PatternDetector | None = None,
        events: EventBus | None = None,
        escalations: CanEmitEscalations | None = None,
        safety: SafetyConstraints = SAFETY,
        trend_window: int | None = None,
        evaluation_window: int | None = None,
    ) -> None:
        self.store = store
        self.organization = organization
        self.detector = detector or PatternDetector()
        self.events = events
        self.escalations = escalations
        self.safety = safety
        self.trend_window = trend_window or settings.trend_window
        self.guard = AmendmentGuard(safety)
        self.factory = AmendmentFactory(evaluation_window or settings.amendment_evaluation_window)
        self.last_run: dict[str, datetime] = {}
        self._reverted_areas: dict[str, set[str]] = defaultdict(set)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    @staticmethod
    def due(team: TeamConfig, last_run: datetime | None, now: datetime | None = None) -> bool:
        if last_run is None:
            return True
        return (now or utcnow()) - last_run >= team.review_cadence.interval

    async def run_review_cycle(self, team: TeamConfig, now: datetime | None = None) -> list[CosReview]:
        """Evaluate amendments and review every subordinate of ``team``."""
        reviews = []
        for role in team.subordinates:
            history = await self._history(role)
            await self.evaluate_amendments(role, history)
            reviews.append(await self.review_subordinate(team, role, history))
        self.last_run[team.team_id] = now or utcnow()
        logger.info("Review cycle for %s finished: %d subordinates", team.lead_role, len(reviews))
        return reviews

    async def run_due_reviews(self, now: datetime | None = None) -> list[CosReview]:
        now = now or utcnow()
        reviews: list[CosReview] = []
        for team in self.organization.teams:
            if self.due(team, self.last_run.get(team.team_id), now):
                reviews.extend(await self.run_review_cycle(team, now))
        return reviews

    # -------------------------------------------------------------------------
    # Reviews
    # -------------------------------------------------------------------------

    def classify(self, score: float, failures: int, team: TeamConfig) -> tuple[Intervention, str | None]:
        """Pick the intervention for a subordinate's score and failure streak."""
        if failures >= team.consecutive_failure_threshold:
            return Intervention.ESCALATION, f"{failures} consecutive task failures"
        if score < self.safety.cos_critical:
            return Intervention.ESCALATION, f"Critical CoS score: {score * 100:.1f}%"
        if score < self.safety.cos_warning:
            return Intervention.AMENDMENT, f"CoS score below warning threshold: {score * 100:.1f}%"
        return Intervention.NONE, None

    async def review_subordinate(
        self,
        team: TeamConfig,
        role: str,
        history: Sequence[HistoryEntry] | None = None,
    ) -> CosReview:
        reviewer = team.lead_role
        review = CosReview(
            reviewer_role=reviewer,
            subordinate_role=role,
            review_type=team.review_cadence.value,
        )
        await self.store.create_review(review)

        try:
            self.guard.check_target(reviewer, team, role)
        except PolicyViolation as violation:
            await self._violation(reviewer, violation)
            return await self._finish(review, Intervention.SKIPPED, "rejected", str(violation))

        if history is None:
            history = await self._history(role)

        window = list(history)[: self.trend_window]
        review.tasks_analyzed = len(window)
        if len(window) < self.safety.min_tasks_for_trend:
            return await self._finish(
                review,
                Intervention.SKIPPED,
                ReasonCode.INSUFFICIENT_DATA.value,
                f"Need {self.safety.min_tasks_for_trend} tasks, have {len(window)}",
            )

        statuses = [e.status for e in window]
        trend = status_trend(statuses)
        review.trend = trend.direction
        review.trend_slope = trend.slope
        review.variance_trend = variance_trend(window, self.trend_window).direction
        review.consecutive_failures = consecutive_failures(statuses)
        review.cos_score = round(average_cos_score(window) or 0.0, 4)

        intervention, reason = self.classify(review.cos_score, review.consecutive_failures, team)
        if intervention is Intervention.ESCALATION:
            review.escalation_reason = reason
            ok = await self._escalate(team, role, reason, review)
            if not ok:
                return await self._finish(review, Intervention.SKIPPED, "rejected", reason or "")
        elif intervention is Intervention.AMENDMENT:
            if not team.amendment_authority:
                return await self._finish(
                    review, Intervention.NONE, "completed", f"{reviewer} has no amendment authority"
                )
            amendment = await self._amend(team, role, history, review.cos_score, reason or "")
            if amendment is None:
                return await self._finish(review, Intervention.SKIPPED, "rejected", reason or "")
            review.amendment_id = amendment.id

        return await self._finish(review, intervention, "completed", reason or "No intervention needed")

    async def _escalate(self, team: TeamConfig, role: str, reason: str | None, review: CosReview) -> bool:
        reviewer = team.lead_role
        if team.supervisor == reviewer:
            await self._violation(
                reviewer,
                PolicyViolation(
                    ReasonCode.SELF_TARGET,
                    f"{reviewer} cannot escalate to itself",
                    {"reviewer": reviewer, "target": role},
                ),
            )
            return False

        logger.warning("Escalating %s to %s: %s", role, team.supervisor, reason)
        if self.escalations is None:
            return True
        task = Task(
            id=f"review-{review.id}",
            content=f"Performance escalation for {role}: {reason}",
            priority=Priority.HIGH,
            assigned_role=team.supervisor,
            notes=f"Raised by {reviewer} during {team.review_cadence.value} review",
            category="performance_review",
        )
        await self.escalations.handle_escalation(
            reviewer,
            task,
            [reason or "Performance review escalation"],
            Priority.HIGH,
            recommendation=f"Review {role} performance with {reviewer}",
        )
        return True

    async def _amend(
        self,
        team: TeamConfig,
        role: str,
        history: Sequence[HistoryEntry],
        score: float,
        reason: str,
    ) -> Amendment | None:
        report = self.detector.detect(history)
        finding = weakest_area(report.findings)
        amendment = self.factory.from_finding(
            team.lead_role, role, finding, score, reason, tuple(self._reverted_areas[role])
        )

        active = await self.store.list_active_amendments(role)
        try:
            self.guard.check(team.lead_role, team, amendment, active.data or [])
        except PolicyViolation as violation:
            await self._violation(team.lead_role, violation)
            return None

        await self.store.create_amendment(amendment)
        if finding is not None:
            logged = await self.store.log_pattern(role, finding, report.tasks_analyzed)
            if logged.ok:
                await self.store.link_pattern(finding.id, amendment.id)

        logger.info(
            "Amendment %s for %s (%s, %s)",
            amendment.id,
            role,
            amendment.amendment_type.value,
            amendment.target_area,
        )
        await self._emit(EventType.AMENDMENT_CREATED, role, amendment.trigger_reason, amendment.to_dict())
        return amendment

    # -------------------------------------------------------------------------
    # Amendment evaluation
    # -------------------------------------------------------------------------

    async def evaluate_amendments(
        self, role: str, history: Sequence[HistoryEntry] | None = None
    ) -> list[Amendment]:
        """Score active amendments against the tasks completed after them."""
        active = await self.store.list_active_amendments(role)
        if not active.ok:
            return []
        if history is None:
            history = await self._history(role)

        decided: list[Amendment] = []
        for amendment in active.data or []:
            if amendment.evaluation_status is not EvaluationStatus.EVALUATING:
                continue
            if amendment.created_by == role:
                await self._violation(
                    role,
                    PolicyViolation(
                        ReasonCode.SELF_TARGET,
                        f"{role} cannot evaluate its own amendment {amendment.id}",
                        {"amendment": amendment.id},
                    ),
                )
                continue

            subsequent = sorted(
                (e for e in history if e.completed_at > amendment.created_at),
                key=lambda e: e.completed_at,
            )[: amendment.evaluation_window]
            for entry in subsequent[len(amendment.evaluations) :]:
                score = cos_score(entry)
                amendment.evaluations.append(score)
                await self.store.record_amendment_evaluation(amendment.id, score)

            if not amendment.window_filled:
                continue

            amendment.post_score = sum(amendment.evaluations) / len(amendment.evaluations)
            if amendment.post_score > amendment.baseline_score:
                amendment.evaluation_status = EvaluationStatus.PROVEN
                await self.store.update_amendment(amendment)
            else:
                await self._revert(amendment)
            decided.append(amendment)
            await self._emit(
                EventType.AMENDMENT_EVALUATED,
                role,
                f"{amendment.id} {amendment.evaluation_status.value}",
                amendment.to_dict(),
            )
        return decided

    async def _revert(self, amendment: Amendment) -> None:
        reason = (
            f"Post score {amendment.post_score:.3f} did not improve on "
            f"baseline {amendment.baseline_score:.3f}"
        )
        amendment.evaluation_status = EvaluationStatus.FAILED
        await self.store.update_amendment(amendment)

        amendment.is_active = False
        amendment.reverted = True
        amendment.evaluation_status = EvaluationStatus.REVERTED
        await self.store.revert_amendment(amendment.id, reason)
        await self.store.log_safety_event(
            amendment.target_role,
            "amendment_reverted",
            {"amendment_id": amendment.id, "reason": reason},
            "Amendment deactivated",
        )
        self._reverted_areas[amendment.target_role].add(amendment.target_area)
        logger.info("Reverted amendment %s for %s: %s", amendment.id, amendment.target_role, reason)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _history(self, role: str) -> list[HistoryEntry]:
        limit = max(self.trend_window, self.detector.thresholds.lookback)
        result = await self.store.fetch_history(role, limit)
        if not result.ok:
            logger.warning("History for %s unavailable: %s", role, result.error)
            return []
        return list(result.data or [])

    async def _violation(self, role: str, violation: PolicyViolation) -> None:
        logger.warning("security: policy violation by %s: %s", role, violation)
        await self.store.log_safety_event(
            role, violation.reason.value, violation.data, "Rejected"
        )
        await self._emit(EventType.POLICY_VIOLATION, role, str(violation), dict(violation.data))

    async def _finish(
        self, review: CosReview, intervention: Intervention, status: str, message: str
    ) -> CosReview:
        review.intervention = intervention
        review.status = status
        review.message = message
        review.completed_at = utcnow()
        await self.store.complete_review(review)
        await self._emit(
            EventType.REVIEW_COMPLETED, review.subordinate_role, message, review.to_dict()
        )
        return review

    async def _emit(self, type_: EventType, role: str, message: str, data: dict) -> None:
        if self.events is not None:
            await self.events.emit(WorkforceEvent(type=type_, role=role, message=message, data=data))
