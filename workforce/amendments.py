"""
Amendment construction and the hardcoded safety guard.

An amendment is only ever built by a reviewer for one of its own
subordinates; ``AmendmentGuard.check`` raises ``PolicyViolation`` for
anything else.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from .errors import PolicyViolation, ReasonCode
from .patterns import target_area
from .roles import SAFETY, SafetyConstraints, TeamConfig
from .types import Amendment, AmendmentType, PatternFinding, PatternType


class AmendmentGuard:
    def __init__(self, safety: SafetyConstraints = SAFETY) -> None:
        self.safety = safety
        self._protected = [re.compile(p, re.IGNORECASE) for p in safety.protected_patterns]

    def check_target(self, reviewer: str, team: TeamConfig, target: str) -> None:
        """Reviewer may only act on its own subordinates, never on itself."""
        if target == reviewer and self.safety.self_modify_blocked:
            raise PolicyViolation(
                ReasonCode.SELF_TARGET,
                f"{reviewer} cannot target itself",
                {"reviewer": reviewer, "target": target},
            )
        if reviewer != team.lead_role or not team.is_subordinate(target):
            raise PolicyViolation(
                ReasonCode.CROSS_TEAM_TARGET,
                f"{target} is not a subordinate of {reviewer} in team {team.team_id}",
                {"reviewer": reviewer, "team": team.team_id, "target": target},
            )

    def check(
        self,
        reviewer: str,
        team: TeamConfig,
        amendment: Amendment,
        active: Sequence[Amendment] = (),
    ) -> None:
        self.check_target(reviewer, team, amendment.target_role)

        area = amendment.target_area.split(":", 1)[0].lower()
        if self.safety.persona_modify_blocked and area in team.persona_areas:
            raise PolicyViolation(
                ReasonCode.PERSONA_TARGET,
                f"amendment targets persona area {amendment.target_area!r}",
                {"target": amendment.target_role, "area": amendment.target_area},
            )

        if len(active) >= self.safety.max_active_amendments:
            raise PolicyViolation(
                ReasonCode.AMENDMENT_LIMIT,
                f"{amendment.target_role} already has {len(active)} active amendments "
                f"(max {self.safety.max_active_amendments})",
                {"target": amendment.target_role, "active": len(active)},
            )

        text = " ".join([amendment.trigger_pattern, amendment.target_area, amendment.content])
        for pattern in self._protected:
            if pattern.search(text):
                raise PolicyViolation(
                    ReasonCode.PROTECTED_PATTERN,
                    f"amendment touches protected pattern /{pattern.pattern}/",
                    {"target": amendment.target_role, "pattern": pattern.pattern},
                )

        for existing in active:
            if existing.trigger_pattern == amendment.trigger_pattern:
                raise PolicyViolation(
                    ReasonCode.CONFLICTING_AMENDMENT,
                    f"conflicts with {existing.id} (same trigger: {amendment.trigger_pattern})",
                    {"target": amendment.target_role, "existing": existing.id},
                )


_GUIDANCE = {
    PatternType.REPEATED_FAILURE: (
        "When handling {category} tasks, apply extra caution. Common failure points: "
        "{reasons}. Verify each step before proceeding."
    ),
    PatternType.TIME_REGRESSION: (
        "Optimize execution time for {category} tasks. Current: {recent}s, Target: {baseline}s. "
        "Identify bottlenecks before starting."
    ),
    PatternType.QUALITY_DECLINE: (
        "Quality focus required. Recent average: {recent_quality}, Baseline: {baseline_quality}. "
        "Review deliverables against quality checklist before submission."
    ),
    PatternType.CATEGORY_WEAKNESS: (
        "Enhanced attention needed for {category} tasks. Success rate: {rate}%. "
        "Break down into smaller steps and validate each component."
    ),
    PatternType.TOOL_INEFFICIENCY: (
        "Reconsider using {tool}. Success rate: {tool_rate}%. "
        "Consider alternatives or validate preconditions before use."
    ),
}

FALLBACK_GUIDANCE = (
    "Performance is below the expected level. Break work into smaller steps, "
    "confirm requirements before starting and self-review before delivery."
)


class AmendmentFactory:
    """Builds amendments from pattern findings using per-pattern guidance."""

    def __init__(self, evaluation_window: int) -> None:
        self.evaluation_window = evaluation_window

    def from_finding(
        self,
        reviewer: str,
        target: str,
        finding: PatternFinding | None,
        baseline_score: float,
        reason: str,
        reverted_areas: Sequence[str] = (),
    ) -> Amendment:
        if finding is None:
            area = "task_category:general"
            content = FALLBACK_GUIDANCE
            pattern_type = None
        else:
            area = target_area(finding)
            content = self.render(finding)
            pattern_type = finding.type

        # A reverted amendment on the same area means the old guidance did not work.
        kind = AmendmentType.REPLACE if area in reverted_areas else AmendmentType.APPEND
        return Amendment(
            target_role=target,
            created_by=reviewer,
            trigger_reason=reason,
            trigger_pattern=area,
            amendment_type=kind,
            target_area=area,
            content=content,
            evaluation_window=self.evaluation_window,
            baseline_score=baseline_score,
            pattern_type=pattern_type,
        )

    @staticmethod
    def render(finding: PatternFinding) -> str:
        ev = finding.evidence
        return _GUIDANCE[finding.type].format(
            category=ev.get("primary_category")
            or ev.get("slowest_category")
            or ev.get("weak_category")
            or "general",
            reasons=", ".join(ev.get("common_reasons") or []) or "unspecified",
            recent=ev.get("recent_avg_seconds"),
            baseline=ev.get("baseline_avg_seconds"),
            recent_quality=ev.get("recent_avg_quality"),
            baseline_quality=ev.get("baseline_avg_quality"),
            rate=round(float(ev.get("category_success_rate", 0)) * 100),
            tool=ev.get("inefficient_tool"),
            tool_rate=round(float(ev.get("tool_success_rate", 0)) * 100),
        )
