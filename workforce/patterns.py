"""
Failure pattern detection over a role's recent task history.

Five independent detectors run over the most recent entries (newest first).
Each returns a finding or ``None``; only findings at or above the minimum
confidence are surfaced.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import ReasonCode
from .store import Store
from .trends import normalize_quality
from .types import HistoryEntry, PatternFinding, PatternType

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


@dataclass(frozen=True)
class PatternThresholds:
    min_tasks: int = 5
    failure_rate: float = 0.4
    time_regression: float = 1.5
    quality_decline: float = 0.15
    category_gap: float = 0.15
    tool_effectiveness: float = 0.6
    min_confidence: float = 0.6
    lookback: int = 20
    min_split_samples: int = 6
    min_category_samples: int = 3
    min_tool_tasks: int = 5
    min_tool_uses: int = 3


@dataclass
class DetectionReport:
    findings: list[PatternFinding] = field(default_factory=list)
    status: str = "ok"
    message: str = ""
    tasks_analyzed: int = 0

    @property
    def insufficient(self) -> bool:
        return self.status == ReasonCode.INSUFFICIENT_DATA.value


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def _category(entry: HistoryEntry) -> str:
    return entry.category or UNCATEGORIZED


class PatternDetector:
    def __init__(self, thresholds: PatternThresholds | None = None) -> None:
        self.thresholds = thresholds or PatternThresholds()

    def detect(self, history: Sequence[HistoryEntry]) -> DetectionReport:
        """Run all detectors over ``history`` (most-recent-first)."""
        tasks = list(history)[: self.thresholds.lookback]
        if len(tasks) < self.thresholds.min_tasks:
            return DetectionReport(
                status=ReasonCode.INSUFFICIENT_DATA.value,
                message="Insufficient data for pattern detection",
                tasks_analyzed=len(tasks),
            )

        candidates = [
            self.detect_repeated_failure(tasks),
            self.detect_time_regression(tasks),
            self.detect_quality_decline(tasks),
            self.detect_category_weakness(tasks),
            self.detect_tool_inefficiency(tasks),
        ]
        findings = [
            f for f in candidates if f is not None and f.confidence >= self.thresholds.min_confidence
        ]
        return DetectionReport(findings=findings, tasks_analyzed=len(tasks))

    async def analyze_role(
        self, store: Store, role: str, *, log_findings: bool = True
    ) -> DetectionReport:
        """Fetch a role's history through the store and detect patterns."""
        result = await store.fetch_history(role, self.thresholds.lookback)
        if not result.ok:
            return DetectionReport(status=result.error or ReasonCode.UNAVAILABLE.value)

        report = self.detect(result.data or [])
        if log_findings:
            for finding in report.findings:
                logged = await store.log_pattern(role, finding, report.tasks_analyzed)
                if not logged.ok:
                    logger.warning("Pattern %s for %s not logged: %s", finding.type, role, logged.error)
        return report

    # -------------------------------------------------------------------------
    # Detectors
    # -------------------------------------------------------------------------

    def detect_repeated_failure(self, tasks: Sequence[HistoryEntry]) -> PatternFinding | None:
        failures = [t for t in tasks if not t.success]
        failure_rate = len(failures) / len(tasks)
        if failure_rate < self.thresholds.failure_rate:
            return None

        by_category: dict[str, int] = {}
        for task in failures:
            by_category[_category(task)] = by_category.get(_category(task), 0) + 1
        worst_category, worst_count = max(by_category.items(), key=lambda kv: kv[1])

        reasons = [t.failure_reason for t in failures if t.failure_reason]
        unique_reasons = list(dict.fromkeys(reasons))[:5]
        confidence = min(0.95, failure_rate + (worst_count / len(tasks)) * 0.3)

        return PatternFinding(
            type=PatternType.REPEATED_FAILURE,
            confidence=confidence,
            evidence={
                "failure_rate": round(failure_rate, 3),
                "total_failures": len(failures),
                "total_tasks": len(tasks),
                "primary_category": worst_category,
                "category_failure_count": worst_count,
                "common_reasons": unique_reasons,
            },
            suggested_action=(
                f"Improve handling of {worst_category} tasks. "
                f"Common issues: {', '.join(reasons[:2]) or 'unspecified'}"
            ),
        )

    def detect_time_regression(self, tasks: Sequence[HistoryEntry]) -> PatternFinding | None:
        timed = [t for t in tasks if t.time_taken_seconds]
        if len(timed) < self.thresholds.min_split_samples:
            return None

        midpoint = len(timed) // 2
        recent, older = timed[:midpoint], timed[midpoint:]
        recent_avg = _mean([t.time_taken_seconds for t in recent])
        older_avg = _mean([t.time_taken_seconds for t in older])
        factor = recent_avg / older_avg
        if factor < self.thresholds.time_regression:
            return None

        by_category: dict[str, list[float]] = {}
        for task in recent:
            by_category.setdefault(_category(task), []).append(task.time_taken_seconds)
        slowest_category, slowest_times = max(by_category.items(), key=lambda kv: _mean(kv[1]))

        return PatternFinding(
            type=PatternType.TIME_REGRESSION,
            confidence=min(0.9, (factor - 1) * 0.5 + 0.4),
            evidence={
                "recent_avg_seconds": round(recent_avg),
                "baseline_avg_seconds": round(older_avg),
                "regression_factor": round(factor, 2),
                "slowest_category": slowest_category,
                "slowest_avg_seconds": round(_mean(slowest_times)),
            },
            suggested_action=(
                f"Optimize {slowest_category} task execution. "
                f"Recent tasks taking {factor:.1f}x longer than baseline."
            ),
        )

    def detect_quality_decline(self, tasks: Sequence[HistoryEntry]) -> PatternFinding | None:
        scored = [t for t in tasks if t.quality_score is not None]
        if len(scored) < self.thresholds.min_split_samples:
            return None

        midpoint = len(scored) // 2
        recent, older = scored[:midpoint], scored[midpoint:]
        recent_avg = _mean([normalize_quality(t.quality_score) for t in recent])
        older_avg = _mean([normalize_quality(t.quality_score) for t in older])
        decline = older_avg - recent_avg
        if decline < self.thresholds.quality_decline:
            return None

        lowest = sorted(recent, key=lambda t: normalize_quality(t.quality_score))[:3]
        return PatternFinding(
            type=PatternType.QUALITY_DECLINE,
            confidence=min(0.9, decline * 2 + 0.4),
            evidence={
                "recent_avg_quality": round(recent_avg, 2),
                "baseline_avg_quality": round(older_avg, 2),
                "decline_amount": round(decline, 2),
                "lowest_quality_tasks": [
                    {
                        "task_id": t.task_id,
                        "quality": normalize_quality(t.quality_score),
                        "category": t.category,
                    }
                    for t in lowest
                ],
            },
            suggested_action=(
                f"Improve quality focus. Recent work averaging {recent_avg:.2f} "
                f"vs baseline {older_avg:.2f}."
            ),
        )

    def detect_category_weakness(self, tasks: Sequence[HistoryEntry]) -> PatternFinding | None:
        grouped: dict[str, list[HistoryEntry]] = {}
        for task in tasks:
            grouped.setdefault(_category(task), []).append(task)

        scores: dict[str, dict[str, Any]] = {}
        for category, entries in grouped.items():
            if len(entries) < self.thresholds.min_category_samples:
                continue
            rate = sum(1 for e in entries if e.success) / len(entries)
            qualities = [normalize_quality(e.quality_score) for e in entries if e.quality_score]
            quality = _mean(qualities) if qualities else 0.5
            scores[category] = {
                "success_rate": rate,
                "avg_quality": quality,
                "score": rate * 0.6 + quality * 0.4,
                "total": len(entries),
            }

        if not scores:
            return None
        weakest = min(scores, key=lambda c: scores[c]["score"])
        lowest = scores[weakest]["score"]
        average = _mean([s["score"] for s in scores.values()])
        if lowest > average - self.thresholds.category_gap:
            return None

        stats = scores[weakest]
        return PatternFinding(
            type=PatternType.CATEGORY_WEAKNESS,
            confidence=min(0.85, (average - lowest) * 2 + 0.5),
            evidence={
                "weak_category": weakest,
                "category_success_rate": round(stats["success_rate"], 2),
                "category_avg_quality": round(stats["avg_quality"], 2),
                "category_tasks": stats["total"],
                "overall_avg_score": round(average, 2),
                "category_score": round(lowest, 2),
            },
            suggested_action=(
                f"Focus improvement on {weakest} tasks. "
                f"Success rate: {stats['success_rate'] * 100:.0f}%, "
                f"Quality: {stats['avg_quality']:.2f}"
            ),
        )

    def detect_tool_inefficiency(self, tasks: Sequence[HistoryEntry]) -> PatternFinding | None:
        usage: dict[str, dict[str, float]] = {}
        with_tools = 0
        for task in tasks:
            if not task.tools_used:
                continue
            with_tools += 1
            for tool in task.tools_used:
                stats = usage.setdefault(tool, {"success": 0, "failure": 0, "time": 0.0, "count": 0})
                stats["count"] += 1
                stats["success" if task.success else "failure"] += 1
                stats["time"] += task.time_taken_seconds or 0

        if with_tools < self.thresholds.min_tool_tasks:
            return None

        rated = {
            tool: stats["success"] / stats["count"]
            for tool, stats in usage.items()
            if stats["count"] >= self.thresholds.min_tool_uses
        }
        if not rated:
            return None
        tool = min(rated, key=rated.__getitem__)
        rate = rated[tool]
        if rate > self.thresholds.tool_effectiveness:
            return None

        stats = usage[tool]
        return PatternFinding(
            type=PatternType.TOOL_INEFFICIENCY,
            confidence=min(0.8, (self.thresholds.tool_effectiveness - rate) * 2 + 0.5),
            evidence={
                "inefficient_tool": tool,
                "tool_success_rate": round(rate, 2),
                "tool_usage_count": int(stats["count"]),
                "tool_failures": int(stats["failure"]),
                "avg_time_with_tool": round(stats["time"] / stats["count"]) if stats["time"] else None,
            },
            suggested_action=f"Reconsider use of {tool}. Only {rate * 100:.0f}% success rate when used.",
        )


_AREA_KEYS = {
    PatternType.REPEATED_FAILURE: "primary_category",
    PatternType.TIME_REGRESSION: "slowest_category",
    PatternType.CATEGORY_WEAKNESS: "weak_category",
    PatternType.TOOL_INEFFICIENCY: "inefficient_tool",
}


def target_area(finding: PatternFinding) -> str:
    """The guidance area a finding points at, e.g. ``task_category:billing``."""
    if finding.type is PatternType.QUALITY_DECLINE:
        return "quality_check:pre_delivery"
    value = finding.evidence.get(_AREA_KEYS[finding.type]) or "general"
    prefix = "tool_use" if finding.type is PatternType.TOOL_INEFFICIENCY else "task_category"
    return f"{prefix}:{value}"


def weakest_area(findings: Sequence[PatternFinding]) -> PatternFinding | None:
    """Highest-confidence finding; ties keep detector order."""
    if not findings:
        return None
    return max(findings, key=lambda f: f.confidence)
