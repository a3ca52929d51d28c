"""
Trend and composite scoring helpers used by the review engine.

All functions are pure. History sequences are most-recent-first unless a
function says otherwise.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from .types import HistoryEntry, TrendDirection, utcnow

SUCCESS_STATUSES = frozenset({"completed", "success", "approved"})
FAILURE_STATUSES = frozenset({"failed", "rejected"})

# Deviation-from-estimate slope: shrinking overruns read as improvement.
VARIANCE_IMPROVING_SLOPE = -0.05
VARIANCE_DECLINING_SLOPE = 0.10

# Success-rate delta between newer and older halves.
STATUS_DECLINE = -0.15
STATUS_IMPROVEMENT = 0.15

MIN_VARIANCE_SAMPLES = 3
MIN_STATUS_SAMPLES = 5
LATE_GRACE_DAYS = 7
RETRY_CEILING = 5
DEFAULT_COMPLETED_QUALITY = 0.7


@dataclass(frozen=True)
class TrendResult:
    direction: TrendDirection
    slope: float
    insufficient: bool = False
    samples: int = 0


def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float]:
    """Least-squares ``(slope, intercept)``; ``(0.0, 0.0)`` when undefined."""
    n = min(len(xs), len(ys))
    if n < 2:
        return 0.0, 0.0
    xs, ys = xs[:n], ys[:n]
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    denom = sum((x - mean_x) ** 2 for x in xs)
    if denom == 0:
        return 0.0, 0.0
    slope = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denom
    return slope, mean_y - slope * mean_x


def classify_slope(slope: float) -> TrendDirection:
    if slope < VARIANCE_IMPROVING_SLOPE:
        return TrendDirection.IMPROVING
    if slope > VARIANCE_DECLINING_SLOPE:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def variance_trend(entries: Iterable[HistoryEntry], window: int = 10) -> TrendResult:
    """Regress ``variance_percent`` over the last ``window`` entries in completion order."""
    samples = sorted(
        (e for e in entries if e.variance_percent is not None),
        key=lambda e: e.completed_at,
    )[-window:]
    if len(samples) < MIN_VARIANCE_SAMPLES:
        return TrendResult(TrendDirection.STABLE, 0.0, insufficient=True, samples=len(samples))

    slope, _ = linear_regression(
        [float(i) for i in range(len(samples))],
        [float(e.variance_percent) for e in samples],
    )
    return TrendResult(classify_slope(slope), slope, samples=len(samples))


def success_rate(statuses: Sequence[str]) -> float:
    if not statuses:
        return 0.0
    return sum(1 for s in statuses if s in SUCCESS_STATUSES) / len(statuses)


def status_trend(statuses: Sequence[str]) -> TrendResult:
    """Compare the newer half's success rate with the older half's.

    ``statuses`` is most-recent-first. A negative slope means the role is
    succeeding less often than it used to.
    """
    if len(statuses) < MIN_STATUS_SAMPLES:
        return TrendResult(TrendDirection.STABLE, 0.0, insufficient=True, samples=len(statuses))

    midpoint = len(statuses) // 2
    slope = success_rate(statuses[:midpoint]) - success_rate(statuses[midpoint:])
    if slope <= STATUS_DECLINE:
        direction = TrendDirection.DECLINING
    elif slope >= STATUS_IMPROVEMENT:
        direction = TrendDirection.IMPROVING
    else:
        direction = TrendDirection.STABLE
    return TrendResult(direction, slope, samples=len(statuses))


def consecutive_failures(statuses: Iterable[str]) -> int:
    """Trailing failed/rejected count, most-recent-first, up to the first success."""
    count = 0
    for status in statuses:
        if status in FAILURE_STATUSES:
            count += 1
        elif status in ("completed", "success"):
            break
    return count


def normalize_quality(value: float) -> float:
    """Quality may arrive on a 0-1 or a 0-100 scale."""
    quality = float(value)
    if quality > 1:
        quality /= 100
    return min(1.0, max(0.0, quality))


def cos_score(entry: HistoryEntry, now: datetime | None = None) -> float:
    """Composite [0, 1] score: status 40%, quality 30%, timeliness 20%, retries 10%."""
    succeeded = entry.status in SUCCESS_STATUSES
    score = 0.0

    if succeeded:
        score += 0.4
    elif entry.status == "in_progress":
        score += 0.2

    if entry.quality_score is not None:
        score += 0.3 * normalize_quality(entry.quality_score)
    elif succeeded:
        score += 0.3 * DEFAULT_COMPLETED_QUALITY

    if entry.due_date is not None:
        finished = entry.completed_at or now or utcnow()
        if finished <= entry.due_date:
            score += 0.2
        else:
            days_late = (finished - entry.due_date).total_seconds() / 86400
            score += 0.2 * max(0.0, 1 - days_late / LATE_GRACE_DAYS)
    else:
        score += 0.2 * 0.5

    score += 0.1 * max(0.0, 1 - entry.retry_count / RETRY_CEILING)
    return min(1.0, max(0.0, score))


def average_cos_score(entries: Iterable[HistoryEntry], now: datetime | None = None) -> float | None:
    scores = [cos_score(e, now) for e in entries]
    if not scores:
        return None
    return sum(scores) / len(scores)
