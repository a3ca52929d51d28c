from datetime import timedelta

import pytest

from conftest import BASE_TIME, history
from workforce.patterns import PatternDetector, PatternThresholds, target_area, weakest_area
from workforce.store import MemoryStore
from workforce.types import HistoryEntry, PatternType


def _entry(index: int, *, success: bool = True, **kwargs) -> HistoryEntry:
    return HistoryEntry(
        task_id=f"t{index}",
        role="qa_lead",
        success=success,
        status="completed" if success else "failed",
        completed_at=BASE_TIME - timedelta(hours=index),
        **kwargs,
    )


def _types(report) -> set[PatternType]:
    return {f.type for f in report.findings}


def test_insufficient_data() -> None:
    report = PatternDetector().detect(history(["completed"] * 4))
    assert report.insufficient
    assert report.findings == []
    assert report.tasks_analyzed == 4


def test_healthy_history_has_no_findings() -> None:
    report = PatternDetector().detect(history(["completed"] * 10, quality=0.8))
    assert not report.insufficient
    assert report.findings == []


def test_repeated_failure() -> None:
    entries = [
        _entry(i, success=i % 2 == 1, category="regression", failure_reason="flaky fixture")
        for i in range(10)
    ]
    finding = PatternDetector().detect_repeated_failure(entries)

    assert finding is not None
    assert finding.type is PatternType.REPEATED_FAILURE
    assert finding.evidence["failure_rate"] == 0.5
    assert finding.evidence["primary_category"] == "regression"
    assert finding.evidence["common_reasons"] == ["flaky fixture"]
    assert finding.confidence == pytest.approx(0.65)


def test_time_regression() -> None:
    recent = [_entry(i, time_taken_seconds=300, category="e2e") for i in range(3)]
    older = [_entry(i, time_taken_seconds=100, category="e2e") for i in range(3, 6)]
    finding = PatternDetector().detect_time_regression(recent + older)

    assert finding is not None
    assert finding.evidence["regression_factor"] == 3.0
    assert finding.evidence["slowest_category"] == "e2e"
    assert finding.confidence == pytest.approx(0.9)


def test_quality_decline() -> None:
    recent = [_entry(i, quality_score=0.5) for i in range(3)]
    older = [_entry(i, quality_score=0.9) for i in range(3, 6)]
    finding = PatternDetector().detect_quality_decline(recent + older)

    assert finding is not None
    assert finding.evidence["decline_amount"] == 0.4
    assert finding.confidence == pytest.approx(0.9)
    assert target_area(finding) == "quality_check:pre_delivery"


def test_quality_on_percent_scale_is_normalized() -> None:
    recent = [_entry(i, quality_score=79.7) for i in range(3)]
    older = [_entry(i, quality_score=80.0) for i in range(3, 6)]
    detector = PatternDetector()

    assert detector.detect_quality_decline(recent + older) is None
    assert detector.detect(recent + older).findings == []

    recent = [_entry(i, quality_score=50) for i in range(3)]
    finding = detector.detect_quality_decline(recent + older)
    assert finding is not None
    assert finding.evidence["decline_amount"] == 0.3
    assert finding.evidence["lowest_quality_tasks"][0]["quality"] == 0.5


def test_category_weakness() -> None:
    strong = [_entry(i, category="unit", quality_score=0.9) for i in range(4)]
    weak = [_entry(i, success=False, category="load", quality_score=0.3) for i in range(4, 8)]
    finding = PatternDetector().detect_category_weakness(strong + weak)

    assert finding is not None
    assert finding.evidence["weak_category"] == "load"
    assert finding.evidence["category_success_rate"] == 0.0
    assert target_area(finding) == "task_category:load"


def test_category_weakness_on_percent_scale() -> None:
    strong = [_entry(i, category="unit", quality_score=90) for i in range(4)]
    weak = [_entry(i, success=False, category="load", quality_score=30) for i in range(4, 8)]
    finding = PatternDetector().detect_category_weakness(strong + weak)

    assert finding is not None
    assert finding.evidence["weak_category"] == "load"
    assert finding.evidence["category_avg_quality"] == 0.3
    assert finding.evidence["category_score"] == 0.12


def test_tool_inefficiency() -> None:
    entries = [
        _entry(i, success=i == 0, tools_used=["browser"]) for i in range(5)
    ]
    finding = PatternDetector().detect_tool_inefficiency(entries)

    assert finding is not None
    assert finding.evidence["inefficient_tool"] == "browser"
    assert finding.evidence["tool_success_rate"] == 0.2
    assert target_area(finding) == "tool_use:browser"


def test_low_confidence_findings_are_filtered() -> None:
    entries = [_entry(i, success=i % 2 == 1, category="regression") for i in range(10)]
    strict = PatternDetector(PatternThresholds(min_confidence=0.7)).detect(entries)
    lenient = PatternDetector().detect(entries)

    assert PatternType.REPEATED_FAILURE not in _types(strict)
    assert PatternType.REPEATED_FAILURE in _types(lenient)


def test_weakest_area_picks_highest_confidence() -> None:
    recent = [_entry(i, quality_score=0.5, time_taken_seconds=300) for i in range(3)]
    older = [_entry(i, quality_score=0.9, time_taken_seconds=250) for i in range(3, 6)]
    report = PatternDetector().detect(recent + older)

    assert _types(report) == {PatternType.QUALITY_DECLINE}
    assert weakest_area(report.findings).type is PatternType.QUALITY_DECLINE
    assert weakest_area([]) is None


@pytest.mark.asyncio
async def test_analyze_role_logs_findings() -> None:
    store = MemoryStore()
    for entry in history(["failed", "completed"] * 5, role="qa_lead", category="regression"):
        await store.append_history(entry)

    report = await PatternDetector().analyze_role(store, "qa_lead")

    assert PatternType.REPEATED_FAILURE in _types(report)
    logged = list(store.patterns.values())
    assert logged[0]["role"] == "qa_lead"
    assert logged[0]["task_window"] == 10


@pytest.mark.asyncio
async def test_analyze_role_with_store_down() -> None:
    report = await PatternDetector().analyze_role(MemoryStore(available=False), "qa_lead")
    assert report.status == "unavailable"
    assert report.findings == []
