from datetime import timedelta

import pytest

from workforce.app import Runtime, dry_run_executors
from workforce.errors import ReasonCode
from workforce.recommendations import Recommendation, expire_stale, validate_recommendation
from workforce.roles import DEFAULT_ORGANIZATION
from workforce.store import MemoryStore
from workforce.types import Amendment, AmendmentType, utcnow

TECH = DEFAULT_ORGANIZATION.team_for_lead("cto")


def _rec(**kwargs) -> Recommendation:
    values = dict(
        team_id="tech",
        target_role="qa_lead",
        type="addition",
        content="Run the smoke suite before tagging a release.",
        targeting_pattern="release regressions",
        expected_impact="medium",
        reasoning="Three of the last five releases were rolled back.",
        sources=["postmortem-42"],
        source_bot="tech_kb",
    )
    values.update(kwargs)
    return Recommendation(**values)


def test_valid_recommendation() -> None:
    report = validate_recommendation(_rec(), TECH)
    assert report.valid
    assert report.errors == []


def test_missing_fields_and_bad_values() -> None:
    report = validate_recommendation(_rec(type="rewrite", expected_impact="huge", sources=[]), TECH)
    assert not report.valid
    assert "Missing required field: sources" in report.errors
    assert any(e.startswith("Invalid type: rewrite") for e in report.errors)
    assert any(e.startswith("Invalid expected_impact: huge") for e in report.errors)


def test_content_word_limit() -> None:
    report = validate_recommendation(_rec(content="word " * 201), TECH)
    assert report.errors == ["Content exceeds 200 words (has 201)"]


def test_targeting_rules() -> None:
    assert not validate_recommendation(_rec(target_role="cto"), TECH).valid
    assert not validate_recommendation(_rec(target_role="tech_kb"), TECH).valid
    assert not validate_recommendation(_rec(target_role="content_lead"), TECH).valid
    assert not validate_recommendation(_rec(team_id="marketing"), TECH).valid


def test_short_pattern_rejected() -> None:
    report = validate_recommendation(_rec(targeting_pattern="qa"), TECH)
    assert report.errors == ["targeting_pattern must be a meaningful pattern description"]


def test_duplicate_of_active_amendment() -> None:
    amendment = Amendment(
        target_role="qa_lead",
        created_by="cto",
        trigger_reason="low score",
        trigger_pattern="release regressions",
        amendment_type=AmendmentType.APPEND,
        target_area="task_category:release",
        content="Check twice.",
        evaluation_window=5,
        baseline_score=0.4,
    )
    report = validate_recommendation(_rec(), TECH, [amendment])
    assert report.errors == [f"Recommendation duplicates active amendment {amendment.id}"]
    result = report.as_result(_rec())
    assert result.reason is ReasonCode.INVALID_RECOMMENDATION


def test_expiry() -> None:
    created = utcnow() - timedelta(days=8)
    stale = _rec(created_at=created)
    fresh = _rec()

    expired = expire_stale([stale, fresh])

    assert expired == [stale]
    assert stale.status == "expired"
    assert fresh.status == "pending"
    assert stale.expires_at == created + timedelta(days=7)


def test_from_dict_accepts_camel_case() -> None:
    rec = Recommendation.from_dict(
        {
            "team_id": "tech",
            "target_role": "qa_lead",
            "type": "suggestion",
            "content": "Pair on flaky tests.",
            "targetingPattern": "flaky tests",
            "expectedImpact": "low",
            "reasoning": "Flakes doubled this week.",
            "sources": ["ci-dashboard"],
        }
    )
    assert rec.targeting_pattern == "flaky tests"
    assert validate_recommendation(rec, TECH).valid


@pytest.mark.asyncio
async def test_runtime_accepts_only_valid_recommendations() -> None:
    store = MemoryStore()
    runtime = Runtime.build(dry_run_executors(), store=store)

    accepted = await runtime.submit_recommendation(_rec())
    rejected = await runtime.submit_recommendation(_rec(target_role="cto"))

    assert accepted.ok
    assert not rejected.ok
    assert list(store.recommendations) == [accepted.data.id]
    assert runtime.recommendations == [accepted.data]
