import pytest

from workforce.amendments import FALLBACK_GUIDANCE, AmendmentFactory, AmendmentGuard
from workforce.errors import PolicyViolation, ReasonCode
from workforce.roles import DEFAULT_ORGANIZATION
from workforce.types import Amendment, AmendmentType, PatternFinding, PatternType

TECH = DEFAULT_ORGANIZATION.team_for_lead("cto")
MARKETING = DEFAULT_ORGANIZATION.team_for_lead("cmo")


def _amendment(target: str = "web_dev_lead", area: str = "task_category:frontend", **kwargs) -> Amendment:
    values = dict(
        target_role=target,
        created_by="cto",
        trigger_reason="score below warning",
        trigger_pattern=area,
        amendment_type=AmendmentType.APPEND,
        target_area=area,
        content="Verify each step before proceeding.",
        evaluation_window=5,
        baseline_score=0.45,
    )
    values.update(kwargs)
    return Amendment(**values)


def _reason(excinfo: pytest.ExceptionInfo[PolicyViolation]) -> ReasonCode:
    return excinfo.value.reason


def test_valid_amendment_passes() -> None:
    AmendmentGuard().check("cto", TECH, _amendment())


def test_self_target_rejected() -> None:
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check_target("cto", TECH, "cto")
    assert _reason(excinfo) is ReasonCode.SELF_TARGET


def test_cross_team_target_rejected() -> None:
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check("cmo", MARKETING, _amendment(target="web_dev_lead"))
    assert _reason(excinfo) is ReasonCode.CROSS_TEAM_TARGET


def test_non_lead_reviewer_rejected() -> None:
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check_target("qa_lead", TECH, "web_dev_lead")
    assert _reason(excinfo) is ReasonCode.CROSS_TEAM_TARGET


def test_persona_area_rejected() -> None:
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check("cto", TECH, _amendment(area="persona:tone"))
    assert _reason(excinfo) is ReasonCode.PERSONA_TARGET


def test_amendment_limit() -> None:
    active = [_amendment(area=f"task_category:c{i}") for i in range(10)]
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check("cto", TECH, _amendment(), active)
    assert _reason(excinfo) is ReasonCode.AMENDMENT_LIMIT


def test_protected_pattern_rejected() -> None:
    amendment = _amendment(content="Skip the extra checks on the checkout page.")
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check("cto", TECH, amendment)
    assert _reason(excinfo) is ReasonCode.PROTECTED_PATTERN


def test_conflicting_trigger_rejected() -> None:
    existing = _amendment()
    with pytest.raises(PolicyViolation) as excinfo:
        AmendmentGuard().check("cto", TECH, _amendment(), [existing])
    assert _reason(excinfo) is ReasonCode.CONFLICTING_AMENDMENT
    assert excinfo.value.data["existing"] == existing.id


def test_factory_renders_finding_guidance() -> None:
    finding = PatternFinding(
        type=PatternType.REPEATED_FAILURE,
        confidence=0.7,
        evidence={"primary_category": "frontend", "common_reasons": ["missing tests"]},
        suggested_action="",
    )
    amendment = AmendmentFactory(5).from_finding("cto", "web_dev_lead", finding, 0.42, "low score")

    assert amendment.target_area == "task_category:frontend"
    assert amendment.amendment_type is AmendmentType.APPEND
    assert "frontend tasks" in amendment.content
    assert "missing tests" in amendment.content
    assert amendment.pattern_type is PatternType.REPEATED_FAILURE
    assert amendment.evaluation_window == 5


def test_factory_replaces_previously_reverted_area() -> None:
    amendment = AmendmentFactory(5).from_finding(
        "cto", "web_dev_lead", None, 0.4, "low score", reverted_areas=("task_category:general",)
    )
    assert amendment.amendment_type is AmendmentType.REPLACE
    assert amendment.content == FALLBACK_GUIDANCE


def test_evaluation_window_is_fixed() -> None:
    amendment = _amendment()
    with pytest.raises(AttributeError):
        amendment.evaluation_window = 10
