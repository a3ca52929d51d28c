from workforce.escalation import EscalationDetector, EscalationRule, extract_amounts
from workforce.types import ExecutionResult, Priority, Task


def _task(content: str, **kwargs) -> Task:
    return Task(id="t1", content=content, **kwargs)


def test_ceo_marker_and_risk_keyword_both_reported() -> None:
    detector = EscalationDetector()
    decision = detector.evaluate(
        _task("CEO approval needed for $50,000 legal liability matter"), None, "cfo"
    )

    assert decision.escalate is True
    assert len(decision.reasons) > 1
    assert "Task explicitly marked for CEO approval" in decision.reasons
    assert 'Risk indicator detected: "legal liability"' in decision.reasons
    assert decision.reasons[0] == "Task explicitly marked for CEO approval"
    assert decision.priority is Priority.CRITICAL


def test_amount_above_role_authority() -> None:
    decision = EscalationDetector().evaluate(_task("Pay invoice of $30,000"), None, "cfo")
    assert decision.reasons == ["Financial amount $30,000 exceeds CFO authority ($25,000)"]
    assert decision.priority is Priority.MEDIUM


def test_amount_above_single_expense_threshold_for_role_without_ceiling() -> None:
    decision = EscalationDetector().evaluate(_task("Order equipment for $12,500"), None, "coo")
    assert decision.reasons == [
        "Financial amount $12,500 exceeds single expense threshold ($10,000)"
    ]


def test_small_amount_does_not_escalate() -> None:
    decision = EscalationDetector().evaluate(_task("Buy a monitor for $300"), None, "cto")
    assert decision.escalate is False
    assert decision.reasons == []


def test_role_specific_trigger() -> None:
    decision = EscalationDetector().evaluate(
        _task("Plan the architecture change for the API gateway"), None, "cto"
    )
    assert decision.reasons == ['CTO role requires CEO approval for: "architecture change"']


def test_result_analysis_is_scanned_for_strategic_keywords() -> None:
    result = ExecutionResult(analysis="This amounts to a product pivot for the team")
    decision = EscalationDetector().evaluate(_task("Summarise customer feedback"), result, "cpo")
    assert decision.reasons == ['Strategic decision required: "product pivot"']


def test_task_priority_is_never_downgraded() -> None:
    detector = EscalationDetector()
    high = detector.evaluate(_task("Discuss the partnership", priority=Priority.HIGH), None, "coo")
    critical = detector.evaluate(
        _task("Discuss the partnership", priority=Priority.CRITICAL), None, "coo"
    )
    assert high.priority is Priority.HIGH
    assert critical.priority is Priority.CRITICAL


def test_custom_rule_contributes_reason_and_priority() -> None:
    rule = EscalationRule(
        name="weekend-deploy",
        predicate=lambda task, result, role: "weekend" in task.content.lower(),
        reason="Weekend deploys need sign-off",
        priority=Priority.HIGH,
    )
    detector = EscalationDetector(custom_rules=[rule])

    decision = detector.evaluate(_task("Schedule a weekend deploy"), None, "devops")
    assert decision.reasons == ["Weekend deploys need sign-off"]
    assert decision.priority is Priority.HIGH


def test_reasons_are_deduplicated_union() -> None:
    rule = EscalationRule(
        name="dup",
        predicate=lambda *_: True,
        reason="Task explicitly marked for CEO approval",
    )
    decision = EscalationDetector(custom_rules=[rule]).evaluate(
        _task("Needs board approval"), None, "cos"
    )
    assert decision.reasons == ["Task explicitly marked for CEO approval"]


def test_extract_amounts() -> None:
    assert extract_amounts("$1,200.50 and 3000 dollars") == [1200.5, 3000.0]
    assert extract_amounts("no money here") == []
