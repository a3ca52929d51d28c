"""
Rule-based escalation detection.

Decides whether a task needs a decision above the acting role's authority.
Every rule family is evaluated; the reasons are the ordered, deduplicated
union of everything that fired.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from .types import ExecutionResult, Priority, Task

CustomPredicate = Callable[[Task, ExecutionResult | None, str], bool]

DEFAULT_CUSTOM_REASON = "Custom escalation rule triggered"

_AMOUNT_RE = re.compile(
    r"\$[\d,]+(?:\.\d{2})?|\d+(?:,\d{3})*(?:\.\d{2})?\s*(?:dollars?|usd)",
    re.IGNORECASE,
)
_AMOUNT_STRIP_RE = re.compile(r"[$,\s]|dollars?|usd", re.IGNORECASE)


@dataclass(frozen=True)
class RoleAuthority:
    """Per-role spending ceiling and phrases that always need sign-off."""

    escalate_above: float | None = None
    always_escalate: tuple[str, ...] = ()


@dataclass(frozen=True)
class EscalationRule:
    """A caller-supplied rule: first matching predicate contributes its reason."""

    name: str
    predicate: CustomPredicate
    reason: str | None = None
    priority: Priority | None = None


@dataclass(frozen=True)
class EscalationPolicy:
    markers: tuple[str, ...] = (
        "ceo approval",
        "ceo decision",
        "requires ceo",
        "escalate to ceo",
        "executive decision",
        "board approval",
    )
    risk_keywords: tuple[str, ...] = (
        "legal liability",
        "compliance violation",
        "security incident",
        "data breach",
        "regulatory",
        "lawsuit",
        "termination",
        "acquisition",
        "merger",
    )
    strategic_keywords: tuple[str, ...] = (
        "strategic direction",
        "company policy",
        "organizational change",
        "new market",
        "product pivot",
        "partnership",
        "investment",
        "fundraising",
    )
    critical_indicators: tuple[str, ...] = (
        "security",
        "breach",
        "legal",
        "compliance",
        "liability",
        "urgent",
    )
    single_expense: float = 10_000
    contract_value: float = 50_000
    roles: Mapping[str, RoleAuthority] = field(
        default_factory=lambda: MappingProxyType(
            {
                "cfo": RoleAuthority(25_000, ("major investment", "audit finding")),
                "cto": RoleAuthority(
                    15_000, ("architecture change", "vendor switch", "security vulnerability")
                ),
                "clo": RoleAuthority(
                    None, ("contract signature", "legal settlement", "regulatory filing")
                ),
                "chro": RoleAuthority(
                    None, ("executive hiring", "termination", "compensation change")
                ),
                "ciso": RoleAuthority(
                    None, ("security breach", "incident response", "vulnerability disclosure")
                ),
            }
        )
    )


@dataclass
class EscalationDecision:
    escalate: bool
    reasons: list[str]
    priority: Priority

    def to_dict(self) -> dict:
        return {
            "escalate": self.escalate,
            "reasons": list(self.reasons),
            "priority": self.priority.value,
        }


def extract_amounts(text: str) -> list[float]:
    """Dollar amounts in ``text``: ``$50,000``, ``$1,250.50``, ``12000 dollars``, ``15,000 USD``."""
    amounts: list[float] = []
    for match in _AMOUNT_RE.findall(text):
        cleaned = _AMOUNT_STRIP_RE.sub("", match)
        if not cleaned:
            continue
        try:
            amounts.append(float(cleaned))
        except ValueError:
            continue
    return amounts


def _money(amount: float) -> str:
    return f"${amount:,.0f}" if amount == int(amount) else f"${amount:,.2f}"


class EscalationDetector:
    """Stateless evaluator over an immutable ``EscalationPolicy``."""

    def __init__(
        self,
        policy: EscalationPolicy | None = None,
        custom_rules: Sequence[EscalationRule] = (),
    ) -> None:
        self.policy = policy or EscalationPolicy()
        self.custom_rules: tuple[EscalationRule, ...] = tuple(custom_rules)

    def evaluate(
        self, task: Task, result: ExecutionResult | None, acting_role: str
    ) -> EscalationDecision:
        candidates = [
            self._explicit_marker(task),
            self._financial_threshold(task, result, acting_role),
            self._risk_keyword(task, result),
            self._strategic_keyword(task, result),
            self._role_rule(task, result, acting_role),
        ]
        custom = self._custom_rule(task, result, acting_role)
        if custom is not None:
            candidates.append(custom.reason or DEFAULT_CUSTOM_REASON)

        reasons: list[str] = []
        for reason in candidates:
            if reason and reason not in reasons:
                reasons.append(reason)

        return EscalationDecision(
            escalate=bool(reasons),
            reasons=reasons,
            priority=self._priority(reasons, task, custom.priority if custom else None),
        )

    def _explicit_marker(self, task: Task) -> str | None:
        text = f"{task.content} {task.notes}".lower()
        for marker in self.policy.markers:
            if marker in text:
                return "Task explicitly marked for CEO approval"
        return None

    def _financial_threshold(
        self, task: Task, result: ExecutionResult | None, role: str
    ) -> str | None:
        text = f"{task.content} {result.action if result else ''}".lower()
        amounts = extract_amounts(text)
        if not amounts:
            return None

        authority = self.policy.roles.get(role)
        for amount in amounts:
            if authority and authority.escalate_above is not None and amount > authority.escalate_above:
                return (
                    f"Financial amount {_money(amount)} exceeds {role.upper()} authority "
                    f"({_money(authority.escalate_above)})"
                )
            if amount > self.policy.single_expense:
                return (
                    f"Financial amount {_money(amount)} exceeds single expense threshold "
                    f"({_money(self.policy.single_expense)})"
                )

        if "contract" in text and amounts[0] > self.policy.contract_value:
            return (
                f"Contract value {_money(amounts[0])} exceeds threshold "
                f"({_money(self.policy.contract_value)})"
            )
        return None

    def _analysis_text(self, task: Task, result: ExecutionResult | None) -> str:
        parts = [task.content, task.notes]
        if result:
            parts.extend([result.analysis, result.decision])
        return " ".join(parts).lower()

    def _risk_keyword(self, task: Task, result: ExecutionResult | None) -> str | None:
        text = self._analysis_text(task, result)
        for keyword in self.policy.risk_keywords:
            if keyword in text:
                return f'Risk indicator detected: "{keyword}"'
        return None

    def _strategic_keyword(self, task: Task, result: ExecutionResult | None) -> str | None:
        text = self._analysis_text(task, result)
        for keyword in self.policy.strategic_keywords:
            if keyword in text:
                return f'Strategic decision required: "{keyword}"'
        return None

    def _role_rule(self, task: Task, result: ExecutionResult | None, role: str) -> str | None:
        authority = self.policy.roles.get(role)
        if not authority or not authority.always_escalate:
            return None
        text = f"{task.content} {task.notes} {result.action if result else ''}".lower()
        for trigger in authority.always_escalate:
            if trigger.lower() in text:
                return f'{role.upper()} role requires CEO approval for: "{trigger}"'
        return None

    def _custom_rule(
        self, task: Task, result: ExecutionResult | None, role: str
    ) -> EscalationRule | None:
        for rule in self.custom_rules:
            if rule.predicate(task, result, role):
                return rule
        return None

    def _priority(
        self, reasons: list[str], task: Task, rule_priority: Priority | None = None
    ) -> Priority:
        priority = Priority.MEDIUM
        reason_text = " ".join(reasons).lower()
        if any(indicator in reason_text for indicator in self.policy.critical_indicators):
            priority = Priority.CRITICAL

        if task.priority is Priority.CRITICAL:
            priority = Priority.CRITICAL
        elif task.priority is Priority.HIGH and priority is Priority.MEDIUM:
            priority = Priority.HIGH
        if rule_priority is not None and rule_priority.rank > priority.rank:
            priority = rule_priority
        return priority
