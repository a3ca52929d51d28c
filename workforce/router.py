"""
Learned task routing.

Candidates come from explicit assignment, keyword matches and the task's
workflow; they are scored with static rules plus persisted success rates
per (role, task type) that are updated as outcomes arrive.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .cache import LRUCache
from .config import settings
from .store import Store
from .types import LearningRecord, Priority, RoutingDecision, Task

logger = logging.getLogger(__name__)


def _frozen(mapping: dict[str, tuple[str, ...]]) -> Mapping[str, tuple[str, ...]]:
    return MappingProxyType(mapping)


@dataclass(frozen=True)
class RoutingRules:
    keywords: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: _frozen(
            {
                "financial": ("cfo",),
                "budget": ("cfo",),
                "expense": ("cfo",),
                "technical": ("cto",),
                "architecture": ("cto",),
                "infrastructure": ("cto", "devops"),
                "deploy": ("devops",),
                "pipeline": ("devops", "data"),
                "security": ("ciso",),
                "vulnerability": ("ciso",),
                "compliance": ("cco", "clo"),
                "legal": ("clo",),
                "contract": ("clo",),
                "marketing": ("cmo",),
                "campaign": ("cmo",),
                "product": ("cpo",),
                "feature": ("cpo",),
                "roadmap": ("cpo",),
                "sales": ("cro",),
                "revenue": ("cro",),
                "hiring": ("chro",),
                "employee": ("chro",),
                "operations": ("coo",),
                "vendor": ("coo",),
                "data": ("data",),
                "analytics": ("data",),
                "test": ("qa",),
                "quality": ("qa",),
            }
        )
    )
    workflows: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: _frozen(
            {
                "Daily Operations": ("cos", "coo"),
                "Financial": ("cfo", "coo"),
                "Technical": ("cto", "devops", "qa"),
                "Legal": ("clo", "cco"),
                "Security": ("ciso", "cto"),
                "Marketing": ("cmo", "cro"),
                "Product": ("cpo", "cto", "qa"),
                "HR": ("chro",),
            }
        )
    )
    task_types: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: _frozen(
            {
                "analysis": ("analyze", "review", "assess", "evaluate"),
                "creation": ("create", "draft", "write", "design"),
                "decision": ("approve", "decide", "choose", "select"),
                "investigation": ("investigate", "find", "research", "understand"),
                "execution": ("implement", "execute", "deploy", "launch"),
            }
        )
    )
    prefer_senior: frozenset[Priority] = frozenset({Priority.CRITICAL, Priority.HIGH})
    senior_roles: frozenset[str] = frozenset({"ceo", "cfo", "cto", "coo", "clo", "cos"})
    default_role: str = "cos"
    explicit_bonus: float = 100
    keyword_weight: float = 20
    load_weight: float = 5
    load_threshold: int = 5
    senior_bonus: float = 10
    learning_weight: float = 10


@dataclass
class TaskAnalysis:
    keyword_matches: dict[str, int]
    task_type: str
    explicit_role: str | None
    workflow: str | None
    priority: Priority
    complexity: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword_matches": dict(self.keyword_matches),
            "task_type": self.task_type,
            "explicit_role": self.explicit_role,
            "workflow": self.workflow,
            "priority": self.priority.value,
            "complexity": self.complexity,
        }


@dataclass
class RankedCandidate:
    role: str
    score: float
    factors: list[str]


class LearnedRouter:
    """Ranks candidate roles for a task and learns from reported outcomes."""

    def __init__(
        self,
        store: Store | None = None,
        rules: RoutingRules | None = None,
        history_size: int | None = None,
    ) -> None:
        self.store = store
        self.rules = rules or RoutingRules()
        self.history: LRUCache[str, RoutingDecision] = LRUCache(
            history_size or settings.routing_history_size
        )
        self.load: dict[str, int] = defaultdict(int)
        self.learnings: dict[tuple[str, str], LearningRecord] = {}
        self._unsynced: set[tuple[str, str]] = set()

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze(self, task: Task) -> TaskAnalysis:
        content = (task.content or "").lower()
        matches: dict[str, int] = {}
        for keyword, roles in self.rules.keywords.items():
            if keyword in content:
                for role in roles:
                    matches[role] = matches.get(role, 0) + 1

        return TaskAnalysis(
            keyword_matches=matches,
            task_type=self.detect_task_type(content),
            explicit_role=task.assigned_role,
            workflow=task.workflow,
            priority=task.priority,
            complexity=self.assess_complexity(content),
        )

    def detect_task_type(self, content: str) -> str:
        content = content.lower()
        for task_type, keywords in self.rules.task_types.items():
            if any(kw in content for kw in keywords):
                return task_type
        return "general"

    @staticmethod
    def assess_complexity(content: str) -> str:
        score = len(content.split()) / 50
        if " and " in content or ", " in content:
            score += 0.5
        if " if " in content or " when " in content:
            score += 0.3
        if score < 0.5:
            return "simple"
        if score < 1.5:
            return "medium"
        return "complex"

    def candidates(self, analysis: TaskAnalysis) -> list[str]:
        # dict preserves first-seen order for the stable sort below
        seen: dict[str, None] = {}
        if analysis.explicit_role:
            seen[analysis.explicit_role] = None
        for role in analysis.keyword_matches:
            seen[role] = None
        if analysis.workflow:
            for role in self.rules.workflows.get(analysis.workflow, ()):
                seen[role] = None
        if not seen:
            seen[self.rules.default_role] = None
        return list(seen)

    def rank(self, candidates: list[str], analysis: TaskAnalysis) -> list[RankedCandidate]:
        rules = self.rules
        ranked: list[RankedCandidate] = []
        for role in candidates:
            score = 0.0
            factors: list[str] = []

            if role == analysis.explicit_role:
                score += rules.explicit_bonus
                factors.append("explicit_assignment")

            matches = analysis.keyword_matches.get(role, 0)
            if matches:
                score += matches * rules.keyword_weight
                factors.append(f"keyword_match_{matches}")

            load = self.load.get(role, 0)
            if load > rules.load_threshold:
                score -= load * rules.load_weight
                factors.append("high_load_penalty")

            if analysis.priority in rules.prefer_senior and role in rules.senior_roles:
                score += rules.senior_bonus
                factors.append("senior_preference")

            learning = self.learnings.get((role, analysis.task_type))
            if learning and learning.success_rate:
                score += learning.success_rate * rules.learning_weight
                factors.append(f"historical_success_{round(learning.success_rate * 100)}%")

            ranked.append(RankedCandidate(role, score, factors))

        # sorted() is stable: ties keep first-seen order
        return sorted(ranked, key=lambda c: c.score, reverse=True)

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def route(self, task: Task) -> RoutingDecision:
        analysis = self.analyze(task)
        candidates = self.candidates(analysis)
        ranked = self.rank(candidates, analysis)
        primary = ranked[0]
        alternates = [c.role for c in ranked[1:3]]

        reasoning = f"Routed to {primary.role} (score: {primary.score:g})"
        if primary.factors:
            reasoning += f". Factors: {', '.join(primary.factors)}"
        if alternates:
            reasoning += f". Alternates: {', '.join(alternates)}"

        decision = RoutingDecision(
            task_id=task.id,
            primary_role=primary.role,
            alternate_roles=alternates,
            confidence=primary.score,
            reasoning=reasoning,
            task_type=analysis.task_type,
            factors=list(primary.factors),
            candidates=candidates,
        )
        self.history.put(task.id, decision)
        logger.debug("Routing %s: %s", task.id, reasoning)
        return decision

    def update_load(self, role: str, delta: int) -> int:
        self.load[role] = max(0, self.load.get(role, 0) + delta)
        return self.load[role]

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    async def record_outcome(
        self, task_id: str, success: bool, role: str | None = None
    ) -> LearningRecord | None:
        """Credit the outcome to ``role``, the role that did the work.

        Defaults to the routed primary role.
        """
        decision = self.history.get(task_id)
        if decision is None:
            logger.debug("No routing decision for %s; outcome ignored", task_id)
            return None

        decision.outcome = success
        key = (role or decision.primary_role, decision.task_type)
        record = self.learnings.get(key)
        if record is None:
            record = LearningRecord(*key)
            self.learnings[key] = record
        record.record(success)

        self._unsynced.add(key)
        await self.sync_learnings()
        return record

    async def sync_learnings(self) -> int:
        """Push learning records the store has not accepted yet."""
        if self.store is None or not self._unsynced:
            return 0
        synced = 0
        for key in list(self._unsynced):
            result = await self.store.upsert_learning(self.learnings[key])
            if not result.ok:
                logger.warning("Learning for %s/%s not persisted: %s", *key, result.error)
                break
            self._unsynced.discard(key)
            synced += 1
        return synced

    async def load_learnings(self) -> int:
        if self.store is None:
            return 0
        result = await self.store.fetch_learnings()
        if not result.ok:
            logger.warning("Using in-memory learnings; store %s", result.error)
            return 0
        for loaded in result.data or []:
            existing = self.learnings.get(loaded.key)
            if existing is None:
                self.learnings[loaded.key] = LearningRecord(
                    loaded.role, loaded.task_type, loaded.total, loaded.successes
                )
            else:
                existing.merge(loaded)
        logger.info("Loaded %d routing learnings", len(result.data or []))
        return len(result.data or [])

    def stats(self) -> dict[str, Any]:
        by_role: dict[str, dict[str, int]] = defaultdict(lambda: {"routed": 0, "successful": 0})
        for decision in self.history.values():
            by_role[decision.primary_role]["routed"] += 1
            if decision.outcome:
                by_role[decision.primary_role]["successful"] += 1
        return {
            "total_routings": len(self.history),
            "by_role": dict(by_role),
            "load": {role: load for role, load in self.load.items() if load},
            "learnings": {
                f"{role}_{task_type}": {
                    "total": rec.total,
                    "successes": rec.successes,
                    "success_rate": round(rec.success_rate, 3),
                }
                for (role, task_type), rec in self.learnings.items()
            },
        }
