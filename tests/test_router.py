import pytest

from workforce.router import LearnedRouter, RoutingRules
from workforce.store import MemoryStore
from workforce.types import LearningRecord, Priority, Task


def _task(task_id: str, content: str, **kwargs) -> Task:
    return Task(id=task_id, content=content, **kwargs)


def test_explicit_assignment_wins() -> None:
    router = LearnedRouter()
    decision = router.route(_task("t1", "Review the budget", assigned_role="cos"))

    assert decision.primary_role == "cos"
    assert decision.alternate_roles == ["cfo"]
    assert decision.reasoning.startswith("Routed to cos (score: 100)")
    assert "explicit_assignment" in decision.factors


def test_keyword_matches_accumulate() -> None:
    router = LearnedRouter()
    decision = router.route(_task("t1", "Deploy the new infrastructure pipeline"))

    # devops matches deploy, infrastructure and pipeline
    assert decision.primary_role == "devops"
    assert decision.confidence == 60
    assert "keyword_match_3" in decision.factors


def test_no_candidates_falls_back_to_default_role() -> None:
    decision = LearnedRouter().route(_task("t1", "Tidy up the shared drive"))
    assert decision.primary_role == "cos"
    assert decision.alternate_roles == []


def test_senior_preference_for_urgent_work() -> None:
    router = LearnedRouter()
    task = _task("t1", "Sort out the vendor invoices", priority=Priority.HIGH, workflow="Financial")
    decision = router.route(task)

    # coo: vendor keyword (20) + senior (10); cfo: senior only (10)
    assert decision.primary_role == "coo"
    assert "senior_preference" in decision.factors


def test_ties_keep_first_seen_order() -> None:
    router = LearnedRouter()
    decision = router.route(_task("t1", "Plan something", workflow="Technical"))
    assert decision.primary_role == "cto"
    assert decision.alternate_roles == ["devops", "qa"]


def test_load_penalty_only_above_threshold() -> None:
    router = LearnedRouter()
    task = _task("t1", "Deploy the release")

    for _ in range(5):
        router.update_load("devops", 1)
    at_threshold = router.route(task)
    assert at_threshold.confidence == 20
    assert "high_load_penalty" not in at_threshold.factors

    router.update_load("devops", 1)
    above = router.route(_task("t2", "Deploy the release"))
    assert above.confidence == 20 - 6 * 5
    assert "high_load_penalty" in above.factors


def test_load_never_negative() -> None:
    router = LearnedRouter()
    assert router.update_load("qa", -3) == 0


def test_routing_history_is_bounded() -> None:
    router = LearnedRouter(history_size=2)
    for index in range(3):
        router.route(_task(f"t{index}", "Write docs"))

    assert len(router.history) == 2
    assert "t0" not in router.history
    assert "t2" in router.history


@pytest.mark.asyncio
async def test_outcomes_update_learnings_and_persist() -> None:
    store = MemoryStore()
    router = LearnedRouter(store)
    router.route(_task("t1", "Analyze the budget"))

    record = await router.record_outcome("t1", True)

    assert record is not None
    assert record.key == ("cfo", "analysis")
    assert record.success_rate == 1.0
    assert store.learnings[("cfo", "analysis")].total == 1


@pytest.mark.asyncio
async def test_outcome_recorded_for_executing_role() -> None:
    router = LearnedRouter()
    router.route(_task("t1", "Analyze the budget"))

    record = await router.record_outcome("t1", True, role="cos")

    assert record is not None
    assert record.key == ("cos", "analysis")
    assert ("cfo", "analysis") not in router.learnings


@pytest.mark.asyncio
async def test_learning_adds_historical_success_factor() -> None:
    router = LearnedRouter()
    router.learnings[("cfo", "analysis")] = LearningRecord("cfo", "analysis", 4, 3)

    decision = router.route(_task("t1", "Analyze the budget"))
    assert decision.confidence == 20 + 0.75 * 10
    assert "historical_success_75%" in decision.factors


@pytest.mark.asyncio
async def test_unknown_task_outcome_is_ignored() -> None:
    router = LearnedRouter()
    assert await router.record_outcome("missing", True) is None


@pytest.mark.asyncio
async def test_unsynced_learnings_retry_after_store_recovers() -> None:
    store = MemoryStore(available=False)
    router = LearnedRouter(store)
    router.route(_task("t1", "Analyze the budget"))
    await router.record_outcome("t1", False)
    assert store.learnings == {}

    store.available = True
    assert await router.sync_learnings() == 1
    assert store.learnings[("cfo", "analysis")].total == 1


@pytest.mark.asyncio
async def test_load_learnings_merges_without_going_backwards() -> None:
    store = MemoryStore()
    await store.upsert_learning(LearningRecord("cto", "execution", 10, 7))
    router = LearnedRouter(store)
    router.learnings[("cto", "execution")] = LearningRecord("cto", "execution", 12, 9)

    assert await router.load_learnings() == 1
    assert router.learnings[("cto", "execution")].total == 12


def test_rules_are_read_only() -> None:
    rules = RoutingRules()
    with pytest.raises(TypeError):
        rules.keywords["new"] = ("cos",)  # type: ignore[index]
