import asyncio
from datetime import timedelta

import pytest

from conftest import FakeExecutor
from workforce.app import DryRunExecutor, Runtime, build_store, dry_run_executors
from workforce.config import Settings
from workforce.orchestrator import Orchestrator
from workforce.recommendations import Recommendation
from workforce.review import ReviewEngine
from workforce.scheduler import DispatchWorker, ReviewWorker
from workforce.store import MemoryStore, ResilientStore
from workforce.types import Task, TaskStatus, utcnow


@pytest.mark.asyncio
async def test_dispatch_worker_runs_until_stopped() -> None:
    orchestrator = Orchestrator({"cos": FakeExecutor()}, tick_interval=0.01)
    await orchestrator.enqueue(Task(id="a", content=""))
    stop = asyncio.Event()
    worker = DispatchWorker(orchestrator, stop)

    runner = asyncio.create_task(worker.run_forever())
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, timeout=1)

    assert worker.iterations >= 1
    assert orchestrator.tasks["a"].status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_review_worker_expires_recommendations() -> None:
    store = MemoryStore()
    stale = Recommendation(
        team_id="tech",
        target_role="qa_lead",
        type="addition",
        content="Tag releases.",
        targeting_pattern="release tagging",
        expected_impact="low",
        reasoning="Missing tags.",
        sources=["wiki"],
        created_at=utcnow() - timedelta(days=30),
    )
    await store.save_recommendation(stale)
    engine = ReviewEngine(store)
    worker = ReviewWorker(engine, store, interval=60, recommendations=[stale])

    await worker.step()

    assert stale.status == "expired"
    assert engine.last_run


def test_build_store_follows_settings() -> None:
    assert isinstance(build_store(Settings(database_enabled=False)), MemoryStore)
    assert isinstance(build_store(Settings(database_enabled=True)), ResilientStore)


@pytest.mark.asyncio
async def test_runtime_processes_tasks_with_dry_run_executors() -> None:
    store = MemoryStore()
    runtime = Runtime.build(dry_run_executors(), store=store)
    await runtime.start()
    await runtime.orchestrator.enqueue(Task(id="a", content="Draft the hiring plan"))

    await runtime.orchestrator.tick()
    await runtime.orchestrator.drain()

    task = runtime.orchestrator.tasks["a"]
    assert task.status is TaskStatus.COMPLETED
    assert store.history[0].role == "chro"
    assert isinstance(runtime.orchestrator.executors["chro"], DryRunExecutor)
