"""Shared test fixtures and helpers for pytest."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from workforce.store import MemoryStore
from workforce.types import ExecutionResult, HistoryEntry, Task

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeExecutor:
    """Returns queued results in order, then a plain success."""

    def __init__(self, *results: ExecutionResult, delay: float = 0.0) -> None:
        self.results = list(results)
        self.delay = delay
        self.seen: list[str] = []
        self.running = 0
        self.max_running = 0

    async def process(self, task: Task) -> ExecutionResult:
        self.seen.append(task.id)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.results:
                return self.results.pop(0)
            return ExecutionResult(decision="done", quality_score=0.9)
        finally:
            self.running -= 1


class RaisingExecutor:
    async def process(self, task: Task) -> ExecutionResult:
        raise RuntimeError("executor crashed")


def history(
    statuses: list[str],
    *,
    role: str = "web_dev_lead",
    quality: float | None = None,
    category: str = "frontend",
    start: datetime = BASE_TIME,
) -> list[HistoryEntry]:
    """History entries most-recent-first, one hour apart."""
    entries = []
    for index, status in enumerate(statuses):
        entries.append(
            HistoryEntry(
                task_id=f"{role}-{index}",
                role=role,
                success=status in ("completed", "success", "approved"),
                status=status,
                category=category,
                quality_score=quality if status == "completed" else None,
                completed_at=start - timedelta(hours=index),
            )
        )
    return entries


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def task_factory():
    def make(task_id: str = "task", content: str = "Review weekly report", **kwargs) -> Task:
        return Task(id=task_id, content=content, **kwargs)

    return make
