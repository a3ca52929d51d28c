import pytest

from conftest import history
from workforce.store import MemoryStore, ResilientStore
from workforce.types import LearningRecord


@pytest.mark.asyncio
async def test_memory_store_unavailable() -> None:
    store = MemoryStore(available=False)
    result = await store.append_history(history(["completed"])[0])
    assert not result.ok
    assert result.error == "unavailable"


@pytest.mark.asyncio
async def test_fetch_history_is_most_recent_first() -> None:
    store = MemoryStore()
    for entry in reversed(history(["completed", "failed", "completed"])):
        await store.append_history(entry)

    result = await store.fetch_history("web_dev_lead", limit=2)

    assert [e.status for e in result.data] == ["completed", "failed"]


@pytest.mark.asyncio
async def test_learning_counts_never_go_backwards() -> None:
    store = MemoryStore()
    await store.upsert_learning(LearningRecord("cfo", "analysis", 5, 4))
    await store.upsert_learning(LearningRecord("cfo", "analysis", 3, 1))

    [record] = (await store.fetch_learnings()).data
    assert (record.total, record.successes) == (5, 4)


def test_learning_record_rejects_bad_counts() -> None:
    with pytest.raises(ValueError):
        LearningRecord("cfo", "analysis", 1, 2)


@pytest.mark.asyncio
async def test_resilient_store_mirrors_and_replays() -> None:
    primary = MemoryStore(available=False)
    store = ResilientStore(primary)
    first, second = history(["completed", "failed"])

    result = await store.append_history(first)
    assert result.ok
    assert store.pending_writes == 1
    assert primary.history == []

    # reads fall back to the mirror while writes are queued
    read = await store.fetch_history("web_dev_lead")
    assert [e.task_id for e in read.data] == [first.task_id]

    primary.available = True
    await store.append_history(second)

    assert store.pending_writes == 0
    assert [e.task_id for e in primary.history] == [first.task_id, second.task_id]


@pytest.mark.asyncio
async def test_resilient_store_pending_queue_is_bounded() -> None:
    store = ResilientStore(MemoryStore(available=False), max_pending=2)
    for entry in history(["completed"] * 3):
        await store.append_history(entry)
    assert store.pending_writes == 2


@pytest.mark.asyncio
async def test_memory_store_drops_oldest_beyond_limit() -> None:
    store = MemoryStore(max_entries=2)
    entries = history(["completed", "failed", "completed"])
    for entry in entries:
        await store.append_history(entry)
    for index in range(3):
        await store.log_safety_event("qa_lead", "self_modify", {"n": index}, "blocked")

    assert [e.task_id for e in store.history] == [entries[1].task_id, entries[2].task_id]
    assert [event["details"]["n"] for event in store.safety_log] == [1, 2]


@pytest.mark.asyncio
async def test_resilient_store_mirror_is_bounded() -> None:
    primary = MemoryStore()
    store = ResilientStore(primary, mirror_size=2)
    for entry in history(["completed"] * 3):
        await store.append_history(entry)

    assert len(primary.history) == 3
    assert len(store.mirror.history) == 2
