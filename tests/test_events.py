import asyncio

import pytest

from conftest import FakeExecutor
from workforce.events import EventBus, EventType, WorkforceEvent
from workforce.orchestrator import Orchestrator
from workforce.types import Task


@pytest.mark.asyncio
async def test_every_channel_gets_every_event() -> None:
    bus = EventBus()
    first = bus.subscribe()
    second = bus.subscribe()

    await bus.emit(WorkforceEvent(type=EventType.TASK_QUEUED, task_id="a"))

    assert first.get_nowait().task_id == "a"
    assert second.get_nowait().task_id == "a"


@pytest.mark.asyncio
async def test_channel_type_filter_and_unsubscribe() -> None:
    bus = EventBus()
    escalations = bus.subscribe({EventType.ESCALATION_CREATED})

    await bus.emit(WorkforceEvent(type=EventType.TASK_QUEUED))
    assert escalations.empty()

    bus.unsubscribe(escalations)
    await bus.emit(WorkforceEvent(type=EventType.ESCALATION_CREATED))
    assert escalations.empty()


@pytest.mark.asyncio
async def test_full_channel_drops_oldest_without_blocking() -> None:
    bus = EventBus()
    channel = bus.subscribe(maxsize=1)
    orchestrator = Orchestrator({"cos": FakeExecutor()}, events=bus)

    await asyncio.wait_for(orchestrator.enqueue(Task(id="a", content="Review report")), timeout=1)
    await asyncio.wait_for(orchestrator.enqueue(Task(id="b", content="Review report")), timeout=1)

    assert channel.qsize() == 1
    assert channel.get_nowait().task_id == "b"


@pytest.mark.asyncio
async def test_handler_errors_do_not_reach_emitter() -> None:
    bus = EventBus()
    received = []

    def broken(event: WorkforceEvent) -> None:
        raise RuntimeError("boom")

    async def recorder(event: WorkforceEvent) -> None:
        received.append(event.type)

    bus.on_event(broken)
    bus.on_event(recorder)
    await bus.emit(WorkforceEvent(type=EventType.REVIEW_COMPLETED))

    assert received == [EventType.REVIEW_COMPLETED]


def test_event_to_dict() -> None:
    event = WorkforceEvent(type=EventType.HANDOFF_CREATED, task_id="a", role="qa_lead")
    data = event.to_dict()
    assert data["type"] == "handoff.created"
    assert data["role"] == "qa_lead"
