"""Tests for the event bus."""

import asyncio

import pytest

from agent_orchestrator.orchestrator.events import EventBus, EventType, OrchestratorEvent


def _event(n: int) -> OrchestratorEvent:
	return OrchestratorEvent(type=EventType.WORKER_OUTPUT, message=f"line {n}", worker_id="w1")


class TestEventBus:
	@pytest.mark.asyncio
	async def test_broadcast(self):
		bus = EventBus()
		first, second = bus.subscribe(), bus.subscribe()
		assert bus.publish(_event(1)) == 2
		assert (await first.get(timeout=1)).message == "line 1"
		assert (await second.get(timeout=1)).message == "line 1"

	@pytest.mark.asyncio
	async def test_slow_subscriber_drops_without_blocking(self):
		bus = EventBus()
		slow = bus.subscribe(maxsize=2)
		fast = bus.subscribe(maxsize=100)
		for n in range(5):
			bus.publish(_event(n))
		assert slow.dropped == 3
		assert fast.dropped == 0
		assert bus.dropped_total == 3
		assert [slow.get_nowait().message, slow.get_nowait().message] == ["line 0", "line 1"]
		assert slow.get_nowait() is None
		assert fast.pending() == 5

	@pytest.mark.asyncio
	async def test_late_subscriber_sees_only_new_events(self):
		bus = EventBus()
		bus.publish(_event(1))
		sub = bus.subscribe()
		assert sub.get_nowait() is None
		bus.publish(_event(2))
		assert sub.get_nowait().message == "line 2"

	@pytest.mark.asyncio
	async def test_iteration_ends_on_close(self):
		bus = EventBus()
		sub = bus.subscribe()

		async def consume() -> list[str]:
			return [event.message async for event in sub]

		consumer = asyncio.create_task(consume())
		bus.publish(_event(1))
		bus.publish(_event(2))
		await asyncio.sleep(0)
		sub.close()
		assert await asyncio.wait_for(consumer, timeout=1) == ["line 1", "line 2"]
		assert bus.subscriber_count == 0

	@pytest.mark.asyncio
	async def test_bus_close(self):
		bus = EventBus()
		sub = bus.subscribe()
		bus.publish(_event(1))
		bus.close()
		assert (await sub.get()).message == "line 1"
		assert await sub.get() is None
		assert bus.subscribe().closed

	@pytest.mark.asyncio
	async def test_get_timeout(self):
		sub = EventBus().subscribe()
		assert await sub.get(timeout=0.01) is None

	def test_event_to_dict(self):
		event = OrchestratorEvent(type=EventType.STEP_STARTED, step_id="s1", data={"x": 1})
		data = event.to_dict()
		assert data["type"] == "step_started"
		assert data["step_id"] == "s1"
		assert data["data"] == {"x": 1}
		assert data["timestamp"]
