"""
Event stream - tagged orchestration events and a broadcast bus.

Every worker and executor publishes into one EventBus. Each subscriber
gets its own bounded queue; when a subscriber falls behind, new events
are dropped for that subscriber only. Publishing never blocks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE = 256


class EventType(str, Enum):
	"""Tag for every event on the stream."""
	# Worker lifecycle
	WORKER_STARTED = "worker_started"
	WORKER_OUTPUT = "worker_output"
	WORKER_HEARTBEAT = "worker_heartbeat"
	WORKER_STATE_CHANGED = "worker_state_changed"
	WORKER_COMPLETED = "worker_completed"

	# Plan lifecycle
	PLAN_CREATED = "plan_created"
	PLAN_AWAITING_APPROVAL = "plan_awaiting_approval"
	PLAN_APPROVED = "plan_approved"
	PLAN_REJECTED = "plan_rejected"
	PLAN_STARTED = "plan_started"
	PLAN_COMPLETED = "plan_completed"

	# Step lifecycle
	STEP_STARTED = "step_started"
	STEP_PROGRESS = "step_progress"
	STEP_COMPLETED = "step_completed"
	STEP_SKIPPED = "step_skipped"

	ERROR = "error"


@dataclass
class OrchestratorEvent:
	"""A single event on the orchestration stream."""
	type: EventType
	message: str = ""
	plan_id: Optional[str] = None
	step_id: Optional[str] = None
	worker_id: Optional[str] = None
	data: dict[str, Any] = field(default_factory=dict)
	timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

	def to_dict(self) -> dict[str, Any]:
		return {
			"type": self.type.value,
			"message": self.message,
			"plan_id": self.plan_id,
			"step_id": self.step_id,
			"worker_id": self.worker_id,
			"data": self.data,
			"timestamp": self.timestamp,
		}


class Subscription:
	"""
	One consumer's view of the event stream.

	Iterate with ``async for event in subscription``; iteration ends when
	the subscription or the bus is closed and the queue is drained.
	"""

	def __init__(self, bus: "EventBus", maxsize: int):
		self._bus = bus
		self._queue: asyncio.Queue[Optional[OrchestratorEvent]] = asyncio.Queue(maxsize=maxsize)
		self._closed = False
		self.dropped = 0

	@property
	def closed(self) -> bool:
		return self._closed

	def pending(self) -> int:
		return self._queue.qsize()

	def _offer(self, event: OrchestratorEvent) -> bool:
		if self._closed:
			return False
		try:
			self._queue.put_nowait(event)
			return True
		except asyncio.QueueFull:
			self.dropped += 1
			return False

	def _close(self) -> None:
		if self._closed:
			return
		self._closed = True
		# Wake a waiting consumer; a full queue means it is not waiting
		try:
			self._queue.put_nowait(None)
		except asyncio.QueueFull:
			pass

	def close(self) -> None:
		"""Stop receiving events."""
		self._bus.unsubscribe(self)

	def get_nowait(self) -> Optional[OrchestratorEvent]:
		"""Next queued event, or None if nothing is queued."""
		while True:
			try:
				event = self._queue.get_nowait()
			except asyncio.QueueEmpty:
				return None
			if event is not None:
				return event

	async def get(self, timeout: Optional[float] = None) -> Optional[OrchestratorEvent]:
		"""
		Wait for the next event.

		Returns:
			The event, or None when closed and drained or on timeout
		"""
		while True:
			if self._closed and self._queue.empty():
				return None
			try:
				event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
			except asyncio.TimeoutError:
				return None
			if event is not None:
				return event

	def __aiter__(self) -> "Subscription":
		return self

	async def __anext__(self) -> OrchestratorEvent:
		event = await self.get()
		if event is None:
			raise StopAsyncIteration
		return event


class EventBus:
	"""Broadcast channel with drop-for-slow-subscriber delivery."""

	def __init__(self, default_maxsize: int = DEFAULT_SUBSCRIBER_QUEUE):
		self.default_maxsize = default_maxsize
		self._subscribers: list[Subscription] = []
		self._closed = False
		self.published = 0

	@property
	def subscriber_count(self) -> int:
		return len(self._subscribers)

	@property
	def dropped_total(self) -> int:
		return sum(s.dropped for s in self._subscribers)

	def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
		"""Attach a new subscriber that sees every event published from now on."""
		sub = Subscription(self, maxsize or self.default_maxsize)
		if self._closed:
			sub._close()
		else:
			self._subscribers.append(sub)
		return sub

	def unsubscribe(self, sub: Subscription) -> None:
		if sub in self._subscribers:
			self._subscribers.remove(sub)
		sub._close()

	def publish(self, event: OrchestratorEvent) -> int:
		"""
		Deliver an event to every subscriber without waiting.

		Returns:
			Number of subscribers that accepted the event
		"""
		self.published += 1
		delivered = 0
		for sub in list(self._subscribers):
			if sub._offer(event):
				delivered += 1
			else:
				logger.debug(f"Dropped {event.type.value} for a lagging subscriber ({sub.dropped} dropped)")
		return delivered

	def close(self) -> None:
		"""Close every subscription; consumers finish after draining their queues."""
		self._closed = True
		for sub in list(self._subscribers):
			sub._close()
		self._subscribers.clear()
