"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import DomainEvent
from .base import BaseTransport

RawEvent = Tuple[str, DomainEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Simple in-process queue per topic.

    Nacked events with ``requeue=True`` go back to the front of the queue.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._topics: Dict[int, str] = {}
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[topic].append(raw)
            self._topics[id(raw)] = topic

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, DomainEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, DomainEvent.from_json(raw_message[0])
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawEvent) -> None:
        async with self._lock:
            self._topics.pop(id(raw_message), None)

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        async with self._lock:
            topic = self._topics.pop(id(raw_message), None)
            if requeue and topic is not None:
                self._queues[topic].appendleft(raw_message)
                self._topics[id(raw_message)] = topic
