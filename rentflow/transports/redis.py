"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import DomainEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

KEY_PREFIX = "rentflow"


class RedisTransport(BaseTransport[str]):
    """Redis list-backed transport: LPUSH to publish, BRPOP to consume."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = client
        self._subscribed: Optional[str] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{KEY_PREFIX}:{topic}"

    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Publish event to a Redis list acting as a queue."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, DomainEvent]]:
        """Subscribe to events from the Redis queue for ``topic``."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        self._subscribed = queue_name
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    event = DomainEvent.from_json(message_json)
                except ValidationError as e:
                    logger.error(f"Discarding malformed event on {queue_name}: {e}")
                    continue
                yield message_json, event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment (BRPOP already removed the message)."""
        pass

    async def nack(self, raw_message: str, requeue: bool = True) -> None:
        if requeue and self._redis and self._subscribed:
            # RPUSH onto the consuming end so it is redelivered first
            await self._redis.rpush(self._subscribed, raw_message)
