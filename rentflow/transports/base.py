"""Contract for carrying ``DomainEvent`` envelopes between processes."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DomainEvent

RawEventT = TypeVar("RawEventT")


class BaseTransport(Generic[RawEventT], metaclass=abc.ABCMeta):
    """Queue of domain events per topic.

    Delivery is at-least-once: an event taken by ``subscribe`` is settled by
    exactly one ``ack`` or ``nack`` call with the raw handle it was yielded
    with. ``nack(requeue=False)`` drops the event; ``requeue=True`` makes it the
    next one delivered on its topic. The event dispatcher nacks without requeue
    when routing fails, so a malformed event is never redelivered forever.

    Transports are async context managers: ``async with transport:`` connects
    and always disconnects.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "BaseTransport[RawEventT]":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Enqueue ``event`` on ``topic``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEventT, DomainEvent]]:
        """Yield ``(raw handle, event)`` pairs until ``lifespan`` seconds pass.

        Runs until cancelled when ``lifespan`` is None. Payloads that do not
        parse as a ``DomainEvent`` are discarded by the transport.
        """

    @abc.abstractmethod
    async def ack(self, raw_event: RawEventT) -> None:
        """Settle a successfully handled event."""

    @abc.abstractmethod
    async def nack(self, raw_event: RawEventT, requeue: bool = True) -> None:
        """Settle a failed event, putting it back first in line if ``requeue``."""
