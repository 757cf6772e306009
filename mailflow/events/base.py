"""Base transport interface for trigger events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import TriggerEvent

RawEventT = TypeVar("RawEventT")


class EventTransport(Generic[RawEventT], metaclass=abc.ABCMeta):
    """Abstract transport that carries ``TriggerEvent`` messages."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: TriggerEvent) -> None:
        """Send an event to a topic/queue."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEventT, TriggerEvent]]:
        """Yield raw transport message and ``TriggerEvent`` pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_event: RawEventT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError
