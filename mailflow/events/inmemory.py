"""In-memory event transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import TriggerEvent
from .base import EventTransport

RawEvent = Tuple[str, TriggerEvent]


class InMemoryEventTransport(EventTransport[RawEvent]):
    """Simple in-process queue per topic."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval
        self.acked: List[str] = []

    async def publish(self, topic: str, event: TriggerEvent) -> None:
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, TriggerEvent]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is not None:
                yield raw, raw[1]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_event: RawEvent) -> None:
        self.acked.append(raw_event[1].event_id)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
