"""Redis event transport for cross-process delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import TriggerEvent
from .base import EventTransport

logger = logging.getLogger(__name__)


class RedisEventTransport(EventTransport[str]):
    """Redis list-backed transport; one list per topic acts as a queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "mailflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[redis.Redis] = None

    def queue_name(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: TriggerEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, TriggerEvent]]:
        if not self._redis:
            await self.connect()

        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue, timeout=1)
            if not result:
                continue

            _, payload = result
            try:
                event = TriggerEvent.from_json(payload)
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed event on {queue}: {e}")
                continue
            yield payload, event

    async def ack(self, raw_event: str) -> None:
        """No-op; BRPOP already removed the event from the list."""
        pass
