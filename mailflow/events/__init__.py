"""Event transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import MailflowConfig, load_config
from .base import EventTransport
from .inmemory import InMemoryEventTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[MailflowConfig] = None
) -> EventTransport:
    """Factory function to get the configured event transport."""

    config = config or load_config()
    backend = (backend or os.getenv("MAILFLOW_EVENTS") or config.events.backend).lower()

    if backend == "inmemory":
        return InMemoryEventTransport()
    elif backend == "redis":
        from .redis import RedisEventTransport

        redis_conf = config.events.redis
        return RedisEventTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = ["EventTransport", "InMemoryEventTransport", "get_transport"]
