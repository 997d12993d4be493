"""Event sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CustodianConfig, load_config
from .base import EventHandler, EventSink, EventType, WorkflowEvent
from .inmemory import InMemoryEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[CustodianConfig] = None
) -> EventSink:
    """Factory function to get the configured event sink."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("CUSTODIAN_EVENTS")
        or config.events.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryEventSink()
    elif backend == "redis":
        from .redis import RedisEventSink

        redis_conf = config.events.redis
        return RedisEventSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel=redis_conf.channel,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = [
    "EventHandler",
    "EventSink",
    "EventType",
    "WorkflowEvent",
    "InMemoryEventSink",
    "get_event_sink",
]
