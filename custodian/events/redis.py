"""Redis event sink for cross-process subscribers."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .base import EventHandler, EventSink, WorkflowEvent

logger = logging.getLogger(__name__)


class RedisEventSink(EventSink):
    """Publish events as JSON on a Redis pub/sub channel.

    Local subscribers are also notified in-process, so dashboards in the
    same process do not need a Redis round trip.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel: str = "custodian:events",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisEventSink")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel = channel
        self._redis: Optional[Any] = None
        self._handlers: List[EventHandler] = []

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

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: WorkflowEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(self.channel, event.to_json())
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    f"Event subscriber failed for {event.type.value} request_id={event.request_id}"
                )
