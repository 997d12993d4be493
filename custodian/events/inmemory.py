"""In-process event sink."""

from __future__ import annotations

import logging
from typing import List

from .base import EventHandler, EventSink, EventType, WorkflowEvent

logger = logging.getLogger(__name__)


class InMemoryEventSink(EventSink):
    """Observer list with a retained history, for tests and single-process use."""

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []
        self.history: List[WorkflowEvent] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: WorkflowEvent) -> None:
        self.history.append(event)
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    f"Event subscriber failed for {event.type.value} request_id={event.request_id}"
                )

    def of_type(self, type: EventType) -> List[WorkflowEvent]:
        return [e for e in self.history if e.type == type]
