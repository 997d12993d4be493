"""Base event sink interface for workflow lifecycle events."""

from __future__ import annotations

import abc
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel, Field

from ..models import WorkflowRequest


class EventType(str, Enum):
    REQUEST_SUBMITTED = "requestSubmitted"
    STEP_STARTED = "stepStarted"
    STEP_COMPLETED = "stepCompleted"
    STEP_FAILED = "stepFailed"
    STEP_TIMED_OUT = "stepTimedOut"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolledBack"


class WorkflowEvent(BaseModel):
    """Envelope published to subscribers. Carries a full request snapshot."""

    type: EventType
    request_id: str
    occurred_at: datetime
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_request(
        cls,
        type: EventType,
        request: WorkflowRequest,
        occurred_at: datetime,
        **data: Any,
    ) -> "WorkflowEvent":
        return cls(
            type=type,
            request_id=request.request_id,
            occurred_at=occurred_at,
            snapshot=request.model_dump(mode="json"),
            data=data,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEvent":
        return cls.model_validate_json(data)


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


class EventSink(metaclass=abc.ABCMeta):
    """Abstract publish/subscribe channel for lifecycle events."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver ``event`` to subscribers."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, handler: EventHandler) -> None:
        """Register an in-process observer."""
        raise NotImplementedError
