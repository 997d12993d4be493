"""Shared collaborators handed to every engine component."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from .audit import AuditLog
from .clock import Clock, SystemClock
from .collaborators import (
    ApproverResolver,
    LoggingNotifier,
    Notifier,
    StaticApproverResolver,
    notify_safely,
)
from .config import CustodianConfig
from .contracts import RetryPolicy
from .events import EventSink, EventType, InMemoryEventSink, WorkflowEvent
from .models import WorkflowRequest

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Clock, audit log, event sink and notification collaborators."""

    config: CustodianConfig = field(default_factory=CustodianConfig)
    clock: Clock = field(default_factory=SystemClock)
    events: EventSink = field(default_factory=InMemoryEventSink)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    approvers: ApproverResolver = field(default_factory=StaticApproverResolver)
    audit: AuditLog = field(init=False)

    def __post_init__(self) -> None:
        self.audit = AuditLog(self.clock)

    def now(self):
        return self.clock.now()

    def retry_policy(self, request: WorkflowRequest) -> RetryPolicy:
        return request.workflow.retry_policy or self.config.retry

    async def emit(self, type: EventType, request: WorkflowRequest, **data: Any) -> None:
        """Publish a lifecycle event; sink failures are logged, never raised."""
        event = WorkflowEvent.for_request(type, request, self.now(), **data)
        try:
            await self.events.publish(event)
        except Exception:
            logger.exception(
                f"Failed to publish {type.value} for request_id={request.request_id}"
            )

    async def notify(self, template: str, recipient: str, variables: Dict[str, Any]) -> None:
        await notify_safely(self.notifier, template, recipient, variables)

    async def notify_subject(
        self, template: str, request: WorkflowRequest, **variables: Any
    ) -> None:
        await self.notify(
            template,
            request.subject_id,
            {
                "request_id": request.request_id,
                "process_type": request.process_type,
                "status": request.status.value,
                **variables,
            },
        )

    async def notify_role(
        self, template: str, role: str, request: WorkflowRequest, **variables: Any
    ) -> None:
        """Notify every identity that holds ``role`` for ``request``."""
        try:
            recipients = await self.approvers.resolve(role, request)
        except Exception:
            logger.exception(f"Could not resolve role {role} for request_id={request.request_id}")
            return
        for recipient in recipients:
            await self.notify(
                template,
                recipient,
                {"request_id": request.request_id, "role": role, **variables},
            )
