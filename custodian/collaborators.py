"""Boundary contracts for notification delivery and approver lookup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .models import WorkflowRequest

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers a templated message. Fire-and-forget from the engine's view."""

    async def send(self, template: str, recipient: str, variables: Dict[str, Any]) -> None:
        """Send ``template`` rendered with ``variables`` to ``recipient``."""


class ApproverResolver(Protocol):
    """Maps an approver role to concrete identities to notify."""

    async def resolve(self, role: str, request: WorkflowRequest) -> List[str]:
        """Return the identities holding ``role`` for ``request``."""


class LoggingNotifier:
    """Default notifier that only logs deliveries."""

    async def send(self, template: str, recipient: str, variables: Dict[str, Any]) -> None:
        logger.info(f"Notification {template} -> {recipient}: {variables}")


@dataclass
class SentNotification:
    template: str
    recipient: str
    variables: Dict[str, Any] = field(default_factory=dict)


class RecordingNotifier:
    """Keeps every notification in memory."""

    def __init__(self) -> None:
        self.sent: List[SentNotification] = []

    async def send(self, template: str, recipient: str, variables: Dict[str, Any]) -> None:
        self.sent.append(SentNotification(template, recipient, dict(variables)))

    def templates(self) -> List[str]:
        return [n.template for n in self.sent]


class StaticApproverResolver:
    """Resolve roles from a fixed mapping; unknown roles resolve to themselves."""

    def __init__(self, mapping: Optional[Mapping[str, List[str]]] = None) -> None:
        self._mapping = dict(mapping or {})

    async def resolve(self, role: str, request: WorkflowRequest) -> List[str]:
        return list(self._mapping.get(role, [role]))


async def notify_safely(
    notifier: Notifier,
    template: str,
    recipient: str,
    variables: Dict[str, Any],
) -> None:
    """Send a notification; delivery failures are logged and not retried."""
    try:
        await notifier.send(template, recipient, variables)
    except Exception:
        logger.exception(f"Notification {template} to {recipient} failed")
