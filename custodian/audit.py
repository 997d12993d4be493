"""Append-only audit trail for workflow requests."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .clock import Clock, SystemClock
from .errors import AuditIntegrityError
from .models import AuditAction, AuditEntry, RequestStatus, WorkflowRequest

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AuditLog:
    """Records every state transition on a request's audit trail."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def record(
        self,
        request: WorkflowRequest,
        action: AuditAction,
        actor: str = SYSTEM_ACTOR,
        details: str = "",
        previous_status: Optional[RequestStatus] = None,
        new_status: Optional[RequestStatus] = None,
        step_id: Optional[str] = None,
    ) -> AuditEntry:
        """Append an entry to ``request.audit_trail`` and return it."""
        trail = request.audit_trail
        sequence = trail[-1].sequence + 1 if trail else 1
        entry = AuditEntry(
            sequence=sequence,
            timestamp=self._clock.now(),
            request_id=request.request_id,
            correlation_id=request.correlation_id,
            action=action,
            actor=actor,
            previous_status=previous_status,
            new_status=new_status,
            step_id=step_id,
            details=details,
        )
        trail.append(entry)
        logger.info(
            f"audit request_id={request.request_id} seq={sequence} "
            f"action={action.value} actor={actor} {details}"
        )
        return entry


def entries_for(
    request: WorkflowRequest, action: AuditAction, step_id: Optional[str] = None
) -> list[AuditEntry]:
    """Filter a request's audit trail by action and optionally step."""
    return [
        e
        for e in request.audit_trail
        if e.action == action and (step_id is None or e.step_id == step_id)
    ]


def verify_append_only(
    stored: Sequence[AuditEntry], incoming: Sequence[AuditEntry], request_id: str
) -> None:
    """Ensure ``incoming`` only extends ``stored``.

    Raises:
        AuditIntegrityError: If any stored entry was removed or changed.
    """
    if len(incoming) < len(stored):
        raise AuditIntegrityError(
            f"Audit trail of request {request_id} shrank from {len(stored)} to {len(incoming)}"
        )
    for old, new in zip(stored, incoming):
        if old != new:
            raise AuditIntegrityError(
                f"Audit entry {old.sequence} of request {request_id} was modified"
            )
