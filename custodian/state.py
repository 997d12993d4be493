"""Allowed request status transitions."""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransitionError
from .models import RequestStatus, TERMINAL_STATUSES, WorkflowRequest

S = RequestStatus

ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    S.REQUESTED: frozenset({S.UNDER_REVIEW, S.IN_PROGRESS, S.REJECTED, S.CANCELLED}),
    S.UNDER_REVIEW: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.IN_PROGRESS, S.ROLLED_BACK}),
    S.IN_PROGRESS: frozenset(
        {S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELLED, S.ROLLED_BACK, S.REJECTED}
    ),
    S.PAUSED: frozenset({S.IN_PROGRESS, S.FAILED, S.ROLLED_BACK}),
}
for _terminal in TERMINAL_STATUSES:
    ALLOWED_TRANSITIONS[_terminal] = frozenset()

CANCELLABLE = frozenset({S.REQUESTED, S.UNDER_REVIEW, S.IN_PROGRESS})
ROLLBACK_ELIGIBLE = frozenset({S.APPROVED, S.IN_PROGRESS, S.PAUSED})


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(request: WorkflowRequest, target: RequestStatus) -> RequestStatus:
    """Move ``request`` to ``target`` and return the previous status.

    Raises:
        InvalidTransitionError: If the edge is not part of the request graph.
    """
    previous = request.status
    if not can_transition(previous, target):
        raise InvalidTransitionError(request.request_id, previous.value, target.value)
    request.status = target
    return previous
