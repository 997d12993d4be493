"""Dependency and approval gating for workflow steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List

from .contracts import DependencyStatus, StepBase
from .models import ApprovalRequirement, ApprovalStatus, Dependency, WorkflowRequest


class GateOutcome(str, Enum):
    READY = "ready"
    BLOCKED_BY_DEPENDENCY = "blocked_by_dependency"
    WAITING_APPROVAL = "waiting_approval"


@dataclass
class GateDecision:
    outcome: GateOutcome
    blocking: List[Dependency] = field(default_factory=list)
    awaiting: List[ApprovalRequirement] = field(default_factory=list)
    # Approvals that have never been requested; the caller requests them once.
    to_request: List[ApprovalRequirement] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.outcome == GateOutcome.READY


def blocking_dependencies(request: WorkflowRequest, step: StepBase) -> List[Dependency]:
    """Blocking dependencies of ``step`` that are not yet resolved.

    Ids that do not name a dependency on the request are ignored.
    """
    blocking = []
    for dependency_id in step.gating_dependency_ids():
        dependency = request.dependency(dependency_id)
        if (
            dependency is not None
            and dependency.blocking
            and dependency.status != DependencyStatus.RESOLVED
        ):
            blocking.append(dependency)
    return blocking


def outstanding_approvals(
    request: WorkflowRequest, step: StepBase
) -> List[ApprovalRequirement]:
    return [
        a
        for a in request.approvals_for(step.id)
        if a.required and a.status != ApprovalStatus.APPROVED
    ]


def can_execute(request: WorkflowRequest, step: StepBase) -> GateDecision:
    """Decide whether ``step`` may run now. Does not modify ``request``."""
    blocking = blocking_dependencies(request, step)
    if blocking:
        return GateDecision(GateOutcome.BLOCKED_BY_DEPENDENCY, blocking=blocking)

    awaiting = outstanding_approvals(request, step)
    if awaiting:
        return GateDecision(
            GateOutcome.WAITING_APPROVAL,
            awaiting=awaiting,
            to_request=[a for a in awaiting if a.status == ApprovalStatus.PENDING],
        )
    return GateDecision(GateOutcome.READY)
