"""Runtime entities: requests, their dependencies, approvals and audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .contracts import (
    Criticality,
    DependencyStatus,
    DependencyType,
    Priority,
    RequestReason,
    Step,
    StepAction,
    StepStatus,
    StepValidation,
    Urgency,
    WorkflowDefinition,
)


class RequestStatus(str, Enum):
    REQUESTED = "requested"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.COMPLETED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
        RequestStatus.FAILED,
        RequestStatus.ROLLED_BACK,
    }
)

# Statuses that block a second submission for the same subject.
OPEN_STATUSES = frozenset(s for s in RequestStatus if s not in TERMINAL_STATUSES)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class MilestoneStatus(str, Enum):
    NOT_STARTED = "not_started"
    COMPLETED = "completed"


class AuditAction(str, Enum):
    SUBMITTED = "submitted"
    STATUS_CHANGED = "status_changed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPROVAL_EXPIRED = "approval_expired"
    DEPENDENCY_UPDATED = "dependency_updated"
    STEP_BLOCKED = "step_blocked"
    STEP_WAITING_APPROVAL = "step_waiting_approval"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"
    STEP_ESCALATED = "step_escalated"
    STEP_TIMED_OUT = "step_timed_out"
    MANUAL_STEP_COMPLETED = "manual_step_completed"
    POINT_OF_NO_RETURN_PASSED = "point_of_no_return_passed"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_STEP_COMPLETED = "rollback_step_completed"
    ROLLBACK_STEP_FAILED = "rollback_step_failed"


class AuditEntry(BaseModel):
    """Immutable record of one action taken on a request."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int
    timestamp: datetime
    request_id: str
    correlation_id: str
    action: AuditAction
    actor: str
    previous_status: Optional[RequestStatus] = None
    new_status: Optional[RequestStatus] = None
    step_id: Optional[str] = None
    details: str = ""


class Dependency(BaseModel):
    id: str
    type: DependencyType
    description: str = ""
    dependent_on: str = ""
    status: DependencyStatus = DependencyStatus.PENDING
    blocking: bool = True
    criticality: Criticality = Criticality.MEDIUM
    escalation_path: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class ApprovalRequirement(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: str
    approver_role: str
    required: bool = True
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    approver_id: Optional[str] = None
    comment: Optional[str] = None
    expires_after_hours: Optional[float] = None
    escalate_to: List[str] = Field(default_factory=list)


class RollbackStep(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    target_step_id: Optional[str] = None
    actions: List[StepAction] = Field(default_factory=list)
    verifications: List[StepValidation] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None
    applied_actions: List[str] = Field(default_factory=list)


class RollbackPlan(BaseModel):
    is_rollback_possible: bool = True
    point_of_no_return: Optional[str] = None
    time_window_hours: float = 72.0
    steps: List[RollbackStep] = Field(default_factory=list)
    requires_operator_attention: bool = False


class Milestone(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    step_ids: List[str] = Field(default_factory=list)
    target_date: datetime
    status: MilestoneStatus = MilestoneStatus.NOT_STARTED
    completed_at: Optional[datetime] = None


class Timeline(BaseModel):
    submitted_at: datetime
    estimated_start: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    actual_start: Optional[datetime] = None
    actual_completion: Optional[datetime] = None
    milestones: List[Milestone] = Field(default_factory=list)


class WorkflowRequest(BaseModel):
    """One initiated process instance with its private workflow copy."""

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    tenant_id: str
    process_type: str
    reason: RequestReason
    custom_reason: Optional[str] = None
    urgency: Urgency = Urgency.ROUTINE
    priority: Priority = Priority.NORMAL
    status: RequestStatus = RequestStatus.REQUESTED
    current_step_id: str
    workflow: WorkflowDefinition
    timeline: Timeline
    dependencies: List[Dependency] = Field(default_factory=list)
    approvals: List[ApprovalRequirement] = Field(default_factory=list)
    rollback_plan: RollbackPlan = Field(default_factory=RollbackPlan)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    requires_manual_review: bool = False
    version: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def submitted_at(self) -> datetime:
        return self.timeline.submitted_at

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.timeline.actual_completion

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> int:
        steps = self.workflow.steps
        done = sum(
            1 for s in steps if s.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        )
        return round(done * 100 / len(steps)) if steps else 100

    def step(self, step_id: str) -> Step:
        for step in self.workflow.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def current_step(self) -> Step:
        return self.step(self.current_step_id)

    def next_step(self) -> Optional[Step]:
        """First step that has not run yet, in template order."""
        for step in self.workflow.steps:
            if step.status in (
                StepStatus.PENDING,
                StepStatus.BLOCKED,
                StepStatus.WAITING_APPROVAL,
            ):
                return step
        return None

    def dependency(self, dependency_id: str) -> Optional[Dependency]:
        return next((d for d in self.dependencies if d.id == dependency_id), None)

    def approvals_for(self, step_id: str) -> List[ApprovalRequirement]:
        return [a for a in self.approvals if a.step_id == step_id]

    def point_of_no_return_passed(self) -> bool:
        pnr = self.rollback_plan.point_of_no_return
        if pnr is None:
            return False
        try:
            return self.step(pnr).status == StepStatus.COMPLETED
        except KeyError:
            return False


class RequestFilter(BaseModel):
    """Equality and range filters for listing requests."""

    subject_id: Optional[str] = None
    tenant_id: Optional[str] = None
    statuses: Optional[List[RequestStatus]] = None
    process_type: Optional[str] = None
    submitted_after: Optional[datetime] = None
    submitted_before: Optional[datetime] = None
    completed_before: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, request: WorkflowRequest) -> bool:
        if self.subject_id is not None and request.subject_id != self.subject_id:
            return False
        if self.tenant_id is not None and request.tenant_id != self.tenant_id:
            return False
        if self.statuses is not None and request.status not in self.statuses:
            return False
        if self.process_type is not None and request.process_type != self.process_type:
            return False
        if self.submitted_after is not None and request.submitted_at < self.submitted_after:
            return False
        if self.submitted_before is not None and request.submitted_at > self.submitted_before:
            return False
        if self.completed_before is not None:
            completed = request.completed_at
            if completed is None or completed >= self.completed_before:
                return False
        return True


class StatusReport(BaseModel):
    """Summary returned by ``WorkflowEngine.status``."""

    request_id: str
    status: RequestStatus
    current_step_id: str
    progress: int
    timeline: Timeline
    next_milestone: Optional[Milestone] = None
    pending_approvals: List[ApprovalRequirement] = Field(default_factory=list)
    blocked_dependencies: List[Dependency] = Field(default_factory=list)
    requires_operator_attention: bool = False
