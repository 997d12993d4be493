"""Workflow template contracts: step payloads, actions and definitions."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def _new_id() -> str:
    return str(uuid.uuid4())


class StepType(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DATA_PROCESSING = "data_processing"
    COMPLIANCE_CHECK = "compliance_check"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    WAITING_APPROVAL = "waiting_approval"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class ActionType(str, Enum):
    API_CALL = "api_call"
    DATABASE_OPERATION = "database_operation"
    FILE_OPERATION = "file_operation"
    NOTIFICATION = "notification"
    SYSTEM_COMMAND = "system_command"
    DATA_PROCESSING = "data_processing"
    VALIDATION = "validation"


class ValidationFailureAction(str, Enum):
    FAIL_STEP = "fail_step"
    RETRY = "retry"
    SKIP = "skip"
    ESCALATE = "escalate"


class DataOperation(str, Enum):
    BACKUP = "backup"
    TRANSFER = "transfer"
    DELETION = "deletion"
    ANONYMIZATION = "anonymization"
    EXPORT = "export"


class DependencyType(str, Enum):
    STEP = "step"
    SYSTEM = "system"
    DATA = "data"
    APPROVAL = "approval"
    EXTERNAL = "external"
    REGULATORY = "regulatory"


class DependencyStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    BLOCKED = "blocked"
    ESCALATED = "escalated"


class Criticality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RequestReason(str, Enum):
    USER_REQUEST = "user_request"
    INACTIVITY = "inactivity"
    COMPLIANCE_VIOLATION = "compliance_violation"
    RISK_MANAGEMENT = "risk_management"
    BUSINESS_DECISION = "business_decision"
    REGULATORY_ORDER = "regulatory_order"
    FRAUD_DETECTED = "fraud_detected"
    TERMS_VIOLATION = "terms_violation"
    DUPLICATE_ACCOUNT = "duplicate_account"
    DEATH = "death"
    BANKRUPTCY = "bankruptcy"
    SANCTIONS = "sanctions"
    OTHER = "other"


class Urgency(str, Enum):
    ROUTINE = "routine"
    EXPEDITED = "expedited"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class Priority(str, Enum):
    CRITICAL = "critical"
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is scheduled first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.NORMAL: 3,
    Priority.LOW: 4,
}


# ---------------------------------------------------------------------------
# Step building blocks
class StepAction(BaseModel):
    """One operation a step performs through the action registry."""

    id: str = Field(default_factory=_new_id)
    type: ActionType
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeout: float = Field(default=30.0, description="Seconds before the action is abandoned")
    irreversible: bool = False


class StepValidation(BaseModel):
    """Post-action check with a declared failure policy."""

    rule: str
    description: str = ""
    failure_action: ValidationFailureAction = ValidationFailureAction.FAIL_STEP
    max_attempts: int = 3
    escalate_to: List[str] = Field(default_factory=lambda: ["operations_manager"])


class ComplianceCheck(BaseModel):
    regulation: str
    requirement: str
    rule: str


class StepOutput(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    logs: List[str] = Field(default_factory=list)


class StepBase(BaseModel):
    """Fields shared by every step type."""

    id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    dependencies: List[str] = Field(default_factory=list)
    actions: List[StepAction] = Field(default_factory=list)
    validations: List[StepValidation] = Field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 2
    timeout_minutes: Optional[int] = None
    estimated_minutes: int = 60
    reversible: bool = True

    # runtime state
    progress: int = 0
    output: StepOutput = Field(default_factory=StepOutput)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    waiting_since: Optional[datetime] = None
    not_before: Optional[datetime] = None
    applied_actions: List[str] = Field(default_factory=list)
    attempts: int = 0
    last_error: Optional[str] = None
    escalated: bool = False
    timeout_escalated: bool = False

    def gating_dependency_ids(self) -> List[str]:
        """Dependency ids the gate checks before this step may start."""
        return list(self.dependencies)


class ManualStep(StepBase):
    type: Literal["manual"] = "manual"
    instructions: str = ""
    operator_role: str = "operations_team"
    completed_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def signoff_dependency_id(self) -> str:
        return f"{self.id}.operator_signoff"

    def gating_dependency_ids(self) -> List[str]:
        return [*self.dependencies, self.signoff_dependency_id]


class AutomatedStep(StepBase):
    type: Literal["automated"] = "automated"


class ApprovalStep(StepBase):
    type: Literal["approval"] = "approval"


class NotificationStep(StepBase):
    type: Literal["notification"] = "notification"
    template: str
    recipients: List[str] = Field(default_factory=lambda: ["subject"])


class DataProcessingStep(StepBase):
    type: Literal["data_processing"] = "data_processing"
    operation: DataOperation


class ComplianceCheckStep(StepBase):
    type: Literal["compliance_check"] = "compliance_check"
    checks: List[ComplianceCheck] = Field(default_factory=list)


Step = Annotated[
    Union[
        ManualStep,
        AutomatedStep,
        ApprovalStep,
        NotificationStep,
        DataProcessingStep,
        ComplianceCheckStep,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Template-level configuration
class RetryPolicy(BaseModel):
    strategy: BackoffStrategy = BackoffStrategy.FIXED
    base_delay: float = 60.0
    max_delay: float = 300.0
    exponential_base: float = 2.0


class DependencyTemplate(BaseModel):
    """Precondition materialised onto every request built from a template."""

    id: str
    type: DependencyType
    description: str = ""
    dependent_on: str = ""
    blocking: bool = True
    criticality: Criticality = Criticality.MEDIUM
    status: DependencyStatus = DependencyStatus.PENDING
    escalation_path: List[str] = Field(default_factory=list)


class ApprovalGate(BaseModel):
    step_id: str
    approver_role: str
    required: bool = True
    expires_after_hours: Optional[float] = 72.0
    escalate_to: List[str] = Field(default_factory=list)
    # Restrict the gate to some reasons; empty means every reason.
    reasons: List[RequestReason] = Field(default_factory=list)


class RollbackStepTemplate(BaseModel):
    name: str
    description: str = ""
    target_step_id: Optional[str] = None
    actions: List[StepAction] = Field(default_factory=list)
    verifications: List[StepValidation] = Field(default_factory=list)


class RollbackConfig(BaseModel):
    enabled: bool = True
    point_of_no_return: Optional[str] = None
    time_window_hours: float = 72.0
    steps: List[RollbackStepTemplate] = Field(default_factory=list)
    # Process types for which rollback is never offered.
    disabled_for: List[str] = Field(default_factory=list)


class MilestoneTemplate(BaseModel):
    name: str
    step_ids: List[str]
    offset_days: float = 1.0


class WorkflowDefinition(BaseModel):
    """Named, versioned template of steps, gates and rollback configuration."""

    key: str
    name: str
    version: str = "1.0"
    description: str = ""
    steps: List[Step]
    dependencies: List[DependencyTemplate] = Field(default_factory=list)
    approval_gates: List[ApprovalGate] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = None
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    milestones: List[MilestoneTemplate] = Field(default_factory=list)
    allowed_reasons: List[RequestReason] = Field(default_factory=list)
    manual_review: bool = False
    review_role: str = "compliance_officer"

    @model_validator(mode="after")
    def _check_structure(self) -> "WorkflowDefinition":
        if not self.steps:
            raise ValueError(f"Workflow {self.key} has no steps")
        step_ids = [s.id for s in self.steps]
        if len(set(step_ids)) != len(step_ids):
            raise ValueError(f"Workflow {self.key} has duplicate step ids")
        dep_ids = {d.id for d in self.dependencies}
        clash = dep_ids & set(step_ids)
        if clash:
            raise ValueError(
                f"Workflow {self.key} dependency ids collide with step ids: {sorted(clash)}"
            )
        known = set(step_ids) | dep_ids
        for position, step in enumerate(self.steps):
            for ref in step.dependencies:
                if ref not in known:
                    raise ValueError(
                        f"Step {step.id} depends on unknown {ref!r} in workflow {self.key}"
                    )
                if ref in step_ids and step_ids.index(ref) >= position:
                    raise ValueError(
                        f"Step {step.id} depends on later step {ref!r} in workflow {self.key}"
                    )
        for gate in self.approval_gates:
            if gate.step_id not in step_ids:
                raise ValueError(f"Approval gate references unknown step {gate.step_id!r}")
        pnr = self.rollback.point_of_no_return
        if pnr is not None and pnr not in step_ids:
            raise ValueError(f"Point of no return {pnr!r} is not a step of {self.key}")
        for rb in self.rollback.steps:
            if rb.target_step_id is not None and rb.target_step_id not in step_ids:
                raise ValueError(f"Rollback step {rb.name!r} targets unknown step")
        return self

    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    def total_estimated_minutes(self) -> int:
        return sum(s.estimated_minutes for s in self.steps)
