"""Build request-owned workflow instances from templates.

Every object produced here is freshly constructed, so two requests created
from the same template never share a step, action, dependency or approval.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import List

from ..contracts import (
    DependencyType,
    ManualStep,
    RequestReason,
    Step,
    StepAction,
    StepBase,
    StepValidation,
    WorkflowDefinition,
)
from ..models import (
    ApprovalRequirement,
    Dependency,
    Milestone,
    RollbackPlan,
    RollbackStep,
    Timeline,
)

# Fields that only carry per-request execution state.
RUNTIME_FIELDS = frozenset(
    {
        "status",
        "retry_count",
        "progress",
        "output",
        "started_at",
        "completed_at",
        "duration_seconds",
        "waiting_since",
        "not_before",
        "applied_actions",
        "attempts",
        "last_error",
        "escalated",
        "timeout_escalated",
        "completed_by",
        "notes",
    }
)

WORKDAY_MINUTES = 8 * 60


def _build_action(action: StepAction) -> StepAction:
    return StepAction(
        id=action.id,
        type=action.type,
        description=action.description,
        parameters=dict(action.parameters),
        timeout=action.timeout,
        irreversible=action.irreversible,
    )


def _build_validation(validation: StepValidation) -> StepValidation:
    return StepValidation(
        rule=validation.rule,
        description=validation.description,
        failure_action=validation.failure_action,
        max_attempts=validation.max_attempts,
        escalate_to=list(validation.escalate_to),
    )


def build_step(step: StepBase) -> Step:
    """Fresh, pending copy of a template step."""
    fields = step.model_dump(
        exclude=set(RUNTIME_FIELDS) | {"actions", "validations", "dependencies"}
    )
    return type(step)(
        **fields,
        dependencies=list(step.dependencies),
        actions=[_build_action(a) for a in step.actions],
        validations=[_build_validation(v) for v in step.validations],
    )


def instantiate(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Return a structurally independent instance of ``definition``."""
    return WorkflowDefinition(
        key=definition.key,
        name=definition.name,
        version=definition.version,
        description=definition.description,
        steps=[build_step(s) for s in definition.steps],
        dependencies=[d.model_copy(deep=True) for d in definition.dependencies],
        approval_gates=[g.model_copy(deep=True) for g in definition.approval_gates],
        retry_policy=(
            definition.retry_policy.model_copy() if definition.retry_policy else None
        ),
        rollback=definition.rollback.model_copy(deep=True),
        milestones=[m.model_copy(deep=True) for m in definition.milestones],
        allowed_reasons=list(definition.allowed_reasons),
        manual_review=definition.manual_review,
        review_role=definition.review_role,
    )


def build_dependencies(workflow: WorkflowDefinition) -> List[Dependency]:
    """Materialise template, step-edge and operator sign-off dependencies."""
    dependencies = [
        Dependency(
            id=d.id,
            type=d.type,
            description=d.description,
            dependent_on=d.dependent_on,
            status=d.status,
            blocking=d.blocking,
            criticality=d.criticality,
            escalation_path=list(d.escalation_path),
        )
        for d in workflow.dependencies
    ]
    step_ids = set(workflow.step_ids())
    seen = set()
    for step in workflow.steps:
        for ref in step.dependencies:
            if ref in step_ids and ref not in seen:
                seen.add(ref)
                dependencies.append(
                    Dependency(
                        id=ref,
                        type=DependencyType.STEP,
                        description=f"Step {ref} must complete",
                        dependent_on=ref,
                    )
                )
        if isinstance(step, ManualStep):
            dependencies.append(
                Dependency(
                    id=step.signoff_dependency_id,
                    type=DependencyType.EXTERNAL,
                    description=f"Operator sign-off for {step.name}",
                    dependent_on=step.operator_role,
                )
            )
    return dependencies


def build_approvals(
    workflow: WorkflowDefinition, reason: RequestReason, manual_review: bool
) -> List[ApprovalRequirement]:
    approvals = [
        ApprovalRequirement(
            step_id=gate.step_id,
            approver_role=gate.approver_role,
            required=gate.required,
            expires_after_hours=gate.expires_after_hours,
            escalate_to=list(gate.escalate_to),
        )
        for gate in workflow.approval_gates
        if not gate.reasons or reason in gate.reasons
    ]
    if manual_review:
        approvals.append(
            ApprovalRequirement(
                step_id=workflow.steps[0].id,
                approver_role=workflow.review_role,
                required=True,
            )
        )
    return approvals


def build_rollback_plan(workflow: WorkflowDefinition, process_type: str) -> RollbackPlan:
    config = workflow.rollback
    return RollbackPlan(
        is_rollback_possible=config.enabled and process_type not in config.disabled_for,
        point_of_no_return=config.point_of_no_return,
        time_window_hours=config.time_window_hours,
        steps=[
            RollbackStep(
                name=s.name,
                description=s.description,
                target_step_id=s.target_step_id,
                actions=[_build_action(a) for a in s.actions],
                verifications=[_build_validation(v) for v in s.verifications],
            )
            for s in config.steps
        ],
    )


def build_timeline(workflow: WorkflowDefinition, now: datetime) -> Timeline:
    """Estimate completion assuming eight-hour working days."""
    days = max(1, math.ceil(workflow.total_estimated_minutes() / WORKDAY_MINUTES))
    return Timeline(
        submitted_at=now,
        estimated_start=now,
        estimated_completion=now + timedelta(days=days),
        milestones=[
            Milestone(
                name=m.name,
                step_ids=list(m.step_ids),
                target_date=now + timedelta(days=m.offset_days),
            )
            for m in workflow.milestones
        ],
    )
