"""Per-step-type handlers.

Each handler runs the step's actions, performs its type-specific work and
then evaluates the step's validations. Handlers raise on failure; retry and
status bookkeeping belong to :class:`~custodian.execution.executor.StepExecutor`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from ..contracts import (
    ComplianceCheckStep,
    DataProcessingStep,
    ManualStep,
    NotificationStep,
    StepType,
    StepValidation,
    ValidationFailureAction,
)
from ..errors import StepEscalatedError, ValidationFailedError
from ..models import ApprovalStatus, AuditAction, WorkflowRequest
from ..runtime import Runtime
from .actions import ActionRegistry, DataProcessorRegistry, ValidationRegistry

logger = logging.getLogger(__name__)

SUBJECT_RECIPIENT = "subject"


@dataclass
class StepContext:
    request: WorkflowRequest
    step: Any
    runtime: Runtime
    actions: ActionRegistry
    validations: ValidationRegistry
    data_processors: DataProcessorRegistry


StepHandler = Callable[[StepContext], Awaitable[None]]


async def run_actions(ctx: StepContext) -> None:
    """Run actions in order, skipping irreversible ones already applied."""
    step = ctx.step
    for action in step.actions:
        if action.irreversible and action.id in step.applied_actions:
            logger.info(
                f"Skipping irreversible action {action.id} of step {step.id}; already applied"
            )
            continue
        result = await ctx.actions.run(ctx.request, step, action)
        if action.id not in step.applied_actions:
            step.applied_actions.append(action.id)
        if result:
            step.output.data[action.id] = result


async def check_validation(ctx: StepContext, validation: StepValidation) -> None:
    """Evaluate one validation and apply its failure policy."""
    request, step = ctx.request, ctx.step
    attempts = (
        max(validation.max_attempts, 1)
        if validation.failure_action == ValidationFailureAction.RETRY
        else 1
    )
    for attempt in range(1, attempts + 1):
        if await ctx.validations.evaluate(validation.rule, request, step):
            return
        if attempt < attempts:
            logger.info(
                f"Validation {validation.rule} of step {step.id} failed "
                f"(attempt {attempt}/{attempts}), retrying"
            )
            await ctx.runtime.clock.sleep(ctx.runtime.config.validation_retry_delay)

    message = f"Validation {validation.rule} failed for step {step.id}"
    if validation.failure_action == ValidationFailureAction.SKIP:
        logger.warning(f"{message}; skipped")
        step.output.logs.append(f"{message}; skipped")
        return
    if validation.failure_action == ValidationFailureAction.ESCALATE:
        step.escalated = True
        ctx.runtime.audit.record(
            request, AuditAction.STEP_ESCALATED, details=message, step_id=step.id
        )
        for role in validation.escalate_to:
            await ctx.runtime.notify_role(
                "step_escalated", role, request, step_id=step.id, rule=validation.rule
            )
        raise StepEscalatedError(message)
    raise ValidationFailedError(message)


async def run_validations(ctx: StepContext) -> None:
    for validation in ctx.step.validations:
        await check_validation(ctx, validation)


async def handle_manual(ctx: StepContext) -> None:
    step: ManualStep = ctx.step
    await run_actions(ctx)
    step.output.data["completed_by"] = step.completed_by
    if step.notes:
        step.output.data["notes"] = step.notes
    await run_validations(ctx)


async def handle_automated(ctx: StepContext) -> None:
    await run_actions(ctx)
    await run_validations(ctx)


async def handle_approval(ctx: StepContext) -> None:
    await run_actions(ctx)
    ctx.step.output.data["approved_by"] = [
        a.approver_id
        for a in ctx.request.approvals_for(ctx.step.id)
        if a.status == ApprovalStatus.APPROVED
    ]
    await run_validations(ctx)


async def handle_notification(ctx: StepContext) -> None:
    step: NotificationStep = ctx.step
    request = ctx.request
    await run_actions(ctx)
    variables = {
        "request_id": request.request_id,
        "subject_id": request.subject_id,
        "process_type": request.process_type,
        "step_id": step.id,
    }
    for recipient in step.recipients:
        if recipient == SUBJECT_RECIPIENT:
            await ctx.runtime.notify(step.template, request.subject_id, variables)
        else:
            await ctx.runtime.notify_role(step.template, recipient, request, **variables)
    step.output.data["notified"] = list(step.recipients)
    await run_validations(ctx)


async def handle_data_processing(ctx: StepContext) -> None:
    step: DataProcessingStep = ctx.step
    await run_actions(ctx)
    processor = ctx.data_processors.get(step.operation)
    result = await processor(ctx.request, step)
    if result:
        step.output.data[step.operation.value] = result
    await run_validations(ctx)


async def handle_compliance_check(ctx: StepContext) -> None:
    step: ComplianceCheckStep = ctx.step
    await run_actions(ctx)
    results = []
    for check in step.checks:
        passed = await ctx.validations.evaluate(check.rule, ctx.request, step)
        results.append(
            {"regulation": check.regulation, "requirement": check.requirement, "passed": passed}
        )
        if not passed:
            step.output.data["checks"] = results
            raise ValidationFailedError(
                f"Compliance check failed for step {step.id}: "
                f"{check.regulation} {check.requirement}"
            )
    step.output.data["checks"] = results
    await run_validations(ctx)


DEFAULT_HANDLERS: Dict[StepType, StepHandler] = {
    StepType.MANUAL: handle_manual,
    StepType.AUTOMATED: handle_automated,
    StepType.APPROVAL: handle_approval,
    StepType.NOTIFICATION: handle_notification,
    StepType.DATA_PROCESSING: handle_data_processing,
    StepType.COMPLIANCE_CHECK: handle_compliance_check,
}
