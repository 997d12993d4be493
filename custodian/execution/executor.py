"""Executes one workflow step and applies retry and completion bookkeeping."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from ..contracts import DependencyStatus, DependencyType, StepStatus, StepType
from ..errors import ConcurrencyViolationError, UnknownHandlerError
from ..events import EventType
from ..models import AuditAction, MilestoneStatus, RequestStatus, WorkflowRequest
from ..runtime import Runtime
from ..state import transition
from ..utils.retry import compute_backoff, next_attempt_at
from .actions import ActionRegistry, DataProcessorRegistry, ValidationRegistry
from .handlers import DEFAULT_HANDLERS, StepContext, StepHandler

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class StepExecutor:
    """Runs a single step through its handler.

    The caller holds the request lock and persists the request afterwards.
    """

    def __init__(
        self,
        runtime: Runtime,
        actions: Optional[ActionRegistry] = None,
        validations: Optional[ValidationRegistry] = None,
        data_processors: Optional[DataProcessorRegistry] = None,
        handlers: Optional[Dict[StepType, StepHandler]] = None,
    ) -> None:
        self.runtime = runtime
        self.actions = actions or ActionRegistry()
        self.validations = validations or ValidationRegistry()
        self.data_processors = data_processors or DataProcessorRegistry()
        self._handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        missing = [t.value for t in StepType if t not in self._handlers]
        if missing:
            raise UnknownHandlerError(f"No step handler for: {', '.join(missing)}")

    async def execute(self, request: WorkflowRequest, step) -> StepOutcome:
        if step.status == StepStatus.COMPLETED:
            raise ConcurrencyViolationError(
                f"Step {step.id} of request {request.request_id} already completed"
            )
        runtime = self.runtime
        now = runtime.now()

        if request.status != RequestStatus.IN_PROGRESS:
            previous = transition(request, RequestStatus.IN_PROGRESS)
            runtime.audit.record(
                request,
                AuditAction.STATUS_CHANGED,
                previous_status=previous,
                new_status=RequestStatus.IN_PROGRESS,
            )
        if request.timeline.actual_start is None:
            request.timeline.actual_start = now

        step.status = StepStatus.IN_PROGRESS
        step.started_at = now
        step.waiting_since = None
        step.not_before = None
        step.attempts += 1
        request.current_step_id = step.id
        runtime.audit.record(
            request,
            AuditAction.STEP_STARTED,
            details=f"attempt {step.attempts}",
            step_id=step.id,
        )
        await runtime.emit(EventType.STEP_STARTED, request, step_id=step.id)

        ctx = StepContext(
            request=request,
            step=step,
            runtime=runtime,
            actions=self.actions,
            validations=self.validations,
            data_processors=self.data_processors,
        )
        handler = self._handlers[StepType(step.type)]
        try:
            await handler(ctx)
        except Exception as exc:
            return await self._on_failure(request, step, exc)
        await self._on_success(request, step)
        return StepOutcome.COMPLETED

    async def _on_success(self, request: WorkflowRequest, step) -> None:
        runtime = self.runtime
        now = runtime.now()
        step.status = StepStatus.COMPLETED
        step.completed_at = now
        step.duration_seconds = (now - step.started_at).total_seconds()
        step.progress = 100
        step.last_error = None
        runtime.audit.record(
            request,
            AuditAction.STEP_COMPLETED,
            details=f"{step.name} completed in {step.duration_seconds:.1f}s",
            step_id=step.id,
        )

        for dependency in request.dependencies:
            if dependency.type == DependencyType.STEP and dependency.id == step.id:
                dependency.status = DependencyStatus.RESOLVED
                dependency.updated_at = now

        self._check_point_of_no_return(request, step)
        self._complete_milestones(request)

        upcoming = request.next_step()
        if upcoming is not None:
            request.current_step_id = upcoming.id
        logger.info(f"Step {step.id} completed for request_id={request.request_id}")
        await runtime.emit(EventType.STEP_COMPLETED, request, step_id=step.id)

    def _check_point_of_no_return(self, request: WorkflowRequest, step) -> None:
        plan = request.rollback_plan
        if plan.point_of_no_return is None or not plan.is_rollback_possible:
            return
        ids = request.workflow.step_ids()
        if ids.index(step.id) >= ids.index(plan.point_of_no_return):
            plan.is_rollback_possible = False
            self.runtime.audit.record(
                request,
                AuditAction.POINT_OF_NO_RETURN_PASSED,
                details=f"Rollback no longer possible after {step.id}",
                step_id=step.id,
            )

    def _complete_milestones(self, request: WorkflowRequest) -> None:
        for milestone in request.timeline.milestones:
            if milestone.status == MilestoneStatus.COMPLETED:
                continue
            if all(
                request.step(sid).status == StepStatus.COMPLETED
                for sid in milestone.step_ids
            ):
                milestone.status = MilestoneStatus.COMPLETED
                milestone.completed_at = self.runtime.now()

    async def _on_failure(
        self, request: WorkflowRequest, step, exc: Exception
    ) -> StepOutcome:
        runtime = self.runtime
        error = f"{type(exc).__name__}: {exc}"
        step.last_error = error
        runtime.audit.record(
            request,
            AuditAction.STEP_FAILED,
            details=f"attempt {step.attempts}: {error}",
            step_id=step.id,
        )
        await runtime.emit(
            EventType.STEP_FAILED, request, step_id=step.id, error=error, attempt=step.attempts
        )

        if step.retry_count < step.max_retries:
            step.retry_count += 1
            policy = runtime.retry_policy(request)
            delay = compute_backoff(policy, step.retry_count)
            step.status = StepStatus.PENDING
            step.not_before = next_attempt_at(policy, step.retry_count, runtime.now())
            runtime.audit.record(
                request,
                AuditAction.STEP_RETRY_SCHEDULED,
                details=f"retry {step.retry_count}/{step.max_retries} in {delay:.0f}s",
                step_id=step.id,
            )
            logger.warning(
                f"Step {step.id} failed for request_id={request.request_id}, "
                f"retry {step.retry_count}/{step.max_retries} in {delay:.0f}s: {error}"
            )
            return StepOutcome.RETRY_SCHEDULED

        step.status = StepStatus.FAILED
        previous = transition(request, RequestStatus.FAILED)
        request.timeline.actual_completion = runtime.now()
        runtime.audit.record(
            request,
            AuditAction.FAILED,
            details=f"Step {step.id} exhausted {step.max_retries} retries: {error}",
            previous_status=previous,
            new_status=RequestStatus.FAILED,
            step_id=step.id,
        )
        logger.error(
            f"Request {request.request_id} failed at step {step.id}: {error}"
        )
        await runtime.emit(EventType.FAILED, request, step_id=step.id, error=error)
        return StepOutcome.FAILED
