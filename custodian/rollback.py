"""Compensating rollback of in-flight requests."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List

from .contracts import StepStatus
from .errors import (
    PartialRollbackError,
    RollbackNotPossibleError,
    RollbackWindowExpiredError,
    ValidationFailedError,
)
from .events import EventType
from .execution.actions import ActionRegistry, ValidationRegistry
from .models import AuditAction, RequestStatus, RollbackStep, WorkflowRequest
from .runtime import Runtime
from .state import ROLLBACK_ELIGIBLE, transition

logger = logging.getLogger(__name__)


class RollbackManager:
    """Validates rollback eligibility and runs a request's compensating steps."""

    def __init__(
        self,
        runtime: Runtime,
        actions: ActionRegistry | None = None,
        validations: ValidationRegistry | None = None,
    ) -> None:
        self.runtime = runtime
        self.actions = actions or ActionRegistry()
        self.validations = validations or ValidationRegistry()

    def check_eligible(self, request: WorkflowRequest) -> None:
        """Raise if ``request`` cannot be rolled back right now.

        Raises:
            RollbackNotPossibleError: Wrong status, rollback disabled, or the
                point of no return has completed.
            RollbackWindowExpiredError: More than ``time_window_hours`` have
                elapsed since submission.
        """
        plan = request.rollback_plan
        if request.status not in ROLLBACK_ELIGIBLE:
            raise RollbackNotPossibleError(
                f"Request {request.request_id} is {request.status.value}; "
                f"rollback requires one of {sorted(s.value for s in ROLLBACK_ELIGIBLE)}"
            )
        if not plan.is_rollback_possible or request.point_of_no_return_passed():
            raise RollbackNotPossibleError(
                f"Rollback is not possible for request {request.request_id}"
            )
        elapsed = self.runtime.now() - request.submitted_at
        if elapsed > timedelta(hours=plan.time_window_hours):
            raise RollbackWindowExpiredError(
                f"Rollback window of {plan.time_window_hours}h expired for "
                f"request {request.request_id}"
            )

    async def rollback(self, request: WorkflowRequest, actor: str, reason: str) -> None:
        """Roll ``request`` back in place.

        The caller persists the request afterwards, including when
        :class:`PartialRollbackError` is raised.
        """
        self.check_eligible(request)
        runtime = self.runtime

        previous = transition(request, RequestStatus.ROLLED_BACK)
        request.timeline.actual_completion = runtime.now()
        runtime.audit.record(
            request,
            AuditAction.ROLLED_BACK,
            actor=actor,
            details=reason,
            previous_status=previous,
            new_status=RequestStatus.ROLLED_BACK,
        )

        steps = request.rollback_plan.steps
        completed: List[str] = []
        for position, rb_step in enumerate(steps):
            try:
                await self._run_step(request, rb_step)
            except Exception as exc:
                rb_step.status = StepStatus.FAILED
                rb_step.error = f"{type(exc).__name__}: {exc}"
                request.rollback_plan.requires_operator_attention = True
                runtime.audit.record(
                    request,
                    AuditAction.ROLLBACK_STEP_FAILED,
                    actor=actor,
                    details=f"{rb_step.name}: {rb_step.error}",
                    step_id=rb_step.target_step_id,
                )
                logger.error(
                    f"Rollback step {rb_step.name} failed for "
                    f"request_id={request.request_id}: {rb_step.error}"
                )
                await self._finish(request, partial=True)
                raise PartialRollbackError(
                    request.request_id,
                    rb_step.id,
                    completed,
                    [s.id for s in steps[position + 1 :]],
                    exc,
                ) from exc
            completed.append(rb_step.id)
        await self._finish(request, partial=False)

    async def _run_step(self, request: WorkflowRequest, rb_step: RollbackStep) -> None:
        rb_step.status = StepStatus.IN_PROGRESS
        for action in rb_step.actions:
            await self.actions.run(request, rb_step, action)
            if action.id not in rb_step.applied_actions:
                rb_step.applied_actions.append(action.id)
        for verification in rb_step.verifications:
            if not await self.validations.evaluate(verification.rule, request, rb_step):
                raise ValidationFailedError(
                    f"Verification {verification.rule} failed for rollback step {rb_step.name}"
                )
        rb_step.status = StepStatus.COMPLETED
        if rb_step.target_step_id is not None:
            request.step(rb_step.target_step_id).status = StepStatus.ROLLED_BACK
        self.runtime.audit.record(
            request,
            AuditAction.ROLLBACK_STEP_COMPLETED,
            details=rb_step.name,
            step_id=rb_step.target_step_id,
        )

    async def _finish(self, request: WorkflowRequest, partial: bool) -> None:
        await self.runtime.emit(EventType.ROLLED_BACK, request, partial=partial)
        await self.runtime.notify_subject("request_rolled_back", request, partial=partial)
        logger.info(
            f"Request {request.request_id} rolled back"
            + (" partially; operator attention required" if partial else "")
        )
