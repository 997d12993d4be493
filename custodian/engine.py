"""Workflow engine: submission, gating, advancement and operator actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from .audit import SYSTEM_ACTOR
from .clock import Clock, SystemClock
from .collaborators import ApproverResolver, LoggingNotifier, Notifier, StaticApproverResolver
from .concurrency import ActiveQueue, RequestLocks
from .config import CustodianConfig, load_config
from .contracts import (
    DependencyStatus,
    ManualStep,
    Priority,
    RequestReason,
    StepStatus,
    Urgency,
    WorkflowDefinition,
)
from .errors import (
    ApprovalNotFoundError,
    CancellationNotAllowedError,
    DependencyNotFoundError,
    DuplicateRequestError,
    InvalidRequestError,
    PartialRollbackError,
    RequestNotFoundError,
)
from .events import EventSink, EventType, InMemoryEventSink, get_event_sink
from .execution import (
    ActionRegistry,
    DataProcessorRegistry,
    StepExecutor,
    StepOutcome,
    ValidationRegistry,
)
from .gate import GateDecision, GateOutcome, blocking_dependencies, can_execute, outstanding_approvals
from .models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ApprovalRequirement,
    ApprovalStatus,
    AuditAction,
    MilestoneStatus,
    RequestFilter,
    RequestStatus,
    StatusReport,
    WorkflowRequest,
)
from .persistence import RequestRepository, get_repository
from .registry import DefinitionRegistry, builtin_definitions, load_definitions
from .registry.builder import (
    build_approvals,
    build_dependencies,
    build_rollback_plan,
    build_timeline,
)
from .rollback import RollbackManager
from .runtime import Runtime
from .state import CANCELLABLE, transition

logger = logging.getLogger(__name__)

# Statuses from which ``advance`` may start the next step.
ADVANCEABLE = frozenset(
    {RequestStatus.REQUESTED, RequestStatus.APPROVED, RequestStatus.IN_PROGRESS}
)
HIGH_PRIORITY_REASONS = frozenset(
    {RequestReason.REGULATORY_ORDER, RequestReason.SANCTIONS, RequestReason.FRAUD_DETECTED}
)
REVIEW_REASONS = frozenset(
    {RequestReason.FRAUD_DETECTED, RequestReason.COMPLIANCE_VIOLATION}
)
DEFAULT_ESCALATION_ROLE = "operations_manager"


def calculate_priority(urgency: Urgency, reason: RequestReason) -> Priority:
    if urgency == Urgency.EMERGENCY:
        return Priority.CRITICAL
    if urgency == Urgency.URGENT:
        return Priority.URGENT
    if reason in HIGH_PRIORITY_REASONS:
        return Priority.HIGH
    return Priority.NORMAL


def requires_manual_review(definition: WorkflowDefinition, reason: RequestReason) -> bool:
    return definition.manual_review or reason in REVIEW_REASONS


@dataclass
class AdvanceResult:
    """What a call to :meth:`WorkflowEngine.advance` did."""

    request_id: str
    status: RequestStatus
    executed: List[str] = field(default_factory=list)
    stopped: str = ""


class WorkflowEngine:
    """Coordinates requests through their workflow.

    Every mutation of a request happens under that request's lock and is
    persisted through the repository before the lock is released.
    """

    def __init__(
        self,
        repository: RequestRepository,
        registry: DefinitionRegistry,
        events: Optional[EventSink] = None,
        notifier: Optional[Notifier] = None,
        approvers: Optional[ApproverResolver] = None,
        clock: Optional[Clock] = None,
        config: Optional[CustodianConfig] = None,
        actions: Optional[ActionRegistry] = None,
        validations: Optional[ValidationRegistry] = None,
        data_processors: Optional[DataProcessorRegistry] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.runtime = Runtime(
            config=config or CustodianConfig(),
            clock=clock or SystemClock(),
            events=events or InMemoryEventSink(),
            notifier=notifier or LoggingNotifier(),
            approvers=approvers or StaticApproverResolver(),
        )
        self.executor = StepExecutor(self.runtime, actions, validations, data_processors)
        self.rollbacks = RollbackManager(
            self.runtime, self.executor.actions, self.executor.validations
        )
        self.queue = ActiveQueue()
        self.locks = RequestLocks()

    @property
    def clock(self) -> Clock:
        return self.runtime.clock

    @property
    def events(self) -> EventSink:
        return self.runtime.events

    @property
    def audit(self):
        return self.runtime.audit

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Connect the event sink, load stored templates and rebuild the queue."""
        await self.events.connect()
        loaded = await self.registry.load(self.repository)
        active = await self.repository.list(
            RequestFilter(statuses=[s for s in RequestStatus if s not in TERMINAL_STATUSES])
        )
        for request in active:
            self.queue.add(request)
        logger.info(
            f"Engine started with {len(self.registry)} definition(s) "
            f"({loaded} stored) and {len(active)} active request(s)"
        )

    async def close(self) -> None:
        await self.events.disconnect()

    # ------------------------------------------------------------------
    # Internal helpers
    async def _load(self, request_id: str) -> WorkflowRequest:
        request = await self.repository.get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    async def _save(self, request: WorkflowRequest) -> WorkflowRequest:
        request = await self.repository.update(request)
        if request.is_terminal:
            self.queue.discard(request.request_id)
        return request

    def _change_status(
        self,
        request: WorkflowRequest,
        target: RequestStatus,
        actor: str = SYSTEM_ACTOR,
        details: str = "",
        action: AuditAction = AuditAction.STATUS_CHANGED,
    ) -> None:
        previous = transition(request, target)
        if target in TERMINAL_STATUSES:
            request.timeline.actual_completion = self.clock.now()
        self.audit.record(
            request,
            action,
            actor=actor,
            details=details,
            previous_status=previous,
            new_status=target,
        )

    async def _apply_gate(self, request: WorkflowRequest, step) -> GateDecision:
        """Record the gate decision for ``step`` on the request."""
        decision = can_execute(request, step)
        now = self.clock.now()
        if decision.outcome == GateOutcome.BLOCKED_BY_DEPENDENCY:
            if step.status != StepStatus.BLOCKED:
                step.status = StepStatus.BLOCKED
                step.waiting_since = now
                self.audit.record(
                    request,
                    AuditAction.STEP_BLOCKED,
                    details="waiting on " + ", ".join(d.id for d in decision.blocking),
                    step_id=step.id,
                )
        elif decision.outcome == GateOutcome.WAITING_APPROVAL:
            if step.status != StepStatus.WAITING_APPROVAL:
                step.status = StepStatus.WAITING_APPROVAL
                step.waiting_since = now
                self.audit.record(
                    request,
                    AuditAction.STEP_WAITING_APPROVAL,
                    details="awaiting " + ", ".join(a.approver_role for a in decision.awaiting),
                    step_id=step.id,
                )
            for approval in decision.to_request:
                await self._request_approval(request, approval)
            if request.status == RequestStatus.REQUESTED:
                self._change_status(request, RequestStatus.UNDER_REVIEW)
        return decision

    async def _request_approval(
        self, request: WorkflowRequest, approval: ApprovalRequirement
    ) -> None:
        approval.status = ApprovalStatus.REQUESTED
        approval.requested_at = self.clock.now()
        self.audit.record(
            request,
            AuditAction.APPROVAL_REQUESTED,
            details=f"{approval.approver_role} approval {approval.id}",
            step_id=approval.step_id,
        )
        await self.runtime.notify_role(
            "approval_requested",
            approval.approver_role,
            request,
            approval_id=approval.id,
            step_id=approval.step_id,
        )

    def _find_approval(self, request: WorkflowRequest, approval_id: str) -> ApprovalRequirement:
        for approval in request.approvals:
            if approval.id == approval_id:
                if approval.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
                    raise ApprovalNotFoundError(
                        f"Approval {approval_id} was already {approval.status.value}"
                    )
                return approval
        raise ApprovalNotFoundError(
            f"Approval {approval_id} not found on request {request.request_id}"
        )

    async def _complete(self, request: WorkflowRequest) -> WorkflowRequest:
        self._change_status(
            request,
            RequestStatus.COMPLETED,
            details="All steps completed",
            action=AuditAction.COMPLETED,
        )
        request = await self._save(request)
        logger.info(f"Request {request.request_id} completed")
        await self.runtime.emit(EventType.COMPLETED, request)
        await self.runtime.notify_subject("request_completed", request)
        return request

    # ------------------------------------------------------------------
    # Submission and queries
    async def submit(
        self,
        subject_id: str,
        tenant_id: str,
        process_type: str,
        reason: RequestReason | str,
        urgency: Urgency | str = Urgency.ROUTINE,
        custom_reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> WorkflowRequest:
        """Validate, materialise and persist a new request, then gate its first step.

        Raises:
            DuplicateRequestError: The subject already has an open request.
            InvalidRequestError: The reason is not accepted by the template.
            NoDefinitionError: No template matches ``process_type``.
        """
        try:
            reason = RequestReason(reason)
            urgency = Urgency(urgency)
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
        if reason == RequestReason.OTHER and not custom_reason:
            raise InvalidRequestError("A custom reason is required when reason is 'other'")

        async with self.locks.hold(f"subject:{tenant_id}:{subject_id}"):
            existing = await self.repository.list(
                RequestFilter(
                    subject_id=subject_id,
                    tenant_id=tenant_id,
                    statuses=list(OPEN_STATUSES),
                    limit=1,
                )
            )
            if existing:
                raise DuplicateRequestError(subject_id, existing[0].request_id)

            workflow = self.registry.resolve(process_type, urgency)
            if workflow.allowed_reasons and reason not in workflow.allowed_reasons:
                raise InvalidRequestError(
                    f"Reason {reason.value} is not accepted by workflow {workflow.key}"
                )
            manual_review = requires_manual_review(workflow, reason)
            now = self.clock.now()
            request = WorkflowRequest(
                subject_id=subject_id,
                tenant_id=tenant_id,
                process_type=process_type,
                reason=reason,
                custom_reason=custom_reason,
                urgency=urgency,
                priority=calculate_priority(urgency, reason),
                current_step_id=workflow.steps[0].id,
                workflow=workflow,
                timeline=build_timeline(workflow, now),
                dependencies=build_dependencies(workflow),
                approvals=build_approvals(workflow, reason, manual_review),
                rollback_plan=build_rollback_plan(workflow, process_type),
                requires_manual_review=manual_review,
            )
            self.audit.record(
                request,
                AuditAction.SUBMITTED,
                actor=actor or subject_id,
                details=(
                    f"{process_type} ({reason.value}, {urgency.value}) "
                    f"using {workflow.key} v{workflow.version}"
                ),
                new_status=RequestStatus.REQUESTED,
            )
            await self.repository.create(request)

        self.queue.add(request)
        logger.info(
            f"Submitted request_id={request.request_id} subject={subject_id} "
            f"priority={request.priority.value}"
        )
        await self.runtime.emit(EventType.REQUEST_SUBMITTED, request)
        await self.runtime.notify_subject("request_submitted", request)

        async with self.locks.get(request.request_id):
            request = await self._load(request.request_id)
            decision = await self._apply_gate(request, request.workflow.steps[0])
            if decision.ready:
                self._change_status(
                    request, RequestStatus.IN_PROGRESS, details="Queued for execution"
                )
            request = await self._save(request)
        return request

    async def get(self, request_id: str) -> WorkflowRequest:
        return await self._load(request_id)

    async def list(self, filter: Optional[RequestFilter] = None) -> List[WorkflowRequest]:
        return await self.repository.list(filter)

    async def status(self, request_id: str) -> StatusReport:
        request = await self._load(request_id)
        upcoming = sorted(
            (m for m in request.timeline.milestones if m.status != MilestoneStatus.COMPLETED),
            key=lambda m: m.target_date,
        )
        step = request.next_step()
        return StatusReport(
            request_id=request.request_id,
            status=request.status,
            current_step_id=request.current_step_id,
            progress=request.progress,
            timeline=request.timeline,
            next_milestone=upcoming[0] if upcoming else None,
            pending_approvals=[
                a
                for a in request.approvals
                if a.status in (ApprovalStatus.PENDING, ApprovalStatus.REQUESTED)
            ],
            blocked_dependencies=blocking_dependencies(request, step) if step else [],
            requires_operator_attention=request.rollback_plan.requires_operator_attention,
        )

    # ------------------------------------------------------------------
    # Advancement
    async def advance(self, request_id: str) -> AdvanceResult:
        """Run steps until the request is gated, deferred or terminal.

        The lock is taken once per step so other operations can interleave
        at step boundaries.
        """
        executed: List[str] = []
        while True:
            async with self.locks.get(request_id):
                request = await self._load(request_id)
                if request.status not in ADVANCEABLE:
                    return AdvanceResult(request_id, request.status, executed, "not_advanceable")

                step = request.next_step()
                if step is None:
                    request = await self._complete(request)
                    return AdvanceResult(request_id, request.status, executed, "completed")

                if step.not_before is not None and step.not_before > self.clock.now():
                    return AdvanceResult(request_id, request.status, executed, "deferred")

                trail_length = len(request.audit_trail)
                decision = await self._apply_gate(request, step)
                if not decision.ready:
                    if len(request.audit_trail) != trail_length:
                        request = await self._save(request)
                    return AdvanceResult(
                        request_id, request.status, executed, decision.outcome.value
                    )

                outcome = await self.executor.execute(request, step)
                executed.append(step.id)
                request = await self._save(request)
                if outcome != StepOutcome.COMPLETED:
                    return AdvanceResult(request_id, request.status, executed, outcome.value)

    # ------------------------------------------------------------------
    # Approvals and dependencies
    async def approve(
        self,
        request_id: str,
        approval_id: str,
        approver_id: str,
        comment: str = "",
    ) -> WorkflowRequest:
        """Grant an approval; advance the request once its gate is satisfied."""
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            if request.is_terminal:
                raise ApprovalNotFoundError(
                    f"Request {request_id} is {request.status.value}; approvals are closed"
                )
            approval = self._find_approval(request, approval_id)
            approval.status = ApprovalStatus.APPROVED
            approval.decided_at = self.clock.now()
            approval.approver_id = approver_id
            approval.comment = comment
            self.audit.record(
                request,
                AuditAction.APPROVED,
                actor=approver_id,
                details=f"{approval.approver_role} approval granted {comment}".strip(),
                step_id=approval.step_id,
            )

            step = request.next_step()
            gate_open = (
                step is not None
                and step.id == approval.step_id
                and not outstanding_approvals(request, step)
            )
            if gate_open and request.status == RequestStatus.UNDER_REVIEW:
                self._change_status(
                    request, RequestStatus.APPROVED, actor=approver_id, details="Review complete"
                )
            request = await self._save(request)
            await self.runtime.emit(
                EventType.APPROVED, request, approval_id=approval.id, approver_id=approver_id
            )

        if gate_open:
            await self.advance(request_id)
            request = await self._load(request_id)
        return request

    async def reject(
        self, request_id: str, approval_id: str, approver_id: str, reason: str = ""
    ) -> WorkflowRequest:
        """Reject an approval, which rejects the whole request."""
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            approval = self._find_approval(request, approval_id)
            approval.status = ApprovalStatus.REJECTED
            approval.decided_at = self.clock.now()
            approval.approver_id = approver_id
            approval.comment = reason
            self._change_status(
                request,
                RequestStatus.REJECTED,
                actor=approver_id,
                details=f"{approval.approver_role} rejected: {reason}",
                action=AuditAction.REJECTED,
            )
            request = await self._save(request)
            logger.info(f"Request {request_id} rejected by {approver_id}")
            await self.runtime.emit(
                EventType.REJECTED, request, approval_id=approval.id, approver_id=approver_id
            )
            await self.runtime.notify_subject("request_rejected", request, reason=reason)
        return request

    async def resolve_dependency(
        self,
        request_id: str,
        dependency_id: str,
        status: DependencyStatus | str = DependencyStatus.RESOLVED,
        actor: str = SYSTEM_ACTOR,
    ) -> WorkflowRequest:
        """Update a dependency and advance the request if that unblocks it."""
        status = DependencyStatus(status)
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            dependency = request.dependency(dependency_id)
            if dependency is None:
                raise DependencyNotFoundError(
                    f"Dependency {dependency_id} not found on request {request_id}"
                )
            previous = dependency.status
            dependency.status = status
            dependency.updated_at = self.clock.now()
            self.audit.record(
                request,
                AuditAction.DEPENDENCY_UPDATED,
                actor=actor,
                details=f"{dependency_id}: {previous.value} -> {status.value}",
            )
            unblocked = self._unblock_next_step(request)
            request = await self._save(request)

        if unblocked:
            await self.advance(request_id)
            request = await self._load(request_id)
        return request

    async def complete_manual_step(
        self, request_id: str, step_id: str, operator_id: str, notes: str = ""
    ) -> WorkflowRequest:
        """Record operator sign-off for a manual step and advance the request."""
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            if request.is_terminal:
                raise InvalidRequestError(f"Request {request_id} is {request.status.value}")
            try:
                step = request.step(step_id)
            except KeyError:
                raise InvalidRequestError(f"Unknown step {step_id} on request {request_id}") from None
            if not isinstance(step, ManualStep):
                raise InvalidRequestError(f"Step {step_id} is not a manual step")
            if step.status == StepStatus.COMPLETED:
                raise InvalidRequestError(f"Step {step_id} is already completed")

            step.completed_by = operator_id
            step.notes = notes or None
            signoff = request.dependency(step.signoff_dependency_id)
            if signoff is not None:
                signoff.status = DependencyStatus.RESOLVED
                signoff.updated_at = self.clock.now()
            self.audit.record(
                request,
                AuditAction.MANUAL_STEP_COMPLETED,
                actor=operator_id,
                details=notes,
                step_id=step_id,
            )
            self._unblock_next_step(request)
            request = await self._save(request)

        await self.advance(request_id)
        return await self._load(request_id)

    def _unblock_next_step(self, request: WorkflowRequest) -> bool:
        step = request.next_step()
        if step is None or step.status != StepStatus.BLOCKED:
            return False
        if blocking_dependencies(request, step):
            return False
        step.status = StepStatus.PENDING
        step.waiting_since = None
        return True

    # ------------------------------------------------------------------
    # Operator controls
    async def cancel(self, request_id: str, actor: str, reason: str = "") -> WorkflowRequest:
        """Cancel a request that has not passed its point of no return.

        Raises:
            CancellationNotAllowedError: Status does not allow cancellation or
                the point-of-no-return step has completed.
        """
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            if request.status not in CANCELLABLE:
                raise CancellationNotAllowedError(
                    f"Request {request_id} is {request.status.value} and cannot be cancelled"
                )
            if request.point_of_no_return_passed():
                raise CancellationNotAllowedError(
                    f"Request {request_id} passed its point of no return "
                    f"({request.rollback_plan.point_of_no_return})"
                )
            self._change_status(
                request,
                RequestStatus.CANCELLED,
                actor=actor,
                details=reason,
                action=AuditAction.CANCELLED,
            )
            request = await self._save(request)
            logger.info(f"Request {request_id} cancelled by {actor}")
            await self.runtime.emit(EventType.CANCELLED, request, reason=reason)
            await self.runtime.notify_subject("request_cancelled", request, reason=reason)
        return request

    async def pause(self, request_id: str, actor: str, reason: str = "") -> WorkflowRequest:
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            self._change_status(
                request, RequestStatus.PAUSED, actor=actor, details=reason, action=AuditAction.PAUSED
            )
            return await self._save(request)

    async def resume(self, request_id: str, actor: str, reason: str = "") -> WorkflowRequest:
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            self._change_status(
                request,
                RequestStatus.IN_PROGRESS,
                actor=actor,
                details=reason,
                action=AuditAction.RESUMED,
            )
            return await self._save(request)

    async def rollback(self, request_id: str, actor: str, reason: str = "") -> WorkflowRequest:
        """Roll a request back through its compensating steps.

        Raises:
            RollbackNotPossibleError: The request is not eligible.
            RollbackWindowExpiredError: The rollback window has elapsed.
            PartialRollbackError: A compensating step failed; the partial
                state is persisted before raising.
        """
        async with self.locks.get(request_id):
            request = await self._load(request_id)
            try:
                await self.rollbacks.rollback(request, actor, reason)
            except PartialRollbackError:
                await self._save(request)
                raise
            return await self._save(request)

    async def escalate_overdue(self, request_id: str) -> bool:
        """Flag timed-out waiting steps and expire stale approvals.

        Timeouts are advisory: they notify escalation roles once per step and
        never interrupt or fail the step.
        """
        async with self.locks.get(request_id):
            request = await self.repository.get(request_id)
            if request is None or request.is_terminal or request.status == RequestStatus.PAUSED:
                return False
            now = self.clock.now()
            timed_out = []
            for step in request.workflow.steps:
                if (
                    step.timeout_minutes is None
                    or step.timeout_escalated
                    or step.status
                    not in (StepStatus.BLOCKED, StepStatus.WAITING_APPROVAL, StepStatus.IN_PROGRESS)
                ):
                    continue
                since = step.waiting_since or step.started_at
                if since is None or now - since < timedelta(minutes=step.timeout_minutes):
                    continue
                step.timeout_escalated = True
                self.audit.record(
                    request,
                    AuditAction.STEP_TIMED_OUT,
                    details=f"{step.status.value} for over {step.timeout_minutes} minutes",
                    step_id=step.id,
                )
                timed_out.append(step)

            expired = []
            for approval in request.approvals:
                if (
                    approval.status != ApprovalStatus.REQUESTED
                    or approval.expires_after_hours is None
                    or approval.requested_at is None
                ):
                    continue
                if now - approval.requested_at < timedelta(hours=approval.expires_after_hours):
                    continue
                approval.status = ApprovalStatus.EXPIRED
                approval.decided_at = now
                self.audit.record(
                    request,
                    AuditAction.APPROVAL_EXPIRED,
                    details=f"{approval.approver_role} approval {approval.id} expired",
                    step_id=approval.step_id,
                )
                expired.append(approval)

            if not timed_out and not expired:
                return False
            request = await self._save(request)

            for step in timed_out:
                logger.warning(f"Step {step.id} of request_id={request_id} timed out")
                await self.runtime.emit(EventType.STEP_TIMED_OUT, request, step_id=step.id)
                for role in self._escalation_roles(request, step):
                    await self.runtime.notify_role(
                        "step_timed_out", role, request, step_id=step.id
                    )
            for approval in expired:
                for role in approval.escalate_to or [approval.approver_role]:
                    await self.runtime.notify_role(
                        "approval_expired", role, request, approval_id=approval.id
                    )
            return True

    def _escalation_roles(self, request: WorkflowRequest, step) -> List[str]:
        roles: List[str] = []
        for dependency in blocking_dependencies(request, step):
            roles.extend(dependency.escalation_path)
        for approval in outstanding_approvals(request, step):
            roles.extend(approval.escalate_to)
        unique = list(dict.fromkeys(roles))
        return unique or [DEFAULT_ESCALATION_ROLE]


def create_engine(
    config: Optional[CustodianConfig] = None,
    repository: Optional[RequestRepository] = None,
    **kwargs,
) -> WorkflowEngine:
    """Build an engine from configuration.

    Templates come from ``definitions_path`` when set, otherwise the built-in
    set; the repository and event sink come from their factories.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    if config.definitions_path:
        definitions = load_definitions(config.definitions_path)
    else:
        definitions = builtin_definitions()
    kwargs.setdefault("events", get_event_sink(config=config))
    return WorkflowEngine(
        repository, DefinitionRegistry(definitions), config=config, **kwargs
    )
