"""Registries for step actions, validation rules and data processors."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..contracts import ActionType, DataOperation, StepAction, StepBase
from ..errors import ActionTimeoutError, UnknownHandlerError
from ..gate import blocking_dependencies, outstanding_approvals
from ..models import WorkflowRequest

logger = logging.getLogger(__name__)

# (request, step, action, idempotency_key) -> result payload
ActionHandler = Callable[
    [WorkflowRequest, Any, StepAction, str], Awaitable[Optional[Dict[str, Any]]]
]
# (request, step) -> bool, sync or async
ValidationRule = Callable[[WorkflowRequest, Any], Union[bool, Awaitable[bool]]]
# (request, step) -> result payload
DataProcessor = Callable[[WorkflowRequest, Any], Awaitable[Optional[Dict[str, Any]]]]


def idempotency_key(request: WorkflowRequest, step_id: str, action: StepAction) -> str:
    return f"{request.request_id}:{step_id}:{action.id}"


async def log_action(
    request: WorkflowRequest, step: Any, action: StepAction, key: str
) -> Dict[str, Any]:
    """Default action: record the call and report success."""
    logger.info(
        f"Action {action.type.value} '{action.description}' key={key} "
        f"params={action.parameters}"
    )
    return {"status": "ok"}


class ActionRegistry:
    """Maps each :class:`ActionType` to the coroutine that performs it."""

    def __init__(self, handlers: Optional[Dict[ActionType, ActionHandler]] = None) -> None:
        self._handlers: Dict[ActionType, ActionHandler] = {
            action_type: log_action for action_type in ActionType
        }
        self._handlers.update(handlers or {})

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def get(self, action_type: ActionType) -> ActionHandler:
        try:
            return self._handlers[action_type]
        except KeyError:
            raise UnknownHandlerError(f"No action handler for {action_type}") from None

    async def run(
        self, request: WorkflowRequest, step: Any, action: StepAction
    ) -> Optional[Dict[str, Any]]:
        """Run ``action`` bounded by its timeout.

        Raises:
            ActionTimeoutError: If the handler does not finish in time.
        """
        handler = self.get(action.type)
        key = idempotency_key(request, step.id, action)
        try:
            return await asyncio.wait_for(
                handler(request, step, action, key), timeout=action.timeout
            )
        except asyncio.TimeoutError:
            raise ActionTimeoutError(
                f"Action {action.id} ({action.type.value}) of step {step.id} "
                f"timed out after {action.timeout}s"
            ) from None


def _actions_applied(request: WorkflowRequest, step: Any) -> bool:
    applied = set(step.applied_actions)
    return all(action.id in applied for action in step.actions)


def _dependencies_resolved(request: WorkflowRequest, step: Any) -> bool:
    if not isinstance(step, StepBase):
        return True
    return not blocking_dependencies(request, step)


def _approvals_granted(request: WorkflowRequest, step: Any) -> bool:
    if not isinstance(step, StepBase):
        return True
    return not outstanding_approvals(request, step)


class ValidationRegistry:
    """Named predicates evaluated by step validations and compliance checks."""

    def __init__(self, rules: Optional[Dict[str, ValidationRule]] = None) -> None:
        self._rules: Dict[str, ValidationRule] = {
            "actions_applied": _actions_applied,
            "dependencies_resolved": _dependencies_resolved,
            "approvals_granted": _approvals_granted,
        }
        self._rules.update(rules or {})

    def register(self, rule: str, predicate: ValidationRule) -> None:
        self._rules[rule] = predicate

    def __contains__(self, rule: str) -> bool:
        return rule in self._rules

    async def evaluate(self, rule: str, request: WorkflowRequest, step: Any) -> bool:
        try:
            predicate = self._rules[rule]
        except KeyError:
            raise UnknownHandlerError(f"No validation rule named {rule!r}") from None
        result = predicate(request, step)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


async def log_data_operation(request: WorkflowRequest, step: Any) -> Dict[str, Any]:
    logger.info(
        f"Data operation {step.operation.value} for subject {request.subject_id} "
        f"request_id={request.request_id}"
    )
    return {"operation": step.operation.value}


class DataProcessorRegistry:
    """Processors invoked by data-processing steps, keyed by operation."""

    def __init__(
        self, processors: Optional[Dict[DataOperation, DataProcessor]] = None
    ) -> None:
        self._processors: Dict[DataOperation, DataProcessor] = {
            operation: log_data_operation for operation in DataOperation
        }
        self._processors.update(processors or {})

    def register(self, operation: DataOperation, processor: DataProcessor) -> None:
        self._processors[operation] = processor

    def get(self, operation: DataOperation) -> DataProcessor:
        try:
            return self._processors[operation]
        except KeyError:
            raise UnknownHandlerError(f"No data processor for {operation}") from None
