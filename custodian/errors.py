"""Exception hierarchy for the custodian engine."""

from __future__ import annotations

from typing import Sequence


class CustodianError(Exception):
    """Base class for all engine errors."""


# Submission -------------------------------------------------------------
class NoDefinitionError(CustodianError):
    """No workflow definition matches the requested process."""


class DuplicateRequestError(CustodianError):
    """The subject already has a request that is not terminal."""

    def __init__(self, subject_id: str, existing_request_id: str) -> None:
        self.subject_id = subject_id
        self.existing_request_id = existing_request_id
        super().__init__(
            f"Subject {subject_id} already has an active request {existing_request_id}"
        )


class InvalidRequestError(CustodianError):
    """Submission arguments are not a valid combination."""


# Lookup -----------------------------------------------------------------
class RequestNotFoundError(CustodianError):
    """Unknown request id."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id} not found")


class ApprovalNotFoundError(CustodianError):
    """Approval requirement missing or already decided."""


class DependencyNotFoundError(CustodianError):
    """Unknown dependency id on a request."""


# State ------------------------------------------------------------------
class InvalidTransitionError(CustodianError):
    """A status change outside the allowed request graph."""

    def __init__(self, request_id: str, current: str, target: str) -> None:
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"Request {request_id} cannot move from {current} to {target}"
        )


class CancellationNotAllowedError(CustodianError):
    """The request can no longer be cancelled."""


class RollbackNotPossibleError(CustodianError):
    """The request is not eligible for rollback."""


class RollbackWindowExpiredError(CustodianError):
    """The rollback time window has elapsed."""


class PartialRollbackError(CustodianError):
    """A compensating step failed; operator attention is required."""

    def __init__(
        self,
        request_id: str,
        failed_step_id: str,
        completed: Sequence[str],
        not_attempted: Sequence[str],
        cause: BaseException,
    ) -> None:
        self.request_id = request_id
        self.failed_step_id = failed_step_id
        self.completed = list(completed)
        self.not_attempted = list(not_attempted)
        self.cause = cause
        super().__init__(
            f"Rollback of request {request_id} halted at {failed_step_id}: {cause}"
        )


# Execution --------------------------------------------------------------
class StepExecutionError(CustodianError):
    """A step handler failed."""


class ActionTimeoutError(StepExecutionError):
    """A step action exceeded its timeout."""


class ValidationFailedError(StepExecutionError):
    """A step validation did not hold."""


class StepEscalatedError(StepExecutionError):
    """A validation failure was escalated for human review."""


class UnknownHandlerError(CustodianError):
    """No handler, action or rule is registered under a name."""


# Invariants -------------------------------------------------------------
class ConcurrencyViolationError(CustodianError):
    """Two writers raced on the same request."""


class AuditIntegrityError(CustodianError):
    """An update tried to rewrite existing audit history."""
