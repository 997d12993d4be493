import asyncio
from collections import Counter
from datetime import timedelta

import pytest

from custodian.audit import entries_for
from custodian.clock import ManualClock
from custodian.config import CustodianConfig
from custodian.contracts import (
    ActionType,
    AutomatedStep,
    BackoffStrategy,
    ComplianceCheck,
    ComplianceCheckStep,
    DataOperation,
    DataProcessingStep,
    RetryPolicy,
    StepAction,
    StepStatus,
    StepType,
    StepValidation,
    ValidationFailureAction,
)
from custodian.errors import ConcurrencyViolationError, UnknownHandlerError
from custodian.events import EventType
from custodian.execution import (
    DEFAULT_HANDLERS,
    ActionRegistry,
    DataProcessorRegistry,
    StepExecutor,
    StepOutcome,
    ValidationRegistry,
    idempotency_key,
)
from custodian.models import AuditAction, RequestStatus
from custodian.runtime import Runtime


async def _fail(request, step, action, key):
    raise RuntimeError("downstream unavailable")


def test_missing_step_handler_is_rejected_at_construction():
    handlers = dict(DEFAULT_HANDLERS)
    del handlers[StepType.COMPLIANCE_CHECK]
    with pytest.raises(UnknownHandlerError, match="compliance_check"):
        StepExecutor(Runtime(), handlers=handlers)


@pytest.mark.asyncio
async def test_successful_step_updates_request(make_request):
    clock = ManualClock()
    executor = StepExecutor(Runtime(clock=clock))
    request = make_request()
    step = request.workflow.steps[0]

    outcome = await executor.execute(request, step)

    assert outcome == StepOutcome.COMPLETED
    assert step.status == StepStatus.COMPLETED
    assert step.applied_actions == ["prepare-call"]
    assert step.output.data["prepare-call"] == {"status": "ok"}
    assert request.status == RequestStatus.IN_PROGRESS
    assert request.current_step_id == "execute"
    assert request.dependency("prepare").status.value == "resolved"
    assert [e.action for e in request.audit_trail] == [
        AuditAction.STATUS_CHANGED,
        AuditAction.STEP_STARTED,
        AuditAction.STEP_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_completed_step_is_never_executed_twice(make_request):
    executor = StepExecutor(Runtime())
    request = make_request()
    step = request.workflow.steps[0]
    await executor.execute(request, step)

    with pytest.raises(ConcurrencyViolationError):
        await executor.execute(request, step)


@pytest.mark.asyncio
async def test_two_retries_mean_three_attempts(make_engine, clock, events):
    engine = make_engine(actions=ActionRegistry({ActionType.API_CALL: _fail}))
    request = await engine.submit("subject-1", "tenant-a", "account_closure", "user_request")

    result = await engine.advance(request.request_id)
    assert result.stopped == "retry_scheduled"

    result = await engine.advance(request.request_id)
    assert result.stopped == "deferred"
    assert result.executed == []

    clock.advance(60)
    await engine.advance(request.request_id)
    clock.advance(60)
    result = await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    step = stored.step("prepare")
    assert result.status == RequestStatus.FAILED
    assert stored.status == RequestStatus.FAILED
    assert step.status == StepStatus.FAILED
    assert step.attempts == 3
    assert step.retry_count == 2
    assert len(entries_for(stored, AuditAction.STEP_FAILED, "prepare")) == 3
    assert len(entries_for(stored, AuditAction.STEP_RETRY_SCHEDULED)) == 2
    assert len(events.of_type(EventType.STEP_FAILED)) == 3
    assert len(events.of_type(EventType.FAILED)) == 1
    assert request.request_id not in engine.queue


@pytest.mark.asyncio
async def test_retry_waits_for_definition_backoff(make_definition, make_engine, clock):
    definition = make_definition(
        retry_policy=RetryPolicy(strategy=BackoffStrategy.LINEAR, base_delay=30)
    )
    engine = make_engine(definition, actions=ActionRegistry({ActionType.API_CALL: _fail}))
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    await engine.advance(request.request_id)
    await engine.advance(request.request_id)
    clock.advance(29)
    assert (await engine.advance(request.request_id)).stopped == "deferred"
    clock.advance(1)
    assert (await engine.advance(request.request_id)).executed == ["prepare"]

    stored = await engine.get(request.request_id)
    # second retry uses 2 * base_delay
    assert stored.step("prepare").not_before == clock.now() + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_irreversible_action_is_not_reapplied_on_retry(make_definition, make_engine, clock):
    calls = Counter()

    async def count(request, step, action, key):
        calls[action.id] += 1
        return {"key": key}

    checks = iter([False, True])

    definition = make_definition(
        steps=[
            AutomatedStep(
                id="close",
                name="Close",
                max_retries=1,
                actions=[
                    StepAction(id="liquidate", type=ActionType.API_CALL, irreversible=True),
                    StepAction(id="flag", type=ActionType.DATABASE_OPERATION),
                ],
                validations=[StepValidation(rule="settled")],
            )
        ],
        rollback={"enabled": False},
    )
    engine = make_engine(
        definition,
        actions=ActionRegistry({ActionType.API_CALL: count, ActionType.DATABASE_OPERATION: count}),
        validations=ValidationRegistry({"settled": lambda request, step: next(checks)}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    await engine.advance(request.request_id)
    clock.advance(60)
    result = await engine.advance(request.request_id)

    assert result.status == RequestStatus.COMPLETED
    assert calls == {"liquidate": 1, "flag": 2}
    stored = await engine.get(request.request_id)
    assert stored.step("close").output.data["liquidate"] == {
        "key": f"{request.request_id}:close:liquidate"
    }


@pytest.mark.asyncio
async def test_action_timeout_fails_the_attempt(make_definition, make_engine):
    async def slow(request, step, action, key):
        await asyncio.sleep(1)

    definition = make_definition(
        steps=[
            AutomatedStep(
                id="slow",
                name="Slow",
                max_retries=0,
                actions=[StepAction(type=ActionType.SYSTEM_COMMAND, timeout=0.01)],
            )
        ],
        rollback={"enabled": False},
    )
    engine = make_engine(definition, actions=ActionRegistry({ActionType.SYSTEM_COMMAND: slow}))
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    result = await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert result.status == RequestStatus.FAILED
    assert "ActionTimeoutError" in stored.step("slow").last_error


def _validated_definition(make_definition, failure_action, max_retries=0):
    return make_definition(
        steps=[
            AutomatedStep(
                id="check",
                name="Check",
                max_retries=max_retries,
                validations=[
                    StepValidation(
                        rule="flaky",
                        failure_action=failure_action,
                        max_attempts=3,
                        escalate_to=["duty_officer"],
                    )
                ],
            )
        ],
        rollback={"enabled": False},
    )


@pytest.mark.asyncio
async def test_validation_retry_reruns_with_delay(make_definition, make_engine, clock):
    results = iter([False, False, True])
    engine = make_engine(
        _validated_definition(make_definition, ValidationFailureAction.RETRY),
        config=CustodianConfig(validation_retry_delay=5),
        validations=ValidationRegistry({"flaky": lambda request, step: next(results)}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    start = clock.now()

    result = await engine.advance(request.request_id)

    assert result.status == RequestStatus.COMPLETED
    assert (clock.now() - start).total_seconds() == 10


@pytest.mark.asyncio
async def test_validation_retry_gives_up_after_max_attempts(make_definition, make_engine):
    evaluations = []

    def never(request, step):
        evaluations.append(step.id)
        return False

    engine = make_engine(
        _validated_definition(make_definition, ValidationFailureAction.RETRY),
        validations=ValidationRegistry({"flaky": never}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    result = await engine.advance(request.request_id)

    assert result.status == RequestStatus.FAILED
    assert len(evaluations) == 3


@pytest.mark.asyncio
async def test_validation_skip_continues(make_definition, make_engine):
    engine = make_engine(
        _validated_definition(make_definition, ValidationFailureAction.SKIP),
        validations=ValidationRegistry({"flaky": lambda request, step: False}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    result = await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert result.status == RequestStatus.COMPLETED
    assert "skipped" in stored.step("check").output.logs[0]


@pytest.mark.asyncio
async def test_validation_escalation_flags_step_and_notifies(
    make_definition, make_engine, notifier
):
    engine = make_engine(
        _validated_definition(make_definition, ValidationFailureAction.ESCALATE),
        validations=ValidationRegistry({"flaky": lambda request, step: False}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert stored.status == RequestStatus.FAILED
    assert stored.step("check").escalated is True
    assert "StepEscalatedError" in stored.step("check").last_error
    assert len(entries_for(stored, AuditAction.STEP_ESCALATED)) == 1
    assert [n.recipient for n in notifier.sent if n.template == "step_escalated"] == [
        "duty_officer"
    ]


@pytest.mark.asyncio
async def test_async_validation_rule(make_definition, make_engine):
    async def passes(request, step):
        return True

    engine = make_engine(
        _validated_definition(make_definition, ValidationFailureAction.FAIL_STEP),
        validations=ValidationRegistry({"flaky": passes}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    assert (await engine.advance(request.request_id)).status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_validation_rule_fails_step(make_definition, make_engine):
    engine = make_engine(_validated_definition(make_definition, ValidationFailureAction.FAIL_STEP))
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert "UnknownHandlerError" in stored.step("check").last_error


@pytest.mark.asyncio
async def test_data_processing_and_compliance_handlers(make_definition, make_engine):
    processed = []

    async def erase(request, step):
        processed.append((request.subject_id, step.operation))
        return {"records": 12}

    definition = make_definition(
        steps=[
            DataProcessingStep(id="erase", name="Erase", operation=DataOperation.DELETION),
            ComplianceCheckStep(
                id="verify",
                name="Verify",
                dependencies=["erase"],
                checks=[
                    ComplianceCheck(
                        regulation="GDPR", requirement="Art. 17", rule="dependencies_resolved"
                    )
                ],
            ),
        ],
        rollback={"enabled": False},
    )
    engine = make_engine(
        definition,
        data_processors=DataProcessorRegistry({DataOperation.DELETION: erase}),
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    result = await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert result.status == RequestStatus.COMPLETED
    assert processed == [("subject-1", DataOperation.DELETION)]
    assert stored.step("erase").output.data["deletion"] == {"records": 12}
    assert stored.step("verify").output.data["checks"][0]["passed"] is True


@pytest.mark.asyncio
async def test_failed_compliance_check_fails_step(make_definition, make_engine):
    definition = make_definition(
        steps=[
            ComplianceCheckStep(
                id="verify",
                name="Verify",
                max_retries=0,
                checks=[ComplianceCheck(regulation="AML", requirement="KYC", rule="kyc")],
            )
        ],
        rollback={"enabled": False},
    )
    engine = make_engine(
        definition, validations=ValidationRegistry({"kyc": lambda request, step: False})
    )
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")

    result = await engine.advance(request.request_id)

    stored = await engine.get(request.request_id)
    assert result.status == RequestStatus.FAILED
    assert "AML KYC" in stored.step("verify").last_error


@pytest.mark.asyncio
async def test_notification_step_notifies_subject_and_roles(engine, notifier):
    request = await engine.submit("subject-1", "tenant-a", "x", "user_request")
    await engine.advance(request.request_id)

    sent = [n for n in notifier.sent if n.template == "process_complete"]
    assert [n.recipient for n in sent] == ["subject-1"]
    assert sent[0].variables["request_id"] == request.request_id


def test_idempotency_key_format(make_request):
    request = make_request()
    action = request.workflow.steps[0].actions[0]
    assert idempotency_key(request, "prepare", action) == f"{request.request_id}:prepare:prepare-call"
